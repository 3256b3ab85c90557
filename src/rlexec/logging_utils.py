"""Runtime logging helpers."""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"
DEFAULT_LEVEL = "WARNING"

_CONFIGURED_LEVEL: str | None = None


def resolve_level(*, verbose: bool = False, debug: bool = False, log_level: str = "") -> str:
    """Pick the effective level from the command-line switches and settings."""
    level = DEFAULT_LEVEL
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    if not log_level:
        return level
    try:
        return logger.level(log_level.upper()).name
    except ValueError:
        logger.warning("logging.level.unknown level={}", log_level)
        return level


def configure_logging(level: str = DEFAULT_LEVEL) -> None:
    """Configure process-level logging once per level."""
    global _CONFIGURED_LEVEL
    if level == _CONFIGURED_LEVEL:
        return

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    _CONFIGURED_LEVEL = level
