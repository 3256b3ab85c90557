"""Flat, append-only line history."""

from __future__ import annotations

from collections import deque
from pathlib import Path

from loguru import logger

from rlexec.errors import HistoryError


class HistoryStore:
    """Newline-delimited history file, one accepted line per row.

    A store without a path is disabled: it loads nothing and appends nothing.
    """

    def __init__(self, path: Path | None) -> None:
        self.path = path.expanduser() if path is not None else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self, limit: int = 500) -> list[str]:
        """Return the newest ``limit`` entries, oldest first."""
        if self.path is None or limit <= 0 or not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8", errors="surrogateescape") as handle:
                entries = deque((line.rstrip("\r\n") for line in handle), maxlen=limit)
        except OSError:
            logger.opt(exception=True).warning("history.load.error path={}", self.path)
            return []
        return list(entries)

    def append(self, line: str) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8", errors="surrogateescape") as handle:
                handle.write(line + "\n")
        except (OSError, ValueError) as exc:
            raise HistoryError(f"cannot append to {self.path}: {exc}") from exc
