"""Configuration management for rlexec and rltee."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)
from yaml import YAMLError

from rlexec.errors import ConfigurationError

CONFIG_SUFFIXES = (".yml", ".yaml")
DEFAULT_PROMPT = "> "


class Settings(BaseSettings):
    """Resolved settings for one invocation."""

    output: str = Field(default="", description="Output file, empty or '-' for stdout")
    history: Path | None = Field(default=None, description="History file")
    history_limit: int = Field(default=500, ge=0, description="Number of history lines offered for recall")
    prompt: str = Field(default=DEFAULT_PROMPT, description="Prompt shown by the line reader")
    buffered: bool = Field(default=False, description="Buffer writes to the output file")
    temp: bool = Field(default=False, description="Stage output in a temp file and commit it on success")
    log_level: str = Field(default="", description="Explicit log level, overrides --verbose/--debug")

    model_config = SettingsConfigDict(env_prefix="RLEXEC_", case_sensitive=False, extra="ignore", frozen=True)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # flags > environment > config file > defaults
        return (init_settings, env_settings, YamlConfigSettingsSource(settings_cls))


def xdg_config_home() -> Path:
    value = os.getenv("XDG_CONFIG_HOME")
    if value:
        return Path(value)
    return Path.home() / ".config"


def find_config_file(command_name: str, cwd: Path | None = None) -> Path | None:
    """Return the first existing config file for the command, if any."""
    candidates = [xdg_config_home() / command_name / f"{command_name}{suffix}" for suffix in CONFIG_SUFFIXES]
    base = cwd or Path.cwd()
    candidates.extend(base / f"{command_name}{suffix}" for suffix in CONFIG_SUFFIXES)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_settings(
    command_name: str,
    *,
    config_file: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> tuple[Settings, Path | None]:
    """Build the settings for a command.

    Args:
        command_name: Name used for the environment prefix and config discovery.
        config_file: Explicit config file; discovery is skipped when given.
        overrides: Values from command-line flags. ``None`` entries are dropped.

    Returns:
        The settings and the config file that was used.
    """
    if config_file is not None and not config_file.is_file():
        raise ConfigurationError(f"config file not found: {config_file}")
    used_file = config_file or find_config_file(command_name)

    class CommandSettings(Settings):
        model_config = SettingsConfigDict(env_prefix=f"{command_name.upper()}_", yaml_file=used_file)

    flags = {key: value for key, value in (overrides or {}).items() if value is not None}
    try:
        return CommandSettings(**flags), used_file
    except (ValidationError, YAMLError, OSError) as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc
