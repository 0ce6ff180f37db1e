"""Project settings loaded from ``.commit-smith.yaml``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

__all__ = [
    "CONFIG_FILENAME",
    "CodexSettings",
    "CommandSettings",
    "CommitSettings",
    "ConfigError",
    "PipelineSettings",
    "Settings",
    "load_settings",
]

LOGGER = logging.getLogger(__name__)

CONFIG_FILENAME = ".commit-smith.yaml"

DEFAULT_FORMAT_COMMAND = "ruff format ."
DEFAULT_TYPECHECK_COMMAND = "mypy ."
DEFAULT_TESTS_COMMAND = "pytest -q"
DEFAULT_MAX_AI_FIX_ATTEMPTS = 2
DEFAULT_MAX_PATCH_BYTES = 200_000
DEFAULT_CODEX_TIMEOUT_MS = 10_000


class ConfigError(RuntimeError):
    """Raised when the settings file cannot be read or fails validation."""


def _at_least(value: Any, minimum: int, fallback: int, key: str) -> Any:
    """Return ``value`` when it is an integer >= ``minimum``, else warn and use ``fallback``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value or value < minimum:
        LOGGER.warning("%s must be >= %d. Falling back to default value %d.", key, minimum, fallback)
        return fallback
    return int(value)


class ConfigModel(BaseModel):
    """Base model with strict field handling."""

    model_config = ConfigDict(extra="forbid")


class CommandSettings(ConfigModel):
    """Shell command configured for one pipeline step; empty disables the step."""

    command: str = ""


class PipelineSettings(ConfigModel):
    enable: bool = True
    max_ai_fix_attempts: int = DEFAULT_MAX_AI_FIX_ATTEMPTS
    abort_on_failure: bool = True
    max_patch_bytes: int = DEFAULT_MAX_PATCH_BYTES

    @field_validator("max_ai_fix_attempts", mode="before")
    @classmethod
    def _clamp_attempts(cls, value: Any) -> Any:
        return _at_least(value, 0, DEFAULT_MAX_AI_FIX_ATTEMPTS, "pipeline.max_ai_fix_attempts")

    @field_validator("max_patch_bytes", mode="before")
    @classmethod
    def _clamp_patch_bytes(cls, value: Any) -> Any:
        return _at_least(value, 1, DEFAULT_MAX_PATCH_BYTES, "pipeline.max_patch_bytes")


class CommitSettings(ConfigModel):
    push_after: bool = False


class CodexSettings(ConfigModel):
    model: str = "gpt-5-codex"
    endpoint: str = "http://localhost:9999"
    timeout_ms: int = DEFAULT_CODEX_TIMEOUT_MS

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _clamp_timeout(cls, value: Any) -> Any:
        return _at_least(value, 1, DEFAULT_CODEX_TIMEOUT_MS, "codex.timeout_ms")


class Settings(ConfigModel):
    """Complete settings tree; every section falls back to its defaults."""

    format: CommandSettings = Field(default_factory=lambda: CommandSettings(command=DEFAULT_FORMAT_COMMAND))
    typecheck: CommandSettings = Field(default_factory=lambda: CommandSettings(command=DEFAULT_TYPECHECK_COMMAND))
    tests: CommandSettings = Field(default_factory=lambda: CommandSettings(command=DEFAULT_TESTS_COMMAND))
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    commit: CommitSettings = Field(default_factory=CommitSettings)
    codex: CodexSettings = Field(default_factory=CodexSettings)


def load_settings(repo_root: Path | str, config_path: Optional[Path | str] = None) -> Settings:
    """Load settings for ``repo_root``.

    Without ``config_path`` the optional ``.commit-smith.yaml`` at the
    repository root is used, and its absence means defaults. An explicit
    ``config_path`` must exist.
    """

    path = Path(config_path) if config_path is not None else Path(repo_root) / CONFIG_FILENAME
    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {path}")
        return Settings()

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Unable to read config {path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    try:
        return Settings.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {path}: {error}") from error
