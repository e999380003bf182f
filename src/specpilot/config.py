"""Configuration management for SpecPilot."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any
import os

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigurationError

DEFAULT_TASK_GLOBS: tuple[str, ...] = (".kiro/specs/*/tasks.md", "specs/*/tasks.md")
DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    "*/node_modules/*",
    "*/dist/*",
    "*/build/*",
    "*/out/*",
    "*/.git/*",
    "*/__pycache__/*",
    "*/.venv/*",
    "*/storage/chroma/*",
    "*.tmp",
)


def _split_paths(value: str) -> list[str]:
    return [part.strip() for part in value.split(os.pathsep) if part.strip()]


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class SpecPilotSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    workspace_root: Path = Field(default=Path("."), validation_alias="SPECPILOT_WORKSPACE")
    task_globs: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_TASK_GLOBS, validation_alias="SPECPILOT_TASK_GLOBS"
    )

    max_retries: int = Field(default=3, validation_alias="SPECPILOT_MAX_RETRIES")
    task_timeout: float = Field(default=300.0, validation_alias="SPECPILOT_TASK_TIMEOUT")
    backoff_base: float = Field(default=1.0, validation_alias="SPECPILOT_BACKOFF_BASE")
    backoff_cap: float = Field(default=30.0, validation_alias="SPECPILOT_BACKOFF_CAP")
    poll_interval: float = Field(default=1.0, validation_alias="SPECPILOT_POLL_INTERVAL")
    snapshot_interval: float = Field(default=30.0, validation_alias="SPECPILOT_SNAPSHOT_INTERVAL")
    watch_interval: float = Field(default=1.0, validation_alias="SPECPILOT_WATCH_INTERVAL")
    task_delay: float = Field(default=0.0, validation_alias="SPECPILOT_TASK_DELAY")

    min_file_changes: int = Field(default=1, validation_alias="SPECPILOT_MIN_FILE_CHANGES")
    quiet_period: float = Field(default=5.0, validation_alias="SPECPILOT_QUIET_PERIOD")
    lookback_window: float = Field(default=30.0, validation_alias="SPECPILOT_LOOKBACK_WINDOW")
    ignore_patterns: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_IGNORE_PATTERNS, validation_alias="SPECPILOT_IGNORE_PATTERNS"
    )

    skip_optional_tasks: bool = Field(default=False, validation_alias="SPECPILOT_SKIP_OPTIONAL")
    stop_on_failure: bool = Field(default=False, validation_alias="SPECPILOT_STOP_ON_FAILURE")
    max_consecutive_repository_failures: int = Field(
        default=3, validation_alias="SPECPILOT_MAX_REPOSITORY_FAILURES"
    )

    worker_command: str | None = Field(default=None, validation_alias="SPECPILOT_WORKER_COMMAND")
    worker_prompt_mode: str = Field(default="argument", validation_alias="SPECPILOT_WORKER_PROMPT_MODE")
    template_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("templates"),), validation_alias="SPECPILOT_TEMPLATE_PATHS"
    )
    prompt_template: str = Field(default="default", validation_alias="SPECPILOT_PROMPT_TEMPLATE")

    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="SPECPILOT_CHROMA_PATH"
    )

    require_workspace_trust: bool = Field(default=False, validation_alias="SPECPILOT_REQUIRE_TRUST")
    trusted_workspaces: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(), validation_alias="SPECPILOT_TRUSTED_WORKSPACES"
    )

    max_concurrent_sessions: int = Field(default=2, validation_alias="SPECPILOT_MAX_SESSIONS")
    memory_soft_limit_mb: float | None = Field(
        default=None, validation_alias="SPECPILOT_MEMORY_SOFT_LIMIT_MB"
    )
    load_soft_limit: float | None = Field(default=None, validation_alias="SPECPILOT_LOAD_SOFT_LIMIT")

    log_level: str = Field(default="INFO", validation_alias="SPECPILOT_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SPECPILOT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("worker_prompt_mode")
    @classmethod
    def _normalize_prompt_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"argument", "stdin"}:
            raise ValueError("SPECPILOT_WORKER_PROMPT_MODE must be 'argument' or 'stdin'")
        return normalized

    @field_validator("task_globs", "ignore_patterns", mode="before")
    @classmethod
    def _parse_patterns(cls, value: Any):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(_split_csv(value))
        raise TypeError("pattern settings must be a list of globs or a comma-separated string")

    @field_validator("template_paths", "trusted_workspaces", mode="before")
    @classmethod
    def _parse_paths(cls, value: Any):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, (str, Path)):
            return tuple(Path(part) for part in _split_paths(str(value)))
        raise TypeError("path settings must be a list of paths or a path-separated string")

    @field_validator("max_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("SPECPILOT_MAX_RETRIES must be >= 0")
        return value

    @field_validator("min_file_changes", "max_concurrent_sessions", "max_consecutive_repository_failures")
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be >= 1")
        return value

    @field_validator("task_timeout", "poll_interval", "snapshot_interval", "watch_interval", "lookback_window")
    @classmethod
    def _validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("value must be > 0")
        return value

    @field_validator("backoff_base", "backoff_cap", "quiet_period", "task_delay")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @model_validator(mode="after")
    def _validate_windows(self) -> "SpecPilotSettings":
        if self.quiet_period > self.lookback_window:
            raise ValueError("quiet period must not exceed the lookback window")
        if self.backoff_cap < self.backoff_base:
            raise ValueError("backoff cap must be >= backoff base")
        if not self.task_globs:
            raise ValueError("at least one task glob is required")
        return self

    def snapshot(self) -> dict[str, Any]:
        """Return the JSON-safe configuration stored with each session."""

        return self.model_dump(mode="json")


def validate_settings(settings: SpecPilotSettings) -> SpecPilotSettings:
    """Re-validate a (possibly mutated) settings object.

    Raises ConfigurationError when any value is invalid.
    """

    try:
        return SpecPilotSettings(**settings.model_dump())
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_settings() -> SpecPilotSettings:
    """Return cached settings instance."""

    try:
        settings = SpecPilotSettings()
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc
    settings.workspace_root = settings.workspace_root.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.template_paths = tuple(path.expanduser().resolve() for path in settings.template_paths)
    return settings


__all__ = ["SpecPilotSettings", "get_settings", "validate_settings"]
