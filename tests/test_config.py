from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from specpilot.config import DEFAULT_TASK_GLOBS, SpecPilotSettings, get_settings, validate_settings
from specpilot.errors import ConfigurationError


def test_defaults() -> None:
    settings = SpecPilotSettings()

    assert settings.task_globs == DEFAULT_TASK_GLOBS
    assert settings.max_retries == 3
    assert settings.task_timeout == 300.0
    assert settings.quiet_period == 5.0
    assert settings.lookback_window == 30.0
    assert settings.worker_command is None
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SPECPILOT_WORKSPACE", str(tmp_path))
    monkeypatch.setenv("SPECPILOT_TASK_GLOBS", "plans/*/tasks.md, todo.md")
    monkeypatch.setenv("SPECPILOT_TEMPLATE_PATHS", os.pathsep.join(["templates", "more"]))
    monkeypatch.setenv("SPECPILOT_MAX_RETRIES", "0")
    monkeypatch.setenv("SPECPILOT_LOG_LEVEL", "debug")
    monkeypatch.setenv("SPECPILOT_WORKER_PROMPT_MODE", "STDIN")

    settings = SpecPilotSettings()

    assert settings.workspace_root == tmp_path
    assert settings.task_globs == ("plans/*/tasks.md", "todo.md")
    assert settings.template_paths == (Path("templates"), Path("more"))
    assert settings.max_retries == 0
    assert settings.log_level == "DEBUG"
    assert settings.worker_prompt_mode == "stdin"


@pytest.mark.parametrize(
    "variable, value",
    [
        ("SPECPILOT_MAX_RETRIES", "-1"),
        ("SPECPILOT_TASK_TIMEOUT", "0"),
        ("SPECPILOT_LOG_LEVEL", "chatty"),
        ("SPECPILOT_WORKER_PROMPT_MODE", "socket"),
        ("SPECPILOT_QUIET_PERIOD", "60"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, variable: str, value: str) -> None:
    monkeypatch.setenv(variable, value)

    with pytest.raises(ValidationError):
        SpecPilotSettings()


def test_validate_settings_wraps_errors() -> None:
    settings = SpecPilotSettings().model_copy(update={"backoff_base": 10.0, "backoff_cap": 1.0})

    with pytest.raises(ConfigurationError) as excinfo:
        validate_settings(settings)

    assert "backoff cap" in str(excinfo.value)


def test_get_settings_resolves_paths(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SPECPILOT_WORKSPACE", ".")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.workspace_root == tmp_path.resolve()
    assert settings.chroma_persist_path == (tmp_path / "storage" / "chroma").resolve()


def test_get_settings_raises_configuration_error(monkeypatch) -> None:
    monkeypatch.setenv("SPECPILOT_MAX_SESSIONS", "0")
    get_settings.cache_clear()
    try:
        with pytest.raises(ConfigurationError):
            get_settings()
    finally:
        get_settings.cache_clear()


def test_snapshot_is_json_safe() -> None:
    snapshot = SpecPilotSettings().snapshot()

    assert snapshot["workspace_root"] == "."
    assert snapshot["task_globs"] == list(DEFAULT_TASK_GLOBS)
