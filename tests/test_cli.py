from __future__ import annotations

from pathlib import Path
import json

import pytest

import specpilot.cli as cli
from specpilot.config import get_settings
from specpilot.engine import AutomationEngine
from specpilot.tasks import TaskRepository
from specpilot.worker import FakeWorker


DONE = "Implemented and finished.\n```\na\n```\n```\nb\n```\n"


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SPECPILOT_WORKER_COMMAND", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def no_store(monkeypatch):
    monkeypatch.setattr(cli, "build_store", lambda settings: (None, {"available": False, "error": "disabled"}))


def test_tasks_command_lists_tasks(tmp_path: Path, write_tasks, capsys) -> None:
    write_tasks(tmp_path, "- [x] 1. Done\n- [ ]* 2. Optional extra\n")

    exit_code = cli.main(["--workspace", str(tmp_path), "tasks"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "feature/1" in output and "[completed  ]" in output
    assert "feature/2" in output and "Optional extra" in output


def test_tasks_command_filters_and_outputs_json(tmp_path: Path, write_tasks, capsys) -> None:
    write_tasks(tmp_path, "- [x] 1. Done\n- [ ] 2. Pending\n")

    exit_code = cli.main(["--workspace", str(tmp_path), "tasks", "--status", "pending", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert [task["qualified_id"] for task in payload] == ["feature/2"]


def test_tasks_command_reports_structural_errors(tmp_path: Path, write_tasks, capsys) -> None:
    write_tasks(tmp_path, "- [ ] 1. Twice\n- [ ] 1. Twice\n")

    exit_code = cli.main(["--workspace", str(tmp_path), "tasks"])

    assert exit_code == 1
    assert "duplicate task identifier" in capsys.readouterr().out


def test_next_command(tmp_path: Path, write_tasks, capsys) -> None:
    write_tasks(tmp_path, "- [x] 1. Done\n- [ ] 2. Pending\n")

    assert cli.main(["--workspace", str(tmp_path), "next"]) == 0
    assert capsys.readouterr().out.strip() == "feature/2: Pending"


def test_next_command_when_nothing_is_eligible(tmp_path: Path, capsys) -> None:
    assert cli.main(["--workspace", str(tmp_path), "next"]) == 0
    assert capsys.readouterr().out.strip() == "No eligible task."


def test_run_without_worker_is_a_configuration_error(tmp_path: Path, no_store, capsys) -> None:
    exit_code = cli.main(["--workspace", str(tmp_path), "run"])

    output = capsys.readouterr().out
    assert exit_code == 2
    assert "SPECPILOT_WORKER_COMMAND" in output


def test_run_prints_session_summary(tmp_path: Path, write_tasks, no_store, monkeypatch, capsys) -> None:
    path = write_tasks(tmp_path, "- [ ] 1. Only task\n")
    worker = FakeWorker(default=DONE)

    def build_engine(settings, store=None):
        assert settings.max_retries == 0
        assert settings.stop_on_failure is True
        return AutomationEngine(
            settings.model_copy(update={"poll_interval": 0.01}),
            TaskRepository(settings.workspace_root, settings.task_globs),
            worker,
            store=store,
            watch_files=False,
        )

    monkeypatch.setattr(cli, "build_engine", build_engine)

    exit_code = cli.main(["--workspace", str(tmp_path), "run", "--max-retries", "0", "--stop-on-failure"])

    output = capsys.readouterr().out
    summary = json.loads(output[output.index("{"):])
    assert exit_code == 0
    assert summary["status"] == "completed"
    assert summary["completed"] == ["feature/1"]
    assert path.read_text(encoding="utf-8") == "- [x] 1. Only task\n"


def test_main_without_command_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "usage: specpilot" in capsys.readouterr().out


@pytest.mark.parametrize("command", [["run"], ["tasks"], ["next"]])
def test_invalid_environment_reports_configuration_error(tmp_path: Path, monkeypatch, capsys, command) -> None:
    monkeypatch.setenv("SPECPILOT_MAX_RETRIES", "-1")

    exit_code = cli.main(["--workspace", str(tmp_path), *command])

    assert exit_code == 2
    assert capsys.readouterr().out.startswith("Configuration error:")
