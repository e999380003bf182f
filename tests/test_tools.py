from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from specpilot.bootstrap import build_repository
from specpilot.config import SpecPilotSettings
from specpilot.engine import AutomationEngine
from specpilot.session import SessionStore
from specpilot.supervisor import WorkspaceSupervisor
from specpilot.tasks import TaskRepository
from specpilot.tools import register_tools
from specpilot.worker import FakeWorker


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}
        self.annotations: dict[str, object] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            self.annotations[tool_name] = kwargs.get("annotations")
            return tool

        return decorator


class StubLogger:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def info(self, message, extra=None):
        self.messages.append(("info", message))

    def warning(self, message, extra=None):
        self.messages.append(("warning", message))

    def debug(self, message, extra=None):
        self.messages.append(("debug", message))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def setup_tools(tmp_path: Path, *, store: SessionStore | None = None, worker: FakeWorker | None = None):
    settings = SpecPilotSettings(workspace_root=tmp_path, poll_interval=0.01, task_timeout=30.0)
    worker = worker or FakeWorker(default="thinking")

    def factory(workspace: Path) -> AutomationEngine:
        return AutomationEngine(
            settings,
            TaskRepository(workspace, settings.task_globs),
            worker,
            store=store,
            watch_files=False,
        )

    supervisor = WorkspaceSupervisor(settings, factory, store=store)
    server = StubServer()
    handles = register_tools(
        server,
        settings=settings,
        supervisor=supervisor,
        repository_factory=lambda workspace: build_repository(settings, workspace),
        store=store,
    )
    return server, handles, supervisor


def test_register_tools_exposes_all_tools(tmp_path: Path) -> None:
    server, handles, _ = setup_tools(tmp_path)

    assert set(server._tools) == {
        "start_automation",
        "pause_automation",
        "resume_automation",
        "stop_automation",
        "automation_status",
        "list_tasks",
        "next_task",
        "list_sessions",
    }
    assert handles.start_automation.name == "start_automation"
    assert server.annotations["start_automation"]["safety"]["level"] == "caution"


def test_list_tasks_and_next_task_without_engine(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [x] 1. Done\n- [ ] 2. Next up\n- [ ] 3. Later\n")
    _, handles, _ = setup_tools(tmp_path)

    pending = handles.list_tasks.fn(status="pending")
    everything = handles.list_tasks.fn()
    upcoming = handles.next_task.fn()

    assert [task["qualified_id"] for task in pending["tasks"]] == ["feature/2", "feature/3"]
    assert len(everything["tasks"]) == 3
    assert everything["errors"] == []
    assert upcoming["error"] is None
    assert upcoming["task"]["id"] == "2"


def test_next_task_reports_structural_errors(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Loop\n  _Depends on: 1_\n")
    _, handles, _ = setup_tools(tmp_path)
    context = StubContext()

    result = handles.next_task.fn(context=context)

    assert result["task"] is None
    assert "dependency cycle" in result["error"]
    assert context.logger.messages == [("warning", "Task documents are invalid")]


def test_automation_lifecycle_through_tools(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Slow task\n- [ ] 2. Later\n")
    _, handles, supervisor = setup_tools(tmp_path)

    async def scenario() -> dict:
        assert handles.automation_status.fn()["state"] == "idle"
        with pytest.raises(ValueError):
            await handles.pause_automation.fn()

        started = await handles.start_automation.fn(context=StubContext())
        assert started["state"] == "running"
        assert started["session"]["workspace"] == str(tmp_path.resolve())

        paused = await handles.pause_automation.fn()
        assert paused["pause_requested"] is True
        resumed = await handles.resume_automation.fn()
        assert resumed["pause_requested"] is False

        return await handles.stop_automation.fn()

    stopped = asyncio.run(scenario())

    assert stopped["state"] == "stopped"
    assert stopped["session"]["status"] == "stopped"
    assert handles.automation_status.fn()["state"] == "stopped"
    assert supervisor.get(tmp_path) is not None


def test_list_sessions_requires_store(tmp_path: Path) -> None:
    _, handles, _ = setup_tools(tmp_path)

    with pytest.raises(RuntimeError):
        handles.list_sessions.fn()


def test_list_sessions_includes_statistics(tmp_path: Path, write_tasks, session_store: SessionStore) -> None:
    write_tasks(tmp_path, "- [ ] 1. Quick\n")
    done = "Implemented and finished.\n```\na\n```\n```\nb\n```\n"
    _, handles, supervisor = setup_tools(tmp_path, store=session_store, worker=FakeWorker(default=done))

    async def scenario() -> None:
        engine = await supervisor.start(tmp_path)
        await engine.join()

    asyncio.run(scenario())
    result = handles.list_sessions.fn(workspace=str(tmp_path))

    assert len(result["sessions"]) == 1
    session = result["sessions"][0]
    assert session["status"] == "completed"
    assert session["completed_task_ids"] == ["feature/1"]
    assert session["statistics"]["completion_rate"] == 1.0
