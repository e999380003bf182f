from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from specpilot.config import SpecPilotSettings
from specpilot.engine import AutomationEngine, EngineState, InvalidTransitionError
from specpilot.errors import ConfigurationError, StatusConflictError, WorkerError
from specpilot.extensions import ExtensionRegistry
from specpilot.session import AutomationSession, SessionStatus, SessionStore
from specpilot.tasks import TaskRepository, TaskStatus
from specpilot.worker import FakeWorker


DONE = (
    "Implemented the change and finished the checks.\n"
    "```python\nchange()\n```\n"
    "```python\ncheck()\n```\n"
)

TWO_TASKS = """
# Tasks

- [ ] 2. Wire the parser into the CLI
- [ ] 1. Build parser
  - [ ] 1.1 Tokenizer
  - [ ]* 1.2 Benchmarks
"""


def make_settings(root: Path, **overrides) -> SpecPilotSettings:
    values = {
        "workspace_root": root,
        "poll_interval": 0.01,
        "task_timeout": 0.2,
        "backoff_base": 0.01,
        "backoff_cap": 0.02,
        "snapshot_interval": 5.0,
        "max_retries": 1,
    }
    values.update(overrides)
    return SpecPilotSettings(**values)


def make_engine(root: Path, worker, *, store: SessionStore | None = None, registry=None, **overrides) -> AutomationEngine:
    settings = make_settings(root, **overrides)
    repository = TaskRepository(root, settings.task_globs)
    return AutomationEngine(settings, repository, worker, store=store, registry=registry, watch_files=False)


async def wait_for_state(engine: AutomationEngine, state: EngineState, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while engine.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"engine stayed in {engine.state.value}, expected {state.value}")
        await asyncio.sleep(0.005)


def event_types(engine: AutomationEngine) -> list[str]:
    return [event.type for event in engine.channel.history()]


def test_runs_tasks_in_dependency_order(tmp_path: Path, write_tasks) -> None:
    path = write_tasks(tmp_path, TWO_TASKS)
    worker = FakeWorker(default=DONE)
    engine = make_engine(tmp_path, worker)

    session = asyncio.run(engine.run())

    assert session.status is SessionStatus.COMPLETED
    assert engine.state is EngineState.STOPPED
    assert session.completed_task_ids == ["feature/1", "feature/2"]
    assert session.ended_at is not None
    assert len(worker.prompts) == 2
    assert "Task: 1 - Build parser" in worker.prompts[0]
    assert "Task: 2 - Wire the parser into the CLI" in worker.prompts[1]

    text = path.read_text(encoding="utf-8")
    assert "- [x] 2. Wire the parser into the CLI" in text
    assert "- [x] 1. Build parser" in text
    assert "  - [x] 1.1 Tokenizer" in text
    assert "  - [ ]* 1.2 Benchmarks" in text

    types = event_types(engine)
    assert types.count("task_started") == 2
    assert types.count("task_completed") == 2
    assert types[-1] == "state_changed"


def test_empty_workspace_completes_immediately(tmp_path: Path) -> None:
    worker = FakeWorker(default=DONE)
    engine = make_engine(tmp_path, worker)

    session = asyncio.run(engine.run())

    assert session.status is SessionStatus.COMPLETED
    assert worker.prompts == []


def test_retry_budget_is_exhausted_then_task_fails(tmp_path: Path, write_tasks) -> None:
    path = write_tasks(tmp_path, "- [ ] 1. Never finishes\n- [ ] 2. Blocked\n")
    worker = FakeWorker(default="Still thinking")
    engine = make_engine(tmp_path, worker, max_retries=1)

    session = asyncio.run(engine.run())

    assert len(worker.prompts) == 2
    assert worker.prompts[1].startswith("Previous attempt 1 did not complete the task.")
    assert session.failed_task_ids == ["feature/1"]
    assert session.completed_task_ids == []
    assert "no completion signal" in (session.last_error or "")
    assert path.read_text(encoding="utf-8") == "- [ ] 1. Never finishes\n- [ ] 2. Blocked\n"
    assert event_types(engine).count("task_retry") == 1
    assert engine.repository.get("feature/1").status is TaskStatus.FAILED


def test_retry_delays_double_up_to_the_cap(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Never finishes\n")
    worker = FakeWorker(default="Still thinking")
    engine = make_engine(
        tmp_path,
        worker,
        max_retries=3,
        backoff_base=0.01,
        backoff_cap=0.03,
        task_timeout=0.05,
    )

    session = asyncio.run(engine.run())

    retries = [event.payload for event in engine.channel.history() if event.type == "task_retry"]
    assert [payload["attempt"] for payload in retries] == [2, 3, 4]
    assert [payload["delay"] for payload in retries] == pytest.approx([0.01, 0.02, 0.03])
    assert len(worker.prompts) == 4
    assert session.failed_task_ids == ["feature/1"]


def test_transient_worker_error_is_retried(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Flaky\n")
    worker = FakeWorker([WorkerError("rate limit exceeded"), DONE])
    engine = make_engine(tmp_path, worker, max_retries=2)

    session = asyncio.run(engine.run())

    assert session.completed_task_ids == ["feature/1"]
    assert len(worker.prompts) == 2
    assert "Last error: rate limit exceeded" in worker.prompts[1]


def test_optional_task_is_skipped_after_failures(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ]* 1. Optional polish\n- [ ] 2. Next\n")
    worker = FakeWorker([WorkerError("crashed"), DONE])
    engine = make_engine(tmp_path, worker, max_retries=0, skip_optional_tasks=True)

    session = asyncio.run(engine.run())

    assert session.skipped_task_ids == ["feature/1"]
    assert session.completed_task_ids == ["feature/2"]


def test_stop_on_failure_ends_the_session(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Fails\n- [ ] 2. Independent\n  _Depends on: 3_\n- [x] 3. Done already\n")
    worker = FakeWorker([WorkerError("crashed"), DONE])
    engine = make_engine(tmp_path, worker, max_retries=0, stop_on_failure=True)

    session = asyncio.run(engine.run())

    assert session.status is SessionStatus.FAILED
    assert engine.state is EngineState.STOPPED
    assert len(worker.prompts) == 1


def test_permission_error_is_fatal(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Needs auth\n")
    worker = FakeWorker([WorkerError("exit 1", stderr="permission denied for workspace")])
    engine = make_engine(tmp_path, worker, max_retries=3)

    session = asyncio.run(engine.run())

    assert engine.state is EngineState.ERROR
    assert session.status is SessionStatus.FAILED
    assert session.failed_task_ids == ["feature/1"]
    assert len(worker.prompts) == 1
    assert "error" in event_types(engine)


def test_untrusted_workspace_never_dispatches(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Anything\n")
    worker = FakeWorker(default=DONE)
    engine = make_engine(tmp_path, worker, require_workspace_trust=True)

    session = asyncio.run(engine.run())

    assert engine.state is EngineState.ERROR
    assert session.status is SessionStatus.FAILED
    assert "not trusted" in (session.last_error or "")
    assert worker.prompts == []

    engine.reset()
    assert engine.state is EngineState.IDLE


def test_dependency_cycle_puts_engine_in_error(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Loop\n  _Depends on: 1_\n")
    engine = make_engine(tmp_path, FakeWorker(default=DONE))

    session = asyncio.run(engine.run())

    assert engine.state is EngineState.ERROR
    assert "dependency cycle" in (session.last_error or "")


def test_unparseable_documents_put_engine_in_error(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. First\n- [ ] 1. Duplicate\n")
    worker = FakeWorker(default=DONE)
    engine = make_engine(tmp_path, worker)

    session = asyncio.run(engine.run())

    assert engine.state is EngineState.ERROR
    assert session.status is SessionStatus.FAILED
    assert "duplicate task identifier" in (session.last_error or "")
    assert worker.prompts == []


class ConflictingRepository(TaskRepository):
    def update_status(self, item, status, *, subtask_id=None):
        raise StatusConflictError("document changed underneath us")


def test_repeated_repository_failures_stop_the_engine(tmp_path: Path, write_tasks) -> None:
    for name in ("alpha", "beta", "gamma"):
        write_tasks(tmp_path, "- [ ] 1. Work\n", name=name)
    settings = make_settings(tmp_path, max_consecutive_repository_failures=2)
    repository = ConflictingRepository(tmp_path, settings.task_globs)
    worker = FakeWorker(default=DONE)
    engine = AutomationEngine(settings, repository, worker, watch_files=False)

    session = asyncio.run(engine.run())

    assert engine.state is EngineState.ERROR
    assert session.failed_task_ids == ["alpha/1", "beta/1"]
    assert worker.prompts == []


def test_pause_takes_effect_at_task_boundary(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. First\n- [ ] 2. Second\n")
    worker = FakeWorker(default=DONE, chunk_delay=0.05)
    engine = make_engine(tmp_path, worker)

    async def scenario() -> None:
        started = engine.channel.subscribe("task_started")
        await engine.start()
        await asyncio.wait_for(started.get(), timeout=2)
        await engine.pause()
        assert engine.pause_requested

        await wait_for_state(engine, EngineState.PAUSED)
        assert engine.session.completed_task_ids == ["feature/1"]
        assert engine.session.status is SessionStatus.PAUSED
        await asyncio.sleep(0.05)
        assert len(worker.prompts) == 1

        await engine.resume()
        await engine.join()

    asyncio.run(scenario())

    assert engine.session.completed_task_ids == ["feature/1", "feature/2"]
    assert engine.session.status is SessionStatus.COMPLETED


def test_stop_interrupts_and_resets_task(tmp_path: Path, write_tasks) -> None:
    path = write_tasks(tmp_path, "- [ ] 1. Long running\n")
    worker = FakeWorker(default="working on it")
    engine = make_engine(tmp_path, worker, task_timeout=30.0)

    async def scenario() -> float:
        started = engine.channel.subscribe("task_started")
        await engine.start()
        await asyncio.wait_for(started.get(), timeout=2)
        loop = asyncio.get_running_loop()
        began = loop.time()
        await engine.stop()
        await engine.stop()
        return loop.time() - began

    elapsed = asyncio.run(scenario())

    assert elapsed < 1.0
    assert engine.state is EngineState.STOPPED
    assert engine.session.status is SessionStatus.STOPPED
    assert engine.session.current_task_id is None
    assert path.read_text(encoding="utf-8") == "- [ ] 1. Long running\n"
    assert "task_interrupted" in event_types(engine)


def test_control_operations_validate_state(tmp_path: Path) -> None:
    engine = make_engine(tmp_path, FakeWorker())

    async def scenario() -> None:
        with pytest.raises(InvalidTransitionError):
            await engine.pause()
        with pytest.raises(InvalidTransitionError):
            await engine.resume()
        await engine.stop()

    asyncio.run(scenario())

    assert engine.state is EngineState.IDLE
    with pytest.raises(InvalidTransitionError):
        engine.reset()


def test_invalid_settings_are_rejected(tmp_path: Path) -> None:
    settings = make_settings(tmp_path).model_copy(update={"max_retries": -1})

    with pytest.raises(ConfigurationError):
        AutomationEngine(settings, TaskRepository(tmp_path, settings.task_globs), FakeWorker())


def test_restore_matches_uninterrupted_state(tmp_path: Path, write_tasks) -> None:
    interrupted_root = tmp_path / "interrupted"
    clean_root = tmp_path / "clean"
    write_tasks(interrupted_root, "- [x] 1. Done\n- [~] 2. In flight\n- [ ] 3. Later\n")
    write_tasks(clean_root, "- [x] 1. Done\n- [ ] 2. In flight\n- [ ] 3. Later\n")

    engine = make_engine(interrupted_root, FakeWorker())
    engine.repository.discover()
    session = AutomationSession(
        workspace=str(interrupted_root),
        completed_task_ids=["feature/1"],
        current_task_id="feature/2",
    )
    engine.restore(session)

    clean = TaskRepository(clean_root, engine.settings.task_globs)
    clean.discover()

    assert session.current_task_id is None
    assert engine.repository.next_eligible().qualified_id == clean.next_eligible().qualified_id == "feature/2"
    assert (interrupted_root / ".kiro/specs/feature/tasks.md").read_text(encoding="utf-8") == (
        clean_root / ".kiro/specs/feature/tasks.md"
    ).read_text(encoding="utf-8")


def test_restore_reapplies_failed_outcomes(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Failed before\n- [ ] 2. Depends on it\n")
    engine = make_engine(tmp_path, FakeWorker())
    engine.repository.discover()

    engine.restore(AutomationSession(workspace=str(tmp_path), failed_task_ids=["feature/1"]))

    assert engine.repository.get("feature/1").status is TaskStatus.FAILED
    assert engine.repository.next_eligible() is None


def test_resumed_session_continues_where_it_left_off(tmp_path: Path, write_tasks, session_store: SessionStore) -> None:
    write_tasks(tmp_path, "- [x] 1. Done\n- [~] 2. Interrupted\n")
    previous = AutomationSession(
        workspace=str(tmp_path.resolve()),
        status=SessionStatus.STOPPED,
        completed_task_ids=["feature/1"],
        current_task_id="feature/2",
    )
    session_store.save(previous)
    worker = FakeWorker(default=DONE)
    engine = make_engine(tmp_path, worker, store=session_store)

    candidate = session_store.latest_unfinished(str(tmp_path.resolve()))
    session = asyncio.run(engine.run(candidate))

    assert session.session_id == previous.session_id
    assert session.completed_task_ids == ["feature/1", "feature/2"]
    assert len(worker.prompts) == 1

    stored = session_store.load(previous.session_id)
    assert stored is not None and stored.status is SessionStatus.COMPLETED
    assert session_store.latest_unfinished(str(tmp_path.resolve())) is None
    assert "task_completed" in [event.event_type for event in session_store.history(previous.session_id)]


class RecordingProcessor:
    name = "recorder"

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def pre_process(self, task) -> None:
        self.calls.append(("pre", task.qualified_id))

    async def post_process(self, task, result) -> None:
        self.calls.append(("post", result.method.value))

    def on_task_failed(self, task, error) -> None:
        raise RuntimeError("processor bug")


class FixedPrompt:
    name = "fixed"

    def generate(self, task, context) -> str:
        return f"custom prompt for {task.qualified_id} attempt {context.attempt}"


def test_extensions_participate_in_execution(tmp_path: Path, write_tasks) -> None:
    write_tasks(tmp_path, "- [ ] 1. Good\n- [ ] 2. Bad\n  _Depends on: 1_\n")
    registry = ExtensionRegistry()
    processor = RecordingProcessor()
    registry.register_processor(processor)
    registry.register_prompt_generator(FixedPrompt())
    worker = FakeWorker([DONE, WorkerError("crashed")])
    engine = make_engine(tmp_path, worker, registry=registry, max_retries=0)

    session = asyncio.run(engine.run())

    assert worker.prompts == ["custom prompt for feature/1 attempt 1", "custom prompt for feature/2 attempt 1"]
    assert processor.calls == [
        ("pre", "feature/1"),
        ("post", "response-indicator"),
        ("pre", "feature/2"),
    ]
    assert session.completed_task_ids == ["feature/1"]
    assert session.failed_task_ids == ["feature/2"]


def test_checked_off_document_completes_task(tmp_path: Path, write_tasks) -> None:
    path = write_tasks(tmp_path, "- [ ] 1. Human finishes this\n")
    engine = make_engine(tmp_path, FakeWorker(default="on it"), task_timeout=5.0)

    async def scenario() -> None:
        started = engine.channel.subscribe("task_started")
        await engine.start()
        await asyncio.wait_for(started.get(), timeout=2)
        await asyncio.sleep(0.05)
        path.write_text("- [x] 1. Human finishes this\n", encoding="utf-8")
        await asyncio.wait_for(engine.join(), timeout=3)

    asyncio.run(scenario())

    assert engine.session.completed_task_ids == ["feature/1"]
    detections = [event for event in engine.channel.history() if event.type == "detection"]
    assert detections[-1].payload["method"] == "task-status"
