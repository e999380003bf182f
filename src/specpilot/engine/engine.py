"""Automation engine: the task execution state machine."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from ..config import SpecPilotSettings, validate_settings
from ..detection import (
    CompletionDetectionResult,
    CompletionDetector,
    CompletionSignals,
    DetectionMethod,
    FileChangeWatcher,
)
from ..errors import (
    ErrorKind,
    PermissionDeniedError,
    StatusConflictError,
    StructuralError,
    TaskTimeoutError,
    WorkerUnavailableError,
    classify_failure,
)
from ..extensions import ExtensionRegistry
from ..prompts import PromptContext, TemplatePromptGenerator
from ..session import AutomationSession, SessionStatus, SessionStore
from ..tasks import Task, TaskRepository, TaskStatus
from ..trust import check_workspace_trust
from ..worker import Worker
from .events import EventChannel
from .states import EngineState, InvalidTransitionError, can_transition

logger = logging.getLogger(__name__)

_REPOSITORY_ERRORS = (StatusConflictError, StructuralError, OSError)


class _StopRequested(Exception):
    """Internal signal: a stop request interrupted the current task."""


class AutomationEngine:
    """Drive a workspace's task documents through an external worker.

    One task is in flight at a time. Every suspension point (worker stream,
    detector polling, backoff sleeps, pause) wakes up within one
    ``poll_interval`` of a stop request.
    """

    def __init__(
        self,
        settings: SpecPilotSettings,
        repository: TaskRepository,
        worker: Worker,
        *,
        detector: CompletionDetector | None = None,
        store: SessionStore | None = None,
        registry: ExtensionRegistry | None = None,
        channel: EventChannel | None = None,
        prompt_generator: TemplatePromptGenerator | None = None,
        watch_files: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = validate_settings(settings)
        self._repository = repository
        self._worker = worker
        self._registry = registry or ExtensionRegistry()
        self._detector = detector or CompletionDetector.from_settings(
            self._settings, extensions=self._registry.detector_extensions
        )
        self._store = store
        self._channel = channel or EventChannel()
        self._prompt_generator = prompt_generator or TemplatePromptGenerator()
        self._watch_files = watch_files
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = EngineState.IDLE
        self._session: AutomationSession | None = None
        self._current_task_id: str | None = None
        self._repository_failures = 0
        self._outcome: SessionStatus | None = None
        self._watcher: FileChangeWatcher | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._snapshot_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._resume_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def session(self) -> AutomationSession | None:
        return self._session

    @property
    def settings(self) -> SpecPilotSettings:
        return self._settings

    @property
    def repository(self) -> TaskRepository:
        return self._repository

    @property
    def detector(self) -> CompletionDetector:
        return self._detector

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def registry(self) -> ExtensionRegistry:
        return self._registry

    @property
    def pause_requested(self) -> bool:
        return (
            self._resume_event is not None
            and not self._resume_event.is_set()
            and self._state is EngineState.RUNNING
        )

    def status(self) -> dict[str, Any]:
        session = self._session
        return {
            "state": self._state.value,
            "pause_requested": self.pause_requested,
            "current_task_id": self._current_task_id,
            "session": session.model_dump(mode="json") if session is not None else None,
            "repository_errors": [str(error) for error in self._repository.errors],
        }

    # ------------------------------------------------------------------
    # state bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, target: EngineState) -> None:
        if not can_transition(self._state, target):
            raise InvalidTransitionError(self._state, target)
        previous, self._state = self._state, target
        if self._session is not None:
            self._session.engine_state = target.value
        logger.info(
            "Engine state changed",
            extra={"session_id": self._session_id, "from_state": previous.value, "state": target.value},
        )
        self._publish("state_changed", previous=previous.value, state=target.value)
        self._save()

    @property
    def _session_id(self) -> str | None:
        return self._session.session_id if self._session is not None else None

    def _publish(self, event_type: str, **payload: Any) -> None:
        self._channel.publish(event_type, session_id=self._session_id, **payload)

    def _save(self) -> None:
        if self._store is None or self._session is None:
            return
        try:
            self._store.save(self._session)
        except Exception as exc:  # noqa: BLE001 - persistence must not stop the run
            logger.warning(
                "Failed to save session snapshot",
                extra={"session_id": self._session_id, "error": str(exc)},
            )

    def _record(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._store is None or self._session is None:
            return
        try:
            self._store.record_event(self._session.session_id, event_type, payload)
        except Exception as exc:  # noqa: BLE001 - persistence must not stop the run
            logger.warning(
                "Failed to record session event",
                extra={"session_id": self._session_id, "event_type": event_type, "error": str(exc)},
            )

    # ------------------------------------------------------------------
    # control operations
    # ------------------------------------------------------------------

    async def start(self, session: AutomationSession | None = None) -> AutomationSession:
        """Start a new session, or resume ``session`` when given."""

        if self._state is not EngineState.IDLE:
            raise InvalidTransitionError(self._state, EngineState.RUNNING)

        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._repository_failures = 0
        self._outcome = None
        self._current_task_id = None

        workspace = str(self._repository.root.resolve())
        if session is None:
            session = AutomationSession(
                workspace=workspace,
                started_at=self._clock(),
                configuration=self._settings.snapshot(),
            )
        session.status = SessionStatus.RUNNING
        session.ended_at = None
        session.last_error = None
        self._session = session
        self._transition(EngineState.RUNNING)

        try:
            check_workspace_trust(self._repository.root, self._settings)
        except PermissionDeniedError as exc:
            self._enter_error(exc)
            return session

        self._repository.discover()
        self.restore(session)

        if self._watch_files:
            self._watcher = FileChangeWatcher(
                self._repository.root,
                self._detector,
                interval=self._settings.watch_interval,
                exclude=[document.path for document in self._repository.documents],
            )
            await self._watcher.start()

        self._run_task = asyncio.create_task(self._run_loop(), name=f"specpilot-engine-{session.session_id}")
        self._snapshot_task = asyncio.create_task(self._snapshot_loop(), name="specpilot-snapshots")
        logger.info(
            "Automation started",
            extra={"session_id": session.session_id, "workspace": workspace},
        )
        return session

    def restore(self, session: AutomationSession) -> None:
        """Re-apply a session's recorded outcomes to the freshly parsed task tree.

        Failed and skipped tasks are written as ``[ ]`` in the document, so
        they are re-applied from the session. The task that was in flight
        when the session was interrupted goes back to pending.
        """

        for outcome, status in (
            (session.failed_task_ids, TaskStatus.FAILED),
            (session.skipped_task_ids, TaskStatus.SKIPPED),
        ):
            for task_id in outcome:
                try:
                    task = self._repository.get(task_id)
                except StructuralError:
                    continue
                if task.status is TaskStatus.PENDING:
                    self._repository.set_status(task, status)

        interrupted = session.current_task_id
        if interrupted is not None:
            try:
                task = self._repository.get(interrupted)
                if task.status is TaskStatus.IN_PROGRESS:
                    self._repository.update_status(task, TaskStatus.PENDING)
            except _REPOSITORY_ERRORS as exc:
                logger.warning(
                    "Unable to reset interrupted task",
                    extra={"session_id": session.session_id, "task_id": interrupted, "error": str(exc)},
                )
            session.current_task_id = None

    async def run(self, session: AutomationSession | None = None) -> AutomationSession:
        """Start and wait until the engine stops or errors."""

        session = await self.start(session)
        await self.join()
        return session

    async def join(self) -> None:
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def pause(self) -> None:
        """Request a pause; it takes effect at the next task boundary."""

        if self._state is EngineState.PAUSED:
            return
        if self._state is not EngineState.RUNNING:
            raise InvalidTransitionError(self._state, EngineState.PAUSED)
        assert self._resume_event is not None
        self._resume_event.clear()
        logger.info("Pause requested", extra={"session_id": self._session_id})
        self._publish("pause_requested")

    async def resume(self) -> None:
        if self._state is EngineState.RUNNING and self.pause_requested:
            assert self._resume_event is not None
            self._resume_event.set()
            return
        if self._state is not EngineState.PAUSED:
            raise InvalidTransitionError(self._state, EngineState.RUNNING)
        assert self._resume_event is not None
        if self._session is not None:
            self._session.status = SessionStatus.RUNNING
        self._transition(EngineState.RUNNING)
        self._resume_event.set()

    async def stop(self) -> None:
        """Stop the engine; idempotent."""

        if self._state in (EngineState.STOPPED, EngineState.IDLE, EngineState.ERROR):
            return
        if self._state is not EngineState.STOPPING:
            self._transition(EngineState.STOPPING)
        assert self._stop_event is not None and self._resume_event is not None
        self._stop_event.set()
        self._resume_event.set()
        if self._run_task is not None:
            await asyncio.shield(self._run_task)
        elif self._state is EngineState.STOPPING:
            await self._finish()

    def reset(self) -> None:
        """Return a stopped or failed engine to idle."""

        if self._state not in (EngineState.STOPPED, EngineState.ERROR):
            raise InvalidTransitionError(self._state, EngineState.IDLE)
        self._transition(EngineState.IDLE)
        self._session = None
        self._run_task = None
        self._snapshot_task = None
        self._current_task_id = None

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------

    @property
    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if a stop was requested."""

        assert self._stop_event is not None
        if timeout <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _snapshot_loop(self) -> None:
        while not await self._wait_for_stop(self._settings.snapshot_interval):
            if self._state in (EngineState.RUNNING, EngineState.PAUSED):
                self._save()
            elif self._state in (EngineState.ERROR, EngineState.STOPPED):
                return

    async def _wait_if_paused(self) -> None:
        assert self._resume_event is not None
        if self._resume_event.is_set() or self._stopping:
            return
        if self._session is not None:
            self._session.status = SessionStatus.PAUSED
        self._transition(EngineState.PAUSED)
        logger.info("Automation paused", extra={"session_id": self._session_id})
        await self._resume_event.wait()

    async def _run_loop(self) -> None:
        try:
            while not self._stopping:
                await self._wait_if_paused()
                if self._stopping:
                    break

                self._repository.discover()
                try:
                    task = self._repository.next_eligible()
                except StructuralError as exc:
                    self._enter_error(exc)
                    return

                if task is None:
                    logger.info("No eligible tasks remain", extra={"session_id": self._session_id})
                    self._outcome = SessionStatus.COMPLETED
                    break

                outcome = await self._execute(task)
                if self._state is EngineState.ERROR:
                    return
                if outcome is TaskStatus.FAILED and self._settings.stop_on_failure:
                    logger.info(
                        "Stopping after task failure",
                        extra={"session_id": self._session_id, "task_id": task.qualified_id},
                    )
                    self._outcome = SessionStatus.FAILED
                    break
                if self._settings.task_delay and await self._wait_for_stop(self._settings.task_delay):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - last-resort guard for the background task
            logger.exception("Unexpected engine failure", extra={"session_id": self._session_id})
            self._enter_error(exc)
        finally:
            await self._finish()

    async def _finish(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._stop_event is not None:
            self._stop_event.set()
        if self._snapshot_task is not None:
            snapshot_task, self._snapshot_task = self._snapshot_task, None
            if snapshot_task is not asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await snapshot_task

        if self._state is EngineState.ERROR:
            return

        session = self._session
        if session is not None:
            session.current_task_id = None
            session.ended_at = self._clock()
            session.status = self._outcome or SessionStatus.STOPPED
        if self._state in (EngineState.RUNNING, EngineState.PAUSED):
            self._transition(EngineState.STOPPING)
        if self._state is EngineState.STOPPING:
            self._transition(EngineState.STOPPED)
        logger.info(
            "Automation stopped",
            extra={"session_id": self._session_id, "status": session.status.value if session else None},
        )

    def _enter_error(self, error: BaseException) -> None:
        classification = classify_failure(error)
        session = self._session
        if session is not None:
            session.status = SessionStatus.FAILED
            session.last_error = str(error)
            session.ended_at = self._clock()
        logger.error(
            "Engine entered error state",
            extra={
                "session_id": self._session_id,
                "task_id": self._current_task_id,
                "error_kind": classification.kind.value,
                "error": str(error),
            },
        )
        self._publish("error", fatal=True, error=str(error), **classification.to_details())
        self._record("engine_error", {"error": str(error), **classification.to_details()})
        if self._state is EngineState.RUNNING:
            self._transition(EngineState.ERROR)
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # task execution
    # ------------------------------------------------------------------

    def _repository_failure(self, task: Task, error: BaseException) -> TaskStatus:
        self._repository_failures += 1
        classification = classify_failure(error)
        task_id = task.qualified_id
        logger.warning(
            "Repository error while executing task",
            extra={
                "session_id": self._session_id,
                "task_id": task_id,
                "error_kind": classification.kind.value,
                "error": str(error),
                "consecutive_failures": self._repository_failures,
            },
        )
        self._repository.set_status(task, TaskStatus.FAILED)
        if self._session is not None:
            self._session.record_outcome(task_id, "failed")
            self._session.last_error = str(error)
        self._current_task_id = None
        self._publish("error", task_id=task_id, error=str(error), **classification.to_details())
        self._record("task_failed", {"task_id": task_id, "error": str(error), **classification.to_details()})
        if self._repository_failures >= self._settings.max_consecutive_repository_failures:
            self._enter_error(error)
        else:
            self._save()
        return TaskStatus.FAILED

    async def _call_processors(self, hook: str, *args: Any) -> None:
        for processor in self._registry.processors():
            method = getattr(processor, hook, None)
            if method is None:
                continue
            try:
                result = method(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - processors must not abort the task
                logger.warning(
                    "Task processor hook failed",
                    extra={
                        "session_id": self._session_id,
                        "processor": getattr(processor, "name", type(processor).__name__),
                        "hook": hook,
                        "error": str(exc),
                    },
                )

    async def _execute(self, task: Task) -> TaskStatus | None:
        """Run ``task`` to a terminal status; None means it was interrupted by stop."""

        task_id = task.qualified_id
        try:
            self._repository.update_status(task, TaskStatus.IN_PROGRESS)
        except _REPOSITORY_ERRORS as exc:
            return self._repository_failure(task, exc)

        self._current_task_id = task_id
        if self._session is not None:
            self._session.current_task_id = task_id
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info("Task started", extra={"session_id": self._session_id, "task_id": task_id})
        self._publish("task_started", task_id=task_id, title=task.title)
        self._record("task_started", {"task_id": task_id, "title": task.title})
        self._save()

        attempts = self._settings.max_retries + 1
        previous_error: str | None = None
        error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            await self._call_processors("pre_process", task)
            try:
                result = await self._run_attempt(task, attempt, previous_error)
            except _StopRequested:
                return self._interrupt(task)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - classified below
                error = exc
            else:
                if result.completed:
                    return await self._complete(task, result, loop.time() - started)
                error = TaskTimeoutError(
                    f"no completion signal within {self._settings.task_timeout:g}s "
                    f"(confidence {result.confidence:.2f})"
                )

            classification = classify_failure(error)
            previous_error = str(error)
            logger.warning(
                "Task attempt failed",
                extra={
                    "session_id": self._session_id,
                    "task_id": task_id,
                    "attempt": attempt,
                    "error_kind": classification.kind.value,
                    "error": previous_error,
                },
            )
            self._publish("error", task_id=task_id, attempt=attempt, error=previous_error, **classification.to_details())

            if classification.kind in (ErrorKind.PERMISSION, ErrorKind.CONFIGURATION):
                self._fail_task(task, error, loop.time() - started, final_status=TaskStatus.FAILED)
                self._enter_error(error)
                return TaskStatus.FAILED
            if classification.kind in (ErrorKind.STRUCTURAL, ErrorKind.CONFLICT):
                return self._repository_failure(task, error)
            if not classification.retryable or attempt == attempts:
                break

            delay = min(
                self._settings.backoff_base * (2 ** (attempt - 1)),
                self._settings.backoff_cap,
            )
            logger.info(
                "Retrying task",
                extra={"session_id": self._session_id, "task_id": task_id, "attempt": attempt + 1, "delay": delay},
            )
            self._publish("task_retry", task_id=task_id, attempt=attempt + 1, delay=delay)
            self._record("task_retry", {"task_id": task_id, "attempt": attempt + 1, "delay": delay, "error": previous_error})
            if await self._wait_for_stop(delay):
                return self._interrupt(task)

        assert error is not None
        await self._call_processors("on_task_failed", task, error)
        final_status = (
            TaskStatus.SKIPPED
            if task.optional and self._settings.skip_optional_tasks
            else TaskStatus.FAILED
        )
        return self._fail_task(task, error, loop.time() - started, final_status=final_status)

    def _generate_prompt(self, task: Task, attempt: int, previous_error: str | None) -> str:
        generator = self._registry.prompt_generator() or self._prompt_generator
        context = PromptContext(
            attempt=attempt,
            previous_error=previous_error,
            skip_optional=self._settings.skip_optional_tasks,
        )
        return generator.generate(task, context)

    async def _run_attempt(
        self, task: Task, attempt: int, previous_error: str | None
    ) -> CompletionDetectionResult:
        if not self._worker.is_available():
            raise WorkerUnavailableError("worker is not available")

        self._detector.reset()
        prompt = self._generate_prompt(task, attempt, previous_error)
        chunks: list[str] = []

        async def consume() -> None:
            async for chunk in self._worker.submit(prompt):
                chunks.append(chunk)

        loop = asyncio.get_running_loop()
        started = loop.time()
        consumer = asyncio.create_task(consume())
        try:
            while True:
                if consumer.done() and not consumer.cancelled() and consumer.exception() is not None:
                    raise consumer.exception()

                elapsed = loop.time() - started
                signals = CompletionSignals(
                    response_text="".join(chunks) if consumer.done() else None,
                    task_status=self._repository.refresh_status(task),
                )
                result = self._detector.evaluate(task, elapsed, signals)
                if result.completed or result.method is DetectionMethod.TIMEOUT:
                    self._publish(
                        "detection",
                        task_id=task.qualified_id,
                        attempt=attempt,
                        **result.to_dict(),
                    )
                    return result

                if await self._wait_for_stop(self._settings.poll_interval):
                    raise _StopRequested()
        finally:
            if not consumer.done():
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer

    async def _complete(self, task: Task, result: CompletionDetectionResult, duration: float) -> TaskStatus:
        task_id = task.qualified_id
        try:
            self._repository.update_status(task, TaskStatus.COMPLETED)
        except _REPOSITORY_ERRORS as exc:
            return self._repository_failure(task, exc)

        for subtask in task.incomplete_required_subtasks():
            try:
                self._repository.update_status(task, TaskStatus.COMPLETED, subtask_id=subtask.id)
            except _REPOSITORY_ERRORS as exc:
                logger.warning(
                    "Unable to check off subtask",
                    extra={"session_id": self._session_id, "task_id": f"{task_id}.{subtask.id}", "error": str(exc)},
                )

        self._repository_failures = 0
        self._current_task_id = None
        if self._session is not None:
            self._session.record_outcome(task_id, "completed", duration)
        await self._call_processors("post_process", task, result)
        logger.info(
            "Task completed",
            extra={
                "session_id": self._session_id,
                "task_id": task_id,
                "method": result.method.value,
                "confidence": round(result.confidence, 2),
            },
        )
        self._publish("task_completed", task_id=task_id, duration=duration, detection=result.to_dict())
        self._record("task_completed", {"task_id": task_id, "duration": duration, "detection": result.to_dict()})
        self._save()
        return TaskStatus.COMPLETED

    def _fail_task(
        self, task: Task, error: BaseException, duration: float, *, final_status: TaskStatus
    ) -> TaskStatus:
        task_id = task.qualified_id
        try:
            self._repository.update_status(task, final_status)
            self._repository_failures = 0
        except _REPOSITORY_ERRORS as exc:
            return self._repository_failure(task, exc)

        self._current_task_id = None
        outcome = "skipped" if final_status is TaskStatus.SKIPPED else "failed"
        classification = classify_failure(error)
        if self._session is not None:
            self._session.record_outcome(task_id, outcome, duration)
            self._session.last_error = str(error)
        logger.warning(
            "Task %s",
            outcome,
            extra={
                "session_id": self._session_id,
                "task_id": task_id,
                "error_kind": classification.kind.value,
                "error": str(error),
            },
        )
        self._publish(f"task_{outcome}", task_id=task_id, error=str(error), **classification.to_details())
        self._record(f"task_{outcome}", {"task_id": task_id, "error": str(error), **classification.to_details()})
        self._save()
        return final_status

    def _interrupt(self, task: Task) -> None:
        """Put an interrupted task back to pending so a later run picks it up again."""

        try:
            self._repository.update_status(task, TaskStatus.PENDING)
        except _REPOSITORY_ERRORS as exc:
            logger.warning(
                "Unable to reset interrupted task",
                extra={"session_id": self._session_id, "task_id": task.qualified_id, "error": str(exc)},
            )
        self._current_task_id = None
        if self._session is not None:
            self._session.current_task_id = None
        self._publish("task_interrupted", task_id=task.qualified_id)


__all__ = ["AutomationEngine"]
