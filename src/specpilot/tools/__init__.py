"""Tool registration for the SpecPilot MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from fastmcp import Context, FastMCP

from ..config import SpecPilotSettings
from ..errors import StructuralError
from ..session import SessionStore
from ..supervisor import WorkspaceSupervisor
from ..tasks import TaskRepository, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_automation: Any
    pause_automation: Any
    resume_automation: Any
    stop_automation: Any
    automation_status: Any
    list_tasks: Any
    next_task: Any
    list_sessions: Any


def register_tools(
    server: FastMCP,
    *,
    settings: SpecPilotSettings,
    supervisor: WorkspaceSupervisor,
    repository_factory: Callable[[Path], TaskRepository],
    store: SessionStore | None,
) -> ToolHandles:
    """Register SpecPilot's MCP tools on the server."""

    def _workspace(workspace: str | None) -> Path:
        return Path(workspace).expanduser().resolve() if workspace else Path(settings.workspace_root)

    def _require_engine(workspace: str | None):
        path = _workspace(workspace)
        engine = supervisor.get(path)
        if engine is None:
            raise ValueError(f"No automation session for workspace {path}")
        return engine

    def _repository(workspace: str | None) -> TaskRepository:
        path = _workspace(workspace)
        engine = supervisor.get(path)
        if engine is not None:
            return engine.repository
        repository = repository_factory(path)
        repository.discover()
        return repository

    async def _start_automation(
        workspace: str | None = None,
        resume: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start automating the task documents of a workspace."""

        engine = await supervisor.start(_workspace(workspace), resume=resume)
        status = engine.status()
        _emit_log(
            context,
            "info",
            "Started automation",
            extra={
                "workspace": str(_workspace(workspace)),
                "session_id": (status["session"] or {}).get("session_id"),
                "state": status["state"],
            },
        )
        return status

    async def _pause_automation(workspace: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Pause after the task currently in flight."""

        engine = _require_engine(workspace)
        await engine.pause()
        _emit_log(context, "info", "Pause requested", extra={"workspace": str(_workspace(workspace))})
        return engine.status()

    async def _resume_automation(workspace: str | None = None, context: Context | None = None) -> dict[str, Any]:
        engine = _require_engine(workspace)
        await engine.resume()
        _emit_log(context, "info", "Resumed automation", extra={"workspace": str(_workspace(workspace))})
        return engine.status()

    async def _stop_automation(workspace: str | None = None, context: Context | None = None) -> dict[str, Any]:
        engine = _require_engine(workspace)
        await engine.stop()
        _emit_log(context, "warning", "Stopped automation", extra={"workspace": str(_workspace(workspace))})
        return engine.status()

    def _automation_status(workspace: str | None = None, context: Context | None = None) -> dict[str, Any]:
        engine = supervisor.get(_workspace(workspace))
        if engine is None:
            return {"state": "idle", "session": None, "workspace": str(_workspace(workspace))}
        status = engine.status()
        status["workspace"] = str(_workspace(workspace))
        _emit_log(context, "debug", "Automation status", extra={"state": status["state"]})
        return status

    def _list_tasks(
        workspace: str | None = None,
        status: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List parsed tasks, optionally filtered by status."""

        wanted = TaskStatus(status) if status else None
        repository = _repository(workspace)
        tasks = [
            task.to_dict()
            for task in repository.tasks()
            if wanted is None or task.status is wanted
        ]
        _emit_log(context, "debug", "Listing tasks", extra={"count": len(tasks)})
        return {
            "tasks": tasks,
            "errors": [str(error) for error in repository.errors],
        }

    def _next_task(workspace: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Return the task that would be dispatched next."""

        repository = _repository(workspace)
        try:
            task = repository.next_eligible()
        except StructuralError as exc:
            _emit_log(context, "warning", "Task documents are invalid", extra={"error": str(exc)})
            return {"task": None, "error": str(exc)}
        return {"task": task.to_dict() if task is not None else None, "error": None}

    def _list_sessions(
        workspace: str | None = None,
        limit: int = 10,
        context: Context | None = None,
    ) -> dict[str, Any]:
        if store is None:
            raise RuntimeError("Session store is unavailable; enable persistence before using this tool")
        sessions = store.list_sessions(str(_workspace(workspace)) if workspace else None)[:limit]
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return {
            "sessions": [
                {
                    **session.model_dump(mode="json"),
                    "statistics": store.statistics(session).to_dict(),
                }
                for session in sessions
            ]
        }

    tool_start = server.tool(
        name="start_automation",
        description=(
            "Start automated execution of a workspace's task documents. Set resume=true "
            "to continue the newest unfinished session."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Dispatches tasks to the configured worker without confirmation",
            }
        },
    )(_start_automation)

    tool_pause = server.tool(
        name="pause_automation",
        description="Pause automation once the task in flight has finished.",
    )(_pause_automation)

    tool_resume = server.tool(
        name="resume_automation",
        description="Resume a paused automation session.",
    )(_resume_automation)

    tool_stop = server.tool(
        name="stop_automation",
        description="Stop automation; the task in flight is returned to pending.",
    )(_stop_automation)

    tool_status = server.tool(
        name="automation_status",
        description="Report engine state, current task and session progress.",
    )(_automation_status)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List parsed tasks with status, subtasks and requirement references.",
    )(_list_tasks)

    tool_next_task = server.tool(
        name="next_task",
        description="Show the next task eligible for dispatch.",
    )(_next_task)

    tool_list_sessions = server.tool(
        name="list_sessions",
        description="List recorded automation sessions with statistics, newest first.",
    )(_list_sessions)

    return ToolHandles(
        start_automation=tool_start,
        pause_automation=tool_pause,
        resume_automation=tool_resume,
        stop_automation=tool_stop,
        automation_status=tool_status,
        list_tasks=tool_list_tasks,
        next_task=tool_next_task,
        list_sessions=tool_list_sessions,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
