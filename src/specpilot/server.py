"""FastMCP server bootstrap for SpecPilot."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .bootstrap import build_engine, build_repository, build_store, build_worker, configure_logging
from .config import SpecPilotSettings, get_settings
from .prompts import TemplateLoadError, TemplateLoader
from .session import SessionStore
from .supervisor import WorkspaceSupervisor
from .tools import register_tools
from .worker import Worker

logger = logging.getLogger(__name__)


def create_server(
    settings: Optional[SpecPilotSettings] = None,
    worker: Worker | None = None,
    store: SessionStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with automation tools and status resource."""

    settings = settings or get_settings()

    worker_metadata: dict[str, Any] = {
        "command": settings.worker_command,
        "prompt_mode": settings.worker_prompt_mode,
        "available": False,
        "error": None,
    }
    if worker is None:
        try:
            worker = build_worker(settings)
        except ValueError as exc:
            worker_metadata["error"] = str(exc)
    if worker is None:
        worker_metadata["error"] = worker_metadata["error"] or "SPECPILOT_WORKER_COMMAND is not set"
    else:
        worker_metadata["available"] = worker.is_available()
        if not worker_metadata["available"]:
            worker_metadata["error"] = "worker executable not found"

    if store is None:
        store, storage_metadata = build_store(settings)
    else:
        storage_metadata = {"available": True, "path": str(settings.chroma_persist_path), "error": None}

    def _engine_factory(workspace: Path):
        return build_engine(settings, workspace, worker=worker, store=store)

    supervisor = WorkspaceSupervisor(settings, _engine_factory, store=store)

    resume_candidates: list[dict[str, Any]] = []
    if store is not None:
        try:
            candidate = store.latest_unfinished(str(settings.workspace_root))
        except Exception as exc:  # noqa: BLE001 - startup must not fail on a bad store
            storage_metadata["error"] = str(exc)
            candidate = None
        if candidate is not None:
            resume_candidates.append(
                {
                    "session_id": candidate.session_id,
                    "workspace": candidate.workspace,
                    "status": candidate.status.value,
                    "started_at": candidate.started_at.isoformat(),
                    "completed": len(candidate.completed_task_ids),
                    "failed": len(candidate.failed_task_ids),
                }
            )
            logger.info(
                "Unfinished session available for resume",
                extra={"session_id": candidate.session_id, "workspace": candidate.workspace},
            )

    server = FastMCP(
        name="SpecPilot",
        version=__version__,
        instructions=(
            "SpecPilot executes markdown task lists by dispatching each eligible task "
            "to a coding assistant and detecting completion. Use the tools to start, "
            "pause, resume and stop automation and to inspect tasks and sessions."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        supervisor=supervisor,
        repository_factory=lambda workspace: build_repository(settings, workspace),
        store=store,
    )

    @server.resource(
        "resource://specpilot/status",
        name="specpilot_status",
        title="SpecPilot Status",
        description="Provides the current runtime status for the SpecPilot server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            template_ids = sorted(TemplateLoader(settings.template_paths).load_all())
            template_error: str | None = None
        except TemplateLoadError as exc:
            template_ids = []
            template_error = str(exc)

        engines = {
            workspace: engine.status()
            for workspace, engine in supervisor.engines().items()
        }
        state_counts: dict[str, int] = {}
        for status in engines.values():
            state_counts[status["state"]] = state_counts.get(status["state"], 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "workspace": str(settings.workspace_root),
            "templates": {
                "active": settings.prompt_template,
                "ids": template_ids,
                "error": template_error,
            },
            "worker": worker_metadata,
            "storage": storage_metadata,
            "admission": supervisor.admission_report(),
            "engines": engines,
            "state_counts": state_counts,
            "resume_candidates": resume_candidates,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload, default=str)

    setattr(server, "supervisor", supervisor)
    setattr(server, "session_store", store)
    setattr(server, "worker", worker)
    setattr(server, "worker_metadata", worker_metadata)
    setattr(server, "storage_metadata", storage_metadata)
    setattr(server, "resume_candidates", resume_candidates)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the SpecPilot MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching SpecPilot MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "worker_available": getattr(server, "worker_metadata", {}).get("available"),
            "storage_available": getattr(server, "storage_metadata", {}).get("available"),
            "resume_candidates": len(getattr(server, "resume_candidates", [])),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
