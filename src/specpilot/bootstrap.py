"""Wire SpecPilot components from settings."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .config import SpecPilotSettings
from .engine import AutomationEngine, EventChannel
from .errors import ConfigurationError
from .extensions import ExtensionRegistry
from .prompts import TemplateLoadError, TemplateLoader, TemplatePromptGenerator
from .session import SessionStore
from .storage import ChromaEventStore, ChromaUnavailableError
from .tasks import TaskRepository
from .worker import CliWorker, Worker

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for SpecPilot entry points."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_repository(settings: SpecPilotSettings, workspace: Path | None = None) -> TaskRepository:
    return TaskRepository(workspace or settings.workspace_root, settings.task_globs)


def build_worker(settings: SpecPilotSettings, workspace: Path | None = None) -> CliWorker | None:
    if not settings.worker_command:
        return None
    return CliWorker(
        settings.worker_command,
        prompt_mode=settings.worker_prompt_mode,
        cwd=workspace or settings.workspace_root,
    )


def build_store(settings: SpecPilotSettings) -> tuple[SessionStore | None, dict[str, Any]]:
    """Open the session store; returns ``(None, metadata)`` when Chroma is unavailable."""

    metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "specpilot_sessions",
        "error": None,
    }
    try:
        events = ChromaEventStore(settings.chroma_persist_path)
        events.ping()
    except ChromaUnavailableError as exc:
        metadata["error"] = str(exc)
        logger.warning("Session store unavailable", extra={"error": str(exc)})
        return None, metadata
    metadata["available"] = True
    return SessionStore(events), metadata


def build_prompt_generator(settings: SpecPilotSettings) -> TemplatePromptGenerator:
    try:
        template = TemplateLoader(settings.template_paths).get(settings.prompt_template)
    except TemplateLoadError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc
    return TemplatePromptGenerator(template)


def build_engine(
    settings: SpecPilotSettings,
    workspace: Path | None = None,
    *,
    worker: Worker | None = None,
    store: SessionStore | None = None,
    registry: ExtensionRegistry | None = None,
    channel: EventChannel | None = None,
) -> AutomationEngine:
    """Construct an engine for ``workspace`` (defaults to the configured root)."""

    workspace = Path(workspace or settings.workspace_root)
    worker = worker or build_worker(settings, workspace)
    if worker is None:
        raise ConfigurationError("invalid configuration: SPECPILOT_WORKER_COMMAND is not set")
    return AutomationEngine(
        settings,
        build_repository(settings, workspace),
        worker,
        store=store,
        registry=registry,
        channel=channel,
        prompt_generator=build_prompt_generator(settings),
    )


__all__ = [
    "build_engine",
    "build_prompt_generator",
    "build_repository",
    "build_store",
    "build_worker",
    "configure_logging",
]
