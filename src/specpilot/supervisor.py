"""Run several workspace sessions side by side under soft resource caps."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import psutil

from .config import SpecPilotSettings
from .engine import AutomationEngine, EngineState
from .errors import SpecPilotError
from .session import SessionStore

logger = logging.getLogger(__name__)

_ACTIVE_STATES = (EngineState.RUNNING, EngineState.PAUSED, EngineState.STOPPING)


class AdmissionError(SpecPilotError):
    """Raised when a new session would exceed a soft resource cap."""


def memory_usage_mb() -> float:
    """Current resident memory of this process in MiB."""

    return psutil.Process().memory_info().rss / 1024 / 1024


def load_average() -> float:
    return psutil.getloadavg()[0]


class WorkspaceSupervisor:
    """Admit, track and stop one engine per workspace.

    Caps are consulted only when a session is admitted; running sessions are
    never pre-empted.
    """

    def __init__(
        self,
        settings: SpecPilotSettings,
        engine_factory: Callable[[Path], AutomationEngine],
        *,
        store: SessionStore | None = None,
        memory_probe: Callable[[], float] = memory_usage_mb,
        load_probe: Callable[[], float] = load_average,
    ) -> None:
        self._settings = settings
        self._engine_factory = engine_factory
        self._store = store
        self._memory_probe = memory_probe
        self._load_probe = load_probe
        self._engines: dict[Path, AutomationEngine] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(workspace: Path | str) -> Path:
        return Path(workspace).expanduser().resolve()

    def get(self, workspace: Path | str) -> AutomationEngine | None:
        return self._engines.get(self._key(workspace))

    def engines(self) -> dict[str, AutomationEngine]:
        return {str(path): engine for path, engine in self._engines.items()}

    def active_count(self) -> int:
        return sum(1 for engine in self._engines.values() if engine.state in _ACTIVE_STATES)

    def admission_report(self) -> dict[str, Any]:
        return {
            "active_sessions": self.active_count(),
            "max_concurrent_sessions": self._settings.max_concurrent_sessions,
            "memory_mb": round(self._memory_probe(), 1),
            "memory_soft_limit_mb": self._settings.memory_soft_limit_mb,
            "load_average": round(self._load_probe(), 2),
            "load_soft_limit": self._settings.load_soft_limit,
        }

    def _check_admission(self) -> None:
        if self.active_count() >= self._settings.max_concurrent_sessions:
            raise AdmissionError(
                f"{self._settings.max_concurrent_sessions} sessions already running"
            )
        limit = self._settings.memory_soft_limit_mb
        if limit is not None:
            used = self._memory_probe()
            if used >= limit:
                raise AdmissionError(f"memory usage {used:.0f} MiB is above the soft limit of {limit:.0f} MiB")
        limit = self._settings.load_soft_limit
        if limit is not None:
            load = self._load_probe()
            if load >= limit:
                raise AdmissionError(f"load average {load:.2f} is above the soft limit of {limit:.2f}")

    async def start(self, workspace: Path | str, *, resume: bool = False) -> AutomationEngine:
        """Admit and start a session for ``workspace``.

        With ``resume`` the newest unfinished session of the workspace is
        continued when one exists.
        """

        key = self._key(workspace)
        async with self._lock:
            engine = self._engines.get(key)
            if engine is not None and engine.state in _ACTIVE_STATES:
                raise AdmissionError(f"workspace {key} already has an active session")
            self._check_admission()

            if engine is None:
                engine = self._engine_factory(key)
                self._engines[key] = engine
            elif engine.state is not EngineState.IDLE:
                engine.reset()

            previous = None
            if resume and self._store is not None:
                previous = self._store.latest_unfinished(str(key))
            session = await engine.start(previous)
            logger.info(
                "Admitted workspace session",
                extra={"workspace": str(key), "session_id": session.session_id, "resumed": previous is not None},
            )
            return engine

    async def stop(self, workspace: Path | str) -> AutomationEngine | None:
        engine = self.get(workspace)
        if engine is not None:
            await engine.stop()
        return engine

    async def stop_all(self) -> None:
        await asyncio.gather(*(engine.stop() for engine in self._engines.values()))


__all__ = ["AdmissionError", "WorkspaceSupervisor", "load_average", "memory_usage_mb"]
