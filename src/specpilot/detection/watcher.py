"""Polling file-change watcher feeding the completion detector."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from .detector import CompletionDetector
from .models import FileChangeEvent

logger = logging.getLogger(__name__)


class FileChangeWatcher:
    """Watch a workspace by diffing modification times between scans.

    The first scan only records a baseline. Paths in ``exclude`` (the task
    documents the engine rewrites itself) never produce events.
    """

    def __init__(
        self,
        root: Path,
        detector: CompletionDetector,
        *,
        interval: float = 1.0,
        exclude: Iterable[Path] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(root)
        self._detector = detector
        self._interval = interval
        self._exclude = {Path(path).resolve() for path in exclude}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._snapshot: dict[str, float] | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def scan(self) -> dict[str, float]:
        mtimes: dict[str, float] = {}
        for directory, dirnames, filenames in os.walk(self._root):
            base = Path(directory)
            dirnames[:] = [
                name for name in dirnames if not self._detector.is_ignored(base / name / "_")
            ]
            for filename in filenames:
                path = base / filename
                if path.resolve() in self._exclude or self._detector.is_ignored(path):
                    continue
                try:
                    mtimes[str(path)] = path.stat().st_mtime
                except OSError:
                    continue
        return mtimes

    def poll(self) -> list[FileChangeEvent]:
        """Scan once, record changes in the detector and return them."""

        return self.apply(self.scan())

    def apply(self, current: dict[str, float]) -> list[FileChangeEvent]:
        """Diff a scan against the previous one and record changes in the detector."""

        previous = self._snapshot
        self._snapshot = current
        if previous is None:
            return []

        now = self._clock()
        events: list[FileChangeEvent] = []
        for path, mtime in current.items():
            before = previous.get(path)
            if before is None:
                events.append(FileChangeEvent(path=path, kind="created", timestamp=now))
            elif mtime != before:
                events.append(FileChangeEvent(path=path, kind="modified", timestamp=now))
        for path in previous.keys() - current.keys():
            events.append(FileChangeEvent(path=path, kind="deleted", timestamp=now))

        for event in events:
            self._detector.record_file_change(event.path, event.kind, event.timestamp)
        if events:
            logger.debug("Observed file changes", extra={"count": len(events), "root": str(self._root)})
        return events

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._snapshot = await asyncio.to_thread(self.scan)
        self._task = asyncio.create_task(self._run(self._stop_event), name="specpilot-file-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        task, self._task = self._task, None
        await task

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                current = await asyncio.to_thread(self.scan)
            except OSError as exc:
                logger.warning("File watcher scan failed", extra={"root": str(self._root), "error": str(exc)})
                continue
            self.apply(current)


__all__ = ["FileChangeWatcher"]
