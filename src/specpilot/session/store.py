"""Session persistence on top of the event store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from ..storage import ChromaEventStore, StoredEvent
from .models import AutomationSession, SessionStatistics

logger = logging.getLogger(__name__)

SNAPSHOT_EVENT = "session_snapshot"
CLEARED_EVENT = "session_cleared"


def stream_id(session_id: str) -> str:
    return f"session::{session_id}"


class SessionStore:
    """Snapshot automation sessions and reconstruct them after a restart.

    Every ``save`` appends a full snapshot to the session's stream; the most
    recent snapshot wins on load.
    """

    def __init__(
        self,
        events: ChromaEventStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def events(self) -> ChromaEventStore:
        return self._events

    def save(self, session: AutomationSession) -> AutomationSession:
        session.updated_at = self._clock()
        self._events.record_event(
            stream_id=stream_id(session.session_id),
            event_type=SNAPSHOT_EVENT,
            body=session.model_dump(mode="json"),
            metadata={
                "session_id": session.session_id,
                "workspace": session.workspace,
                "status": session.status.value,
                "current_task_id": session.current_task_id,
            },
        )
        logger.debug(
            "Saved session snapshot",
            extra={"session_id": session.session_id, "status": session.status.value},
        )
        return session

    def record_event(self, session_id: str, event_type: str, payload: dict[str, Any]) -> StoredEvent:
        """Append a non-snapshot event (task transitions, errors) to a session stream."""

        return self._events.record_event(
            stream_id=stream_id(session_id),
            event_type=event_type,
            body=payload,
            metadata={"session_id": session_id, "task_id": payload.get("task_id")},
        )

    def history(self, session_id: str, *, limit: int | None = None) -> list[StoredEvent]:
        return self._events.fetch_stream(stream_id(session_id), limit=limit)

    def _decode(self, event: StoredEvent) -> AutomationSession | None:
        try:
            return AutomationSession.model_validate_json(event.document)
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable session snapshot",
                extra={"event_id": event.id, "error": str(exc)},
            )
            return None

    def load(self, session_id: str) -> AutomationSession | None:
        for event in reversed(self.history(session_id)):
            if event.event_type == SNAPSHOT_EVENT:
                session = self._decode(event)
                if session is not None:
                    return session
        return None

    def _cleared_ids(self) -> set[str]:
        return {
            event.metadata.get("session_id", "")
            for event in self._events.search_events(filters={"event_type": CLEARED_EVENT})
        }

    def list_sessions(self, workspace: str | Path | None = None) -> list[AutomationSession]:
        """Latest snapshot of every recorded session, newest first."""

        filters: dict[str, Any] = {"event_type": SNAPSHOT_EVENT}
        if workspace is not None:
            filters["workspace"] = str(workspace)
        cleared = self._cleared_ids()

        latest: dict[str, StoredEvent] = {}
        for event in self._events.search_events(filters=filters):
            session_id = event.metadata.get("session_id", "")
            if session_id in cleared:
                continue
            latest[session_id] = event

        sessions = [session for session in map(self._decode, latest.values()) if session is not None]
        sessions.sort(key=lambda session: session.started_at, reverse=True)
        return sessions

    def latest_unfinished(self, workspace: str | Path) -> AutomationSession | None:
        """Return the newest resumable session for ``workspace``, if any."""

        for session in self.list_sessions(workspace):
            if session.status.resumable:
                return session
        return None

    def clear(self, session_id: str) -> None:
        """Mark a session as discarded so it is no longer offered for resume."""

        self._events.record_event(
            stream_id=stream_id(session_id),
            event_type=CLEARED_EVENT,
            body={"session_id": session_id},
            metadata={"session_id": session_id},
        )
        logger.info("Cleared session", extra={"session_id": session_id})

    def statistics(self, session: AutomationSession) -> SessionStatistics:
        end = session.ended_at or session.updated_at or self._clock()
        duration = max(0.0, (end - session.started_at).total_seconds())
        completed = len(session.completed_task_ids)
        failed = len(session.failed_task_ids)
        skipped = len(session.skipped_task_ids)
        total = completed + failed + skipped
        durations = list(session.task_durations.values())
        return SessionStatistics(
            session_id=session.session_id,
            duration=round(duration, 3),
            total_tasks=total,
            completed=completed,
            failed=failed,
            skipped=skipped,
            completion_rate=completed / total if total else 0.0,
            failure_rate=failed / total if total else 0.0,
            average_task_time=sum(durations) / len(durations) if durations else None,
        )


__all__ = ["CLEARED_EVENT", "SNAPSHOT_EVENT", "SessionStore", "stream_id"]
