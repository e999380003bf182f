"""In-process event channel for engine notifications."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EngineEvent:
    type: str
    payload: dict[str, Any]
    timestamp: datetime
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
        }


@dataclass(slots=True)
class _Subscription:
    queue: asyncio.Queue[EngineEvent]
    types: frozenset[str] | None = field(default=None)


class EventChannel:
    """Fan engine events out to subscriber queues.

    Publishing never blocks: when a bounded subscriber queue is full the
    oldest pending event is dropped for that subscriber.
    """

    def __init__(
        self,
        *,
        history_size: int = 200,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._subscriptions: list[_Subscription] = []
        self._history: deque[EngineEvent] = deque(maxlen=history_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def subscribe(self, *types: str, maxsize: int = 0) -> asyncio.Queue[EngineEvent]:
        queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscriptions.append(_Subscription(queue=queue, types=frozenset(types) or None))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EngineEvent]) -> None:
        self._subscriptions = [sub for sub in self._subscriptions if sub.queue is not queue]

    def history(self, limit: int | None = None) -> list[EngineEvent]:
        events = list(self._history)
        return events[-limit:] if limit else events

    def publish(self, event_type: str, *, session_id: str | None = None, **payload: Any) -> EngineEvent:
        event = EngineEvent(type=event_type, payload=payload, timestamp=self._clock(), session_id=session_id)
        self._history.append(event)
        logger.debug("Engine event", extra={"event_type": event_type, "session_id": session_id})
        for subscription in self._subscriptions:
            if subscription.types is not None and event_type not in subscription.types:
                continue
            queue = subscription.queue
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        return event


__all__ = ["EngineEvent", "EventChannel"]
