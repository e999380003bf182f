"""Chroma-based event persistence."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by SpecPilot."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by SpecPilot."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class StoredEvent:
    """An event read back from a stream."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def payload(self) -> Any:
        """Decode the JSON document, falling back to the raw string."""

        try:
            return json.loads(self.document)
        except json.JSONDecodeError:
            return self.document


def _metadata_value(value: Any) -> str | int | float | bool | None:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return json.dumps(value, default=str)


class ChromaEventStore:
    """Append-only event streams kept in a single Chroma collection.

    Each stream is identified by ``stream_id`` (for example
    ``session::<id>``). Metadata values must be scalars in Chroma, so
    ``None`` values are dropped and containers are JSON encoded.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "specpilot_sessions",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError("chromadb package is not installed") from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[StoredEvent]:
        events: list[StoredEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                StoredEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document or "",
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> StoredEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {}
        for key, value in (metadata or {}).items():
            converted = _metadata_value(value)
            if converted is not None:
                record_metadata[key] = converted
        record_metadata.update(
            {
                "stream_id": stream_id,
                "event_type": event_type,
                "timestamp": timestamp.isoformat(),
                "sequence": counter,
            }
        )

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return StoredEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_stream(self, stream_id: str, *, limit: int | None = None) -> list[StoredEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"stream_id": stream_id})
        events = self._convert_result(result)
        return events[-limit:] if limit else events

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[StoredEvent]:
        """Return events matching ``filters`` and containing ``query``.

        Only the first filter key is pushed down to Chroma; the remaining
        keys are applied here.
        """

        collection = self._ensure_collection()
        filters = dict(filters or {})
        where = None
        if filters:
            key = next(iter(filters))
            where = {key: filters.pop(key)}
        events = self._convert_result(collection.get(where=where))
        if filters:
            events = [
                event
                for event in events
                if all(event.metadata.get(key) == value for key, value in filters.items())
            ]
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = ["ChromaEventStore", "ChromaUnavailableError", "StoredEvent"]
