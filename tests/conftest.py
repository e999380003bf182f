from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any
import textwrap

import pytest

from specpilot.session import SessionStore
from specpilot.storage import ChromaEventStore


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if ids is not None:
            filtered = [record for record in filtered if record.id in ids]
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def event_store(tmp_path: Path, stub_client: StubClient) -> ChromaEventStore:
    return ChromaEventStore(tmp_path / "chroma", client_factory=lambda: stub_client)


@pytest.fixture
def session_store(event_store: ChromaEventStore) -> SessionStore:
    return SessionStore(event_store)


def write_tasks(root: Path, body: str, *, name: str = "feature") -> Path:
    """Write a task document under ``root/.kiro/specs/<name>/tasks.md``."""

    path = root / ".kiro" / "specs" / name / "tasks.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


@pytest.fixture(name="write_tasks")
def write_tasks_fixture():
    return write_tasks
