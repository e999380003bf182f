"""Storage abstractions for SpecPilot."""

from .chroma import ChromaEventStore, ChromaUnavailableError, StoredEvent

__all__ = ["ChromaEventStore", "ChromaUnavailableError", "StoredEvent"]
