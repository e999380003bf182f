"""Completion detection data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from ..tasks.models import TaskStatus


class DetectionMethod(str, Enum):
    FILE_CHANGE = "file-change"
    RESPONSE_INDICATOR = "response-indicator"
    TASK_STATUS = "task-status"
    COMBINED = "combined"
    TIMEOUT = "timeout"
    HEURISTIC = "heuristic"


@dataclass(slots=True, frozen=True)
class CompletionDetectionResult:
    """Verdict of a single detection attempt."""

    completed: bool
    confidence: float
    method: DetectionMethod
    indicators: tuple[str, ...]
    timestamp: datetime
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "confidence": round(self.confidence, 4),
            "method": self.method.value,
            "indicators": list(self.indicators),
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


@dataclass(slots=True, frozen=True)
class FileChangeEvent:
    path: str
    kind: str
    timestamp: datetime


@dataclass(slots=True)
class CompletionSignals:
    """Observations available to one ``evaluate`` call.

    ``file_changes`` overrides the detector's own change history when given.
    """

    response_text: str | None = None
    file_changes: Sequence[FileChangeEvent] | None = None
    task_status: TaskStatus | None = None


@dataclass(slots=True)
class CompletionHeuristics:
    min_file_changes: int = 1
    lookback_window: float = 30.0
    quiet_period: float = 5.0
    ignore_patterns: tuple[str, ...] = field(
        default_factory=lambda: ("*/node_modules/*", "*/dist/*", "*/build/*", "*/.git/*", "*.tmp")
    )


__all__ = [
    "CompletionDetectionResult",
    "CompletionHeuristics",
    "CompletionSignals",
    "DetectionMethod",
    "FileChangeEvent",
]
