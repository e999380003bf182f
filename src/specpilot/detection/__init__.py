"""Completion detection from response text, file changes and task status."""

from .detector import AMBIGUOUS_INDICATOR, COMPLETION_THRESHOLD, CompletionDetector
from .models import (
    CompletionDetectionResult,
    CompletionHeuristics,
    CompletionSignals,
    DetectionMethod,
    FileChangeEvent,
)
from .watcher import FileChangeWatcher

__all__ = [
    "AMBIGUOUS_INDICATOR",
    "COMPLETION_THRESHOLD",
    "CompletionDetectionResult",
    "CompletionDetector",
    "CompletionHeuristics",
    "CompletionSignals",
    "DetectionMethod",
    "FileChangeEvent",
    "FileChangeWatcher",
]
