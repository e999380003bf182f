"""Multi-signal completion detector."""

from __future__ import annotations

import fnmatch
import logging
import re
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

from ..tasks.models import Task, TaskStatus
from .models import (
    CompletionDetectionResult,
    CompletionHeuristics,
    CompletionSignals,
    DetectionMethod,
    FileChangeEvent,
)

if TYPE_CHECKING:
    from ..config import SpecPilotSettings
    from ..extensions import DetectorExtension

logger = logging.getLogger(__name__)

COMPLETION_THRESHOLD = 0.7
RESPONSE_THRESHOLD = 0.6
AMBIGUOUS_RANGE = (0.4, 0.7)
AMBIGUOUS_INDICATOR = "ambiguous state - needs verification"

POSITIVE_INDICATORS: tuple[str, ...] = (
    "completed",
    "done",
    "finished",
    "success",
    "implemented",
    "created",
    "updated",
    "fixed",
)
FILE_OPERATION_INDICATORS: tuple[str, ...] = (
    "created file",
    "updated file",
    "modified",
    "wrote to",
)
NEGATIVE_INDICATORS: tuple[str, ...] = (
    "failed",
    "error",
    "unable to",
    "could not",
    "cannot",
)

POSITIVE_WEIGHT = 0.2
FILE_OPERATION_WEIGHT = 0.2
NEGATIVE_WEIGHT = 0.3
CODE_BLOCK_WEIGHT = 0.25
CODE_BLOCK_CAP = 0.5
FILE_CHANGE_CONFIDENCE = 0.8


def _phrase_pattern(phrase: str) -> re.Pattern[str]:
    return re.compile(r"\b" + r"\s+".join(re.escape(word) for word in phrase.split()) + r"\b")


_POSITIVE = [(phrase, _phrase_pattern(phrase)) for phrase in POSITIVE_INDICATORS]
_FILE_OPERATIONS = [(phrase, _phrase_pattern(phrase)) for phrase in FILE_OPERATION_INDICATORS]
_NEGATIVE = [(phrase, _phrase_pattern(phrase)) for phrase in NEGATIVE_INDICATORS]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class CompletionDetector:
    """Turn weak, delayed observations into a completion verdict.

    Each signal produces its own result; results are combined with an
    OR-of-strong-evidence policy and ambiguous confidences are downgraded.
    The only state kept between calls is the recent file-change history.
    """

    def __init__(
        self,
        heuristics: CompletionHeuristics | None = None,
        *,
        timeout: float = 300.0,
        clock: Callable[[], datetime] | None = None,
        extensions: Callable[[], Sequence["DetectorExtension"]] | None = None,
    ) -> None:
        self._heuristics = heuristics or CompletionHeuristics()
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._extensions = extensions or (lambda: ())
        self._changes: deque[FileChangeEvent] = deque()

    @classmethod
    def from_settings(
        cls,
        settings: "SpecPilotSettings",
        *,
        clock: Callable[[], datetime] | None = None,
        extensions: Callable[[], Sequence["DetectorExtension"]] | None = None,
    ) -> "CompletionDetector":
        heuristics = CompletionHeuristics(
            min_file_changes=settings.min_file_changes,
            lookback_window=settings.lookback_window,
            quiet_period=settings.quiet_period,
            ignore_patterns=tuple(settings.ignore_patterns),
        )
        return cls(heuristics, timeout=settings.task_timeout, clock=clock, extensions=extensions)

    @property
    def heuristics(self) -> CompletionHeuristics:
        return self._heuristics

    @property
    def timeout(self) -> float:
        return self._timeout

    # ------------------------------------------------------------------
    # file-change bookkeeping
    # ------------------------------------------------------------------

    def is_ignored(self, path: str | PurePath) -> bool:
        normalized = "/" + PurePath(path).as_posix().lstrip("/")
        return any(fnmatch.fnmatch(normalized, pattern) for pattern in self._heuristics.ignore_patterns)

    def record_file_change(
        self,
        path: str | PurePath,
        kind: str = "modified",
        timestamp: datetime | None = None,
    ) -> bool:
        """Add a change to the history; returns False when the path is ignored."""

        if self.is_ignored(path):
            return False
        event = FileChangeEvent(path=str(path), kind=kind, timestamp=timestamp or self._clock())
        self._changes.append(event)
        self._roll_off(self._clock())
        return True

    def recent_file_changes(self) -> list[FileChangeEvent]:
        return list(self._changes)

    def reset(self) -> None:
        self._changes.clear()

    def _roll_off(self, now: datetime) -> None:
        horizon = now - timedelta(seconds=self._heuristics.lookback_window)
        while self._changes and self._changes[0].timestamp < horizon:
            self._changes.popleft()

    # ------------------------------------------------------------------
    # individual signals
    # ------------------------------------------------------------------

    def detect_from_response(self, response: str) -> CompletionDetectionResult:
        indicators: list[str] = []
        confidence = 0.0
        lowered = response.lower()

        for phrase, pattern in _POSITIVE:
            if pattern.search(lowered):
                indicators.append(phrase)
                confidence += POSITIVE_WEIGHT

        code_blocks = response.count("```") // 2
        if code_blocks:
            indicators.append(f"{code_blocks} code blocks")
            confidence += min(code_blocks * CODE_BLOCK_WEIGHT, CODE_BLOCK_CAP)

        for phrase, pattern in _FILE_OPERATIONS:
            if pattern.search(lowered):
                indicators.append(phrase)
                confidence += FILE_OPERATION_WEIGHT

        for phrase, pattern in _NEGATIVE:
            if pattern.search(lowered):
                indicators.append(f"negative: {phrase}")
                confidence -= NEGATIVE_WEIGHT

        confidence = _clamp(confidence)
        return CompletionDetectionResult(
            completed=confidence >= RESPONSE_THRESHOLD,
            confidence=confidence,
            method=DetectionMethod.RESPONSE_INDICATOR,
            indicators=tuple(indicators),
            timestamp=self._clock(),
            context={"code_blocks": code_blocks},
        )

    def detect_from_file_changes(
        self, changes: Iterable[FileChangeEvent] | None = None
    ) -> CompletionDetectionResult:
        now = self._clock()
        if changes is None:
            self._roll_off(now)
            candidates = list(self._changes)
        else:
            candidates = list(changes)
        horizon = now - timedelta(seconds=self._heuristics.lookback_window)
        window = [
            change
            for change in candidates
            if change.timestamp >= horizon and not self.is_ignored(change.path)
        ]

        if len(window) >= self._heuristics.min_file_changes:
            last_change = max(change.timestamp for change in window)
            idle = (now - last_change).total_seconds()
            if idle >= self._heuristics.quiet_period:
                return CompletionDetectionResult(
                    completed=True,
                    confidence=FILE_CHANGE_CONFIDENCE,
                    method=DetectionMethod.FILE_CHANGE,
                    indicators=tuple(f"{change.kind}: {change.path}" for change in window),
                    timestamp=now,
                    context={"file_changes": len(window), "idle_seconds": idle},
                )
            return CompletionDetectionResult(
                completed=False,
                confidence=0.0,
                method=DetectionMethod.FILE_CHANGE,
                indicators=(f"waiting for quiet period ({idle:.1f}s idle)",),
                timestamp=now,
                context={"file_changes": len(window), "idle_seconds": idle},
            )

        return CompletionDetectionResult(
            completed=False,
            confidence=0.0,
            method=DetectionMethod.FILE_CHANGE,
            indicators=(),
            timestamp=now,
            context={"file_changes": len(window)},
        )

    def detect_from_task_status(self, status: TaskStatus) -> CompletionDetectionResult:
        completed = status is TaskStatus.COMPLETED
        return CompletionDetectionResult(
            completed=completed,
            confidence=1.0 if completed else 0.0,
            method=DetectionMethod.TASK_STATUS,
            indicators=("task status: completed",) if completed else (),
            timestamp=self._clock(),
        )

    # ------------------------------------------------------------------
    # combination
    # ------------------------------------------------------------------

    def combine(self, results: Sequence[CompletionDetectionResult]) -> CompletionDetectionResult:
        """Combine independent signal results.

        Completed when any single result is completed with confidence at or
        above the completion threshold; confidence is the strongest single
        confidence, never an average.
        """

        now = self._clock()
        if not results:
            return CompletionDetectionResult(
                completed=False,
                confidence=0.0,
                method=DetectionMethod.HEURISTIC,
                indicators=(),
                timestamp=now,
            )
        if len(results) == 1:
            return results[0]

        strong = [result for result in results if result.completed and result.confidence >= COMPLETION_THRESHOLD]
        contributing = [result for result in results if result.confidence > 0]
        if len(contributing) == 1:
            method = contributing[0].method
        else:
            method = DetectionMethod.COMBINED

        indicators: list[str] = []
        for result in results:
            indicators.extend(result.indicators)

        return CompletionDetectionResult(
            completed=bool(strong),
            confidence=max(result.confidence for result in results),
            method=method,
            indicators=tuple(indicators),
            timestamp=now,
            context={
                "methods": [result.method.value for result in results],
                "confidences": [round(result.confidence, 4) for result in results],
            },
        )

    def handle_ambiguous(self, result: CompletionDetectionResult) -> CompletionDetectionResult:
        low, high = AMBIGUOUS_RANGE
        if low <= result.confidence < high:
            return CompletionDetectionResult(
                completed=False,
                confidence=result.confidence,
                method=result.method,
                indicators=(*result.indicators, AMBIGUOUS_INDICATOR),
                timestamp=result.timestamp,
                context=result.context,
            )
        return result

    def evaluate(
        self,
        task: Task,
        elapsed: float,
        signals: CompletionSignals | None = None,
    ) -> CompletionDetectionResult:
        """Produce a verdict for ``task`` after ``elapsed`` seconds."""

        signals = signals or CompletionSignals()
        results: list[CompletionDetectionResult] = []

        status = signals.task_status if signals.task_status is not None else task.status
        if status is TaskStatus.COMPLETED:
            results.append(self.detect_from_task_status(status))

        if signals.response_text:
            results.append(self.detect_from_response(signals.response_text))

        file_result = self.detect_from_file_changes(signals.file_changes)
        if file_result.context and file_result.context.get("file_changes"):
            results.append(file_result)

        for extension in self._extensions():
            try:
                extra = extension.evaluate(task, elapsed, signals)
            except Exception as exc:  # noqa: BLE001 - extensions must not break detection
                logger.warning(
                    "Detector extension failed",
                    extra={"extension": getattr(extension, "name", type(extension).__name__), "error": str(exc)},
                )
                continue
            if extra is not None:
                results.append(extra)

        result = self.handle_ambiguous(self.combine(results))
        if result.completed:
            return result

        if elapsed >= self._timeout:
            return CompletionDetectionResult(
                completed=False,
                confidence=result.confidence,
                method=DetectionMethod.TIMEOUT,
                indicators=("timeout", *result.indicators),
                timestamp=self._clock(),
                context={"elapsed": elapsed, "timeout": self._timeout},
            )
        return result


__all__ = [
    "AMBIGUOUS_INDICATOR",
    "COMPLETION_THRESHOLD",
    "CompletionDetector",
]
