"""Error taxonomy and failure classification for the orchestration core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Coarse error categories used for retry decisions and reporting."""

    STRUCTURAL = "structural"
    CONFLICT = "conflict"
    WORKER_UNAVAILABLE = "worker_unavailable"
    WORKER = "worker"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class SpecPilotError(RuntimeError):
    """Base class for SpecPilot errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = True


class StructuralError(SpecPilotError):
    """Raised when a task document is malformed."""

    kind = ErrorKind.STRUCTURAL
    retryable = False

    def __init__(self, message: str, *, document: str | None = None, line: int | None = None) -> None:
        location = ""
        if document is not None:
            location = f"{document}:{line}: " if line is not None else f"{document}: "
        super().__init__(f"{location}{message}")
        self.document = document
        self.line = line


class DependencyCycleError(StructuralError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str], *, document: str | None = None) -> None:
        super().__init__(f"dependency cycle detected: {' -> '.join(cycle)}", document=document)
        self.cycle = cycle


class StatusConflictError(SpecPilotError):
    """Raised when a document changed underneath a pending status write."""

    kind = ErrorKind.CONFLICT
    retryable = False


class WorkerError(SpecPilotError):
    """Raised when the worker reports a failure for a submitted prompt."""

    kind = ErrorKind.WORKER

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class WorkerUnavailableError(WorkerError):
    """Raised when the worker cannot be reached."""

    kind = ErrorKind.WORKER_UNAVAILABLE


class TaskTimeoutError(SpecPilotError):
    """Raised when no completion signal arrived within the task budget."""

    kind = ErrorKind.TIMEOUT


class PermissionDeniedError(SpecPilotError):
    """Raised when the workspace is not authorized for automation."""

    kind = ErrorKind.PERMISSION
    retryable = False


class ConfigurationError(SpecPilotError):
    """Raised when a configuration value is invalid."""

    kind = ErrorKind.CONFIGURATION
    retryable = False


_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "unauthorized",
    "forbidden",
    "not trusted",
    "untrusted",
    "invalid api key",
    "authentication",
)
_CONFIGURATION_PATTERNS: tuple[str, ...] = (
    "invalid configuration",
    "configuration error",
    "unknown option",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "overloaded",
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    retryable: bool
    reason_code: str
    matched_pattern: str | None = None

    def to_details(self) -> dict[str, object]:
        return {
            "error_kind": self.kind.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_pattern": self.matched_pattern,
        }


def _match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify an exception raised while executing a task.

    Typed SpecPilot errors keep their declared kind. Worker errors are further
    inspected so that auth/trust failures become fatal and throttling or
    network failures stay transient. Anything unrecognised is retryable.
    """

    if isinstance(error, (PermissionDeniedError, ConfigurationError, StructuralError, StatusConflictError)):
        return FailureClassification(kind=error.kind, retryable=False, reason_code=f"{error.kind.value}_error")

    if isinstance(error, TaskTimeoutError):
        return FailureClassification(kind=ErrorKind.TIMEOUT, retryable=True, reason_code="task_timeout")

    if isinstance(error, WorkerError):
        text = f"{error} {error.stderr}".lower()
        pattern = _match(text, _PERMISSION_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                kind=ErrorKind.PERMISSION,
                retryable=False,
                reason_code="worker_permission",
                matched_pattern=pattern,
            )
        pattern = _match(text, _CONFIGURATION_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                kind=ErrorKind.CONFIGURATION,
                retryable=False,
                reason_code="worker_configuration",
                matched_pattern=pattern,
            )
        pattern = _match(text, _TRANSIENT_PATTERNS)
        return FailureClassification(
            kind=error.kind,
            retryable=True,
            reason_code="worker_transient" if pattern else "worker_failure",
            matched_pattern=pattern,
        )

    if isinstance(error, (ConnectionError, OSError)):
        return FailureClassification(
            kind=ErrorKind.WORKER_UNAVAILABLE,
            retryable=True,
            reason_code="os_error",
        )

    text = str(error).lower()
    pattern = _match(text, _PERMISSION_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            kind=ErrorKind.PERMISSION,
            retryable=False,
            reason_code="permission_message",
            matched_pattern=pattern,
        )
    return FailureClassification(kind=ErrorKind.UNKNOWN, retryable=True, reason_code="unknown")


__all__ = [
    "ConfigurationError",
    "DependencyCycleError",
    "ErrorKind",
    "FailureClassification",
    "PermissionDeniedError",
    "SpecPilotError",
    "StatusConflictError",
    "StructuralError",
    "TaskTimeoutError",
    "WorkerError",
    "WorkerUnavailableError",
    "classify_failure",
]
