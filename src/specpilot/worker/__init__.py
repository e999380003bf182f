"""Worker implementations that receive generated prompts."""

from .runner import CliWorker, FakeWorker, Worker, WorkerExecutionResult
from .utils import sanitize_environment

__all__ = [
    "CliWorker",
    "FakeWorker",
    "Worker",
    "WorkerExecutionResult",
    "sanitize_environment",
]
