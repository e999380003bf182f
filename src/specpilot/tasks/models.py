"""Task tree data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def resolved(self) -> bool:
        """Whether dependents may proceed past a task in this status."""

        return self in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)


STATUS_MARKERS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: " ",
    TaskStatus.IN_PROGRESS: "~",
    TaskStatus.COMPLETED: "x",
    # failed and skipped have no marker of their own in the document grammar
    TaskStatus.FAILED: " ",
    TaskStatus.SKIPPED: " ",
}

MARKER_STATUSES: dict[str, TaskStatus] = {
    " ": TaskStatus.PENDING,
    "~": TaskStatus.IN_PROGRESS,
    "x": TaskStatus.COMPLETED,
    "X": TaskStatus.COMPLETED,
}


def parse_task_id(task_id: str) -> tuple[int, ...]:
    """Return the numeric sort key for a dotted identifier such as ``2.3``."""

    return tuple(int(part) for part in task_id.split("."))


def parent_id(task_id: str) -> str | None:
    head, sep, _ = task_id.rpartition(".")
    return head if sep else None


@dataclass(slots=True)
class SubTask:
    id: str
    title: str
    status: TaskStatus
    optional: bool = False
    description: list[str] = field(default_factory=list)
    line_number: int = 0
    marker_column: int = 0

    @property
    def sort_key(self) -> tuple[int, ...]:
        return parse_task_id(self.id)


@dataclass(slots=True)
class Task:
    """A top-level list item of a task document."""

    id: str
    title: str
    status: TaskStatus
    document: str
    path: Path
    line_number: int
    marker_column: int = 0
    optional: bool = False
    description: list[str] = field(default_factory=list)
    subtasks: list[SubTask] = field(default_factory=list)
    requirements: list[str] = field(default_factory=list)
    dependencies: list[str] | None = None

    @property
    def qualified_id(self) -> str:
        return f"{self.document}/{self.id}"

    @property
    def sort_key(self) -> tuple[int, ...]:
        return parse_task_id(self.id)

    def incomplete_required_subtasks(self) -> list[SubTask]:
        return [
            subtask
            for subtask in self.subtasks
            if not subtask.optional and subtask.status is not TaskStatus.COMPLETED
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "qualified_id": self.qualified_id,
            "title": self.title,
            "status": self.status.value,
            "optional": self.optional,
            "document": self.document,
            "path": str(self.path),
            "line_number": self.line_number,
            "description": list(self.description),
            "requirements": list(self.requirements),
            "dependencies": list(self.dependencies) if self.dependencies is not None else None,
            "subtasks": [
                {
                    "id": subtask.id,
                    "title": subtask.title,
                    "status": subtask.status.value,
                    "optional": subtask.optional,
                    "description": list(subtask.description),
                    "line_number": subtask.line_number,
                }
                for subtask in self.subtasks
            ],
        }


@dataclass(slots=True)
class TaskDocument:
    """A parsed task document together with its original lines."""

    name: str
    path: Path
    lines: list[str]
    tasks: list[Task] = field(default_factory=list)

    def iter_tasks(self) -> Iterator[Task]:
        return iter(sorted(self.tasks, key=lambda task: task.sort_key))

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def known_ids(self) -> set[str]:
        ids = {task.id for task in self.tasks}
        for task in self.tasks:
            ids.update(subtask.id for subtask in task.subtasks)
        return ids


__all__ = [
    "MARKER_STATUSES",
    "STATUS_MARKERS",
    "SubTask",
    "Task",
    "TaskDocument",
    "TaskStatus",
    "parent_id",
    "parse_task_id",
]
