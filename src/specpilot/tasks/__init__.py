"""Task documents: models, parser and repository."""

from .models import SubTask, Task, TaskDocument, TaskStatus, parse_task_id
from .parser import parse_document, serialize_document
from .repository import TaskRepository

__all__ = [
    "SubTask",
    "Task",
    "TaskDocument",
    "TaskRepository",
    "TaskStatus",
    "parse_document",
    "parse_task_id",
    "serialize_document",
]
