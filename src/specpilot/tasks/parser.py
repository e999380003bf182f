"""Markdown task document parser and serializer."""

from __future__ import annotations

import re
from pathlib import Path

from ..errors import StructuralError
from .models import (
    MARKER_STATUSES,
    STATUS_MARKERS,
    SubTask,
    Task,
    TaskDocument,
    TaskStatus,
    parent_id,
)

TASK_LINE_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)[-*+][ \t]*\[(?P<mark>[ ~xX])\](?P<optional>\*)?[ \t]*"
    r"(?P<id>\d+(?:\.\d+)*)\.?[ \t]+(?P<title>\S.*?)[ \t]*$"
)
REQUIREMENTS_PATTERN = re.compile(r"^\s*_Requirements:\s*(?P<refs>.+?)\s*_\s*$", re.IGNORECASE)
DEPENDS_PATTERN = re.compile(r"^\s*_Depends(?:\s+on)?:\s*(?P<refs>.+?)\s*_\s*$", re.IGNORECASE)
HEADING_PATTERN = re.compile(r"^#{1,6}\s")


def strip_line_ending(line: str) -> str:
    return line.rstrip("\r\n")


def match_task_line(line: str) -> re.Match[str] | None:
    return TASK_LINE_PATTERN.match(strip_line_ending(line))


def render_marker(current: str, status: TaskStatus) -> str:
    """Return the marker character for ``status``, keeping ``current`` when equivalent."""

    desired = STATUS_MARKERS[status]
    if MARKER_STATUSES.get(current) is MARKER_STATUSES[desired]:
        return current
    return desired


def _split_refs(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_document(text: str, *, name: str, path: Path) -> TaskDocument:
    """Parse a task document.

    Top-level list items carrying a status marker and a numeric identifier
    become tasks; indented items become subtasks of the enclosing task. Any
    other non-blank line beneath a task is description text, except the
    ``_Requirements: ..._`` and ``_Depends on: ..._`` reference lines.

    Raises StructuralError for duplicate identifiers, subtasks without an
    enclosing task, and identifiers whose parent segment does not resolve.
    """

    lines = text.splitlines(keepends=True)
    document = TaskDocument(name=name, path=path, lines=lines)
    seen: dict[str, int] = {}
    current_task: Task | None = None
    current_subtask: SubTask | None = None

    for index, raw_line in enumerate(lines):
        line_number = index + 1
        line = strip_line_ending(raw_line)
        match = TASK_LINE_PATTERN.match(line)
        if match:
            item_id = match.group("id")
            if item_id in seen:
                raise StructuralError(
                    f"duplicate task identifier '{item_id}' (first defined on line {seen[item_id]})",
                    document=name,
                    line=line_number,
                )
            seen[item_id] = line_number
            status = MARKER_STATUSES[match.group("mark")]
            optional = match.group("optional") == "*"
            title = match.group("title")
            column = match.start("mark")

            if not match.group("indent"):
                current_task = Task(
                    id=item_id,
                    title=title,
                    status=status,
                    document=name,
                    path=path,
                    line_number=line_number,
                    marker_column=column,
                    optional=optional,
                )
                document.tasks.append(current_task)
                current_subtask = None
                continue

            if current_task is None:
                raise StructuralError(
                    f"subtask '{item_id}' appears before any task",
                    document=name,
                    line=line_number,
                )
            current_subtask = SubTask(
                id=item_id,
                title=title,
                status=status,
                optional=optional,
                line_number=line_number,
                marker_column=column,
            )
            current_task.subtasks.append(current_subtask)
            continue

        if not line.strip():
            continue

        if HEADING_PATTERN.match(line):
            current_task = None
            current_subtask = None
            continue

        if current_task is None:
            continue

        requirements = REQUIREMENTS_PATTERN.match(line)
        if requirements:
            current_task.requirements.extend(_split_refs(requirements.group("refs")))
            continue

        depends = DEPENDS_PATTERN.match(line)
        if depends:
            declared = current_task.dependencies or []
            declared.extend(_split_refs(depends.group("refs")))
            current_task.dependencies = declared
            continue

        target = current_subtask.description if current_subtask is not None else current_task.description
        target.append(line.strip())

    _validate_parents(document, seen)
    return document


def _validate_parents(document: TaskDocument, seen: dict[str, int]) -> None:
    for item_id, line_number in seen.items():
        parent = parent_id(item_id)
        if parent is not None and parent not in seen:
            raise StructuralError(
                f"task '{item_id}' refers to missing parent '{parent}'",
                document=document.name,
                line=line_number,
            )


def serialize_document(document: TaskDocument) -> str:
    """Render ``document`` with every marker reflecting the current in-memory status."""

    lines = list(document.lines)
    for task in document.tasks:
        items: list[Task | SubTask] = [task, *task.subtasks]
        for item in items:
            index = item.line_number - 1
            line = lines[index]
            current = line[item.marker_column]
            marker = render_marker(current, item.status)
            if marker != current:
                lines[index] = line[: item.marker_column] + marker + line[item.marker_column + 1 :]
    return "".join(lines)


__all__ = [
    "TASK_LINE_PATTERN",
    "match_task_line",
    "parse_document",
    "render_marker",
    "serialize_document",
]
