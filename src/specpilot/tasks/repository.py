"""Task document discovery, status persistence and eligibility."""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Iterable

from ..errors import DependencyCycleError, StatusConflictError, StructuralError
from .models import (
    MARKER_STATUSES,
    STATUS_MARKERS,
    SubTask,
    Task,
    TaskDocument,
    TaskStatus,
    parent_id,
    parse_task_id,
)
from .parser import match_task_line, parse_document, render_marker, serialize_document

logger = logging.getLogger(__name__)

_OVERLAY_STATUSES = (TaskStatus.FAILED, TaskStatus.SKIPPED)


class TaskRepository:
    """Owns the canonical task tree for one workspace."""

    def __init__(self, root: Path, patterns: Iterable[str]) -> None:
        self._root = Path(root)
        self._patterns = tuple(patterns)
        self._documents: dict[str, TaskDocument] = {}
        self._errors: list[StructuralError] = []
        self._load_errors: list[StructuralError] = []

    @property
    def root(self) -> Path:
        return self._root

    @property
    def errors(self) -> list[StructuralError]:
        """Structural errors collected by the last discovery or eligibility pass."""

        return list(self._errors)

    @property
    def documents(self) -> list[TaskDocument]:
        return [self._documents[name] for name in sorted(self._documents)]

    def discover(self) -> list[TaskDocument]:
        """Scan the workspace for task documents and parse each one.

        A malformed document is recorded in ``errors`` and skipped; the others
        are still returned. Failed/skipped statuses of tasks whose marker is
        still unchecked survive re-discovery.
        """

        overlay = {
            task.qualified_id: task.status
            for document in self._documents.values()
            for task in document.tasks
            if task.status in _OVERLAY_STATUSES
        }

        self._errors = []
        documents: dict[str, TaskDocument] = {}
        for path in self._find_paths():
            name = self._document_name(path, documents)
            try:
                document = self.parse(path, name=name)
            except StructuralError as exc:
                self._errors.append(exc)
                logger.warning(
                    "Skipping malformed task document",
                    extra={"document": name, "path": str(path), "error": str(exc)},
                )
                continue
            except (OSError, UnicodeDecodeError) as exc:
                error = StructuralError(f"unable to read document: {exc}", document=name)
                self._errors.append(error)
                logger.warning("Skipping unreadable task document", extra={"document": name, "error": str(exc)})
                continue
            documents[name] = document

        self._load_errors = list(self._errors)

        for document in documents.values():
            for task in document.tasks:
                previous = overlay.get(task.qualified_id)
                if previous is not None and task.status is TaskStatus.PENDING:
                    task.status = previous

        self._documents = documents
        logger.debug(
            "Discovered task documents",
            extra={"documents": sorted(documents), "errors": len(self._errors)},
        )
        return self.documents

    def _find_paths(self) -> list[Path]:
        paths: set[Path] = set()
        for pattern in self._patterns:
            for path in self._root.glob(pattern):
                if path.is_file():
                    paths.add(path.resolve())
        return sorted(paths)

    def _document_name(self, path: Path, taken: dict[str, TaskDocument]) -> str:
        name = path.parent.name or path.stem
        if name in taken:
            try:
                name = path.parent.relative_to(self._root.resolve()).as_posix()
            except ValueError:
                name = path.parent.as_posix()
        return name

    def parse(self, path: Path, *, name: str | None = None) -> TaskDocument:
        """Parse a single task document from disk."""

        path = Path(path)
        with path.open("r", encoding="utf-8", newline="") as handle:
            text = handle.read()
        return parse_document(text, name=name or path.parent.name, path=path)

    def serialize(self, document: TaskDocument) -> str:
        return serialize_document(document)

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------

    def document(self, name: str) -> TaskDocument:
        try:
            return self._documents[name]
        except KeyError as exc:
            raise StructuralError(f"unknown task document '{name}'") from exc

    def tasks(self) -> list[Task]:
        return [task for document in self.documents for task in document.iter_tasks()]

    def get(self, qualified_id: str) -> Task:
        document_name, _, task_id = qualified_id.rpartition("/")
        task = self.document(document_name).find(task_id)
        if task is None:
            raise StructuralError(f"task '{task_id}' not found", document=document_name)
        return task

    def _resolve(self, item: Task | str) -> Task:
        return self.get(item) if isinstance(item, str) else item

    # ------------------------------------------------------------------
    # status persistence
    # ------------------------------------------------------------------

    def set_status(self, item: Task | str, status: TaskStatus) -> Task:
        """Change a task's status in memory only."""

        task = self._resolve(item)
        task.status = status
        return task

    def update_status(self, item: Task | str, status: TaskStatus, *, subtask_id: str | None = None) -> Task:
        """Rewrite the status marker of a task (or one of its subtasks) on disk.

        Only the marker character changes; every other byte of the document is
        preserved. Raises StatusConflictError when the line no longer carries
        the expected identifier and marker.
        """

        task = self._resolve(item)
        target: Task | SubTask = task
        if subtask_id is not None:
            matches = [subtask for subtask in task.subtasks if subtask.id == subtask_id]
            if not matches:
                raise StructuralError(f"subtask '{subtask_id}' not found in task '{task.id}'", document=task.document)
            target = matches[0]

        document = self.document(task.document)
        lines = self._read_lines(document.path)
        index = self._locate(lines, target, document)
        line = lines[index]
        current = line[target.marker_column]
        expected = MARKER_STATUSES[STATUS_MARKERS[target.status]]
        if MARKER_STATUSES.get(current) is not expected:
            raise StatusConflictError(
                f"{document.name}:{index + 1}: task '{target.id}' marker is '[{current}]', "
                f"expected status {target.status.value}"
            )

        marker = render_marker(current, status)
        if marker != current:
            lines[index] = line[: target.marker_column] + marker + line[target.marker_column + 1 :]
            self._write_lines(document.path, lines)
        document.lines = lines
        target.status = status
        logger.debug(
            "Updated task status",
            extra={"task_id": f"{document.name}/{target.id}", "status": status.value, "line": index + 1},
        )
        return task

    def refresh_status(self, item: Task | str) -> TaskStatus:
        """Re-read the task's marker from disk, adopting external check-offs.

        Only a transition to ``completed`` is adopted; other differences are
        left for ``update_status`` to report as conflicts.
        """

        task = self._resolve(item)
        document = self.document(task.document)
        try:
            lines = self._read_lines(document.path)
            index = self._locate(lines, task, document)
        except (OSError, StatusConflictError):
            return task.status
        observed = MARKER_STATUSES.get(lines[index][task.marker_column])
        if observed is TaskStatus.COMPLETED and task.status is not TaskStatus.COMPLETED:
            logger.info(
                "Task checked off in document",
                extra={"task_id": task.qualified_id, "previous_status": task.status.value},
            )
            task.status = TaskStatus.COMPLETED
        return task.status

    def _locate(self, lines: list[str], target: Task | SubTask, document: TaskDocument) -> int:
        index = target.line_number - 1
        if 0 <= index < len(lines):
            match = match_task_line(lines[index])
            if match and match.group("id") == target.id:
                return index

        candidates = []
        for position, line in enumerate(lines):
            match = match_task_line(line)
            if match and match.group("id") == target.id:
                candidates.append((position, match))
        if len(candidates) != 1:
            raise StatusConflictError(
                f"{document.name}:{target.line_number}: task '{target.id}' no longer matches the document"
            )
        position, match = candidates[0]
        target.line_number = position + 1
        target.marker_column = match.start("mark")
        return position

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read().splitlines(keepends=True)

    @staticmethod
    def _write_lines(path: Path, lines: list[str]) -> None:
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8", newline="") as handle:
                handle.write("".join(lines))
            os.replace(temp_path, path)
        finally:
            if temp_path.exists():
                temp_path.unlink()

    # ------------------------------------------------------------------
    # eligibility
    # ------------------------------------------------------------------

    def dependencies_of(self, document: TaskDocument, task: Task) -> list[str]:
        """Return the identifiers ``task`` waits for.

        Declared dependencies win; otherwise a task waits for its ancestors
        and every lower-numbered sibling.
        """

        if task.dependencies is not None:
            return list(task.dependencies)

        known = document.known_ids()
        dependencies: list[str] = []
        ancestor = parent_id(task.id)
        while ancestor is not None:
            if ancestor in known:
                dependencies.append(ancestor)
            ancestor = parent_id(ancestor)

        own_parent = parent_id(task.id)
        for other in document.tasks:
            if other is task or parent_id(other.id) != own_parent:
                continue
            if other.sort_key < task.sort_key:
                dependencies.append(other.id)
        return dependencies

    def validate_dependencies(self, document: TaskDocument) -> dict[str, list[str]]:
        """Build and validate the dependency graph of a document.

        Raises StructuralError for unknown identifiers and
        DependencyCycleError for cycles.
        """

        known = document.known_ids()
        graph: dict[str, list[str]] = {}
        for task in document.tasks:
            dependencies = self.dependencies_of(document, task)
            for dependency in dependencies:
                if dependency not in known:
                    raise StructuralError(
                        f"task '{task.id}' depends on unknown task '{dependency}'",
                        document=document.name,
                        line=task.line_number,
                    )
            graph[task.id] = dependencies

        visiting: list[str] = []
        done: set[str] = set()

        def visit(node: str) -> None:
            if node in done:
                return
            if node in visiting:
                cycle = visiting[visiting.index(node) :] + [node]
                raise DependencyCycleError(cycle, document=document.name)
            visiting.append(node)
            for dependency in graph.get(node, []):
                visit(dependency)
            visiting.pop()
            done.add(node)

        for node in sorted(graph, key=parse_task_id):
            visit(node)
        return graph

    def _status_of(self, document: TaskDocument, item_id: str) -> TaskStatus | None:
        for task in document.tasks:
            if task.id == item_id:
                return task.status
            for subtask in task.subtasks:
                if subtask.id == item_id:
                    return subtask.status
        return None

    def next_eligible(self, document: TaskDocument | None = None) -> Task | None:
        """Return the first pending task whose dependencies are all resolved.

        With no document, documents are visited in name order. A document
        with dependency errors is skipped and recorded in ``errors``. When no
        task is eligible and the remaining work sits only in broken documents,
        including ones that failed to parse, the last error is raised.
        """

        if document is not None:
            return self._next_in_document(document)

        errors: list[StructuralError] = []
        pending_documents = 0
        for candidate in self.documents:
            if not any(task.status is TaskStatus.PENDING for task in candidate.tasks):
                continue
            pending_documents += 1
            try:
                task = self._next_in_document(candidate)
            except StructuralError as exc:
                errors.append(exc)
                if str(exc) not in {str(error) for error in self._errors}:
                    self._errors.append(exc)
                logger.warning(
                    "Skipping task document with dependency errors",
                    extra={"document": candidate.name, "error": str(exc)},
                )
                continue
            if task is not None:
                return task

        blocked = errors + self._load_errors
        if blocked and len(errors) == pending_documents:
            raise blocked[-1]
        return None

    def _next_in_document(self, document: TaskDocument) -> Task | None:
        graph = self.validate_dependencies(document)
        for task in document.iter_tasks():
            if task.status is not TaskStatus.PENDING:
                continue
            statuses = [self._status_of(document, dependency) for dependency in graph[task.id]]
            if all(status is not None and status.resolved for status in statuses):
                return task
        return None


__all__ = ["TaskRepository"]
