from __future__ import annotations

from pathlib import Path
import textwrap

import pytest

from specpilot.errors import StructuralError
from specpilot.tasks import TaskStatus
from specpilot.tasks.parser import parse_document, serialize_document


SAMPLE = textwrap.dedent(
    """\
    # Implementation Plan

    - [ ] 1. Set up project
      Create the package skeleton.
      - [x] 1.1 Create package layout
        Add src/ and tests/ directories
      - [ ]* 1.2 Add optional linting
      _Requirements: 1.1, 2.4_

    - [~] 2. Build parser
      _Depends on: 1_

    - [X] 3. Write docs
    """
)


def parse(text: str = SAMPLE):
    return parse_document(text, name="feature", path=Path("feature/tasks.md"))


def test_parse_document_builds_task_tree() -> None:
    document = parse()

    assert [task.id for task in document.tasks] == ["1", "2", "3"]
    first, second, third = document.tasks

    assert first.title == "Set up project"
    assert first.status is TaskStatus.PENDING
    assert first.description == ["Create the package skeleton."]
    assert first.requirements == ["1.1", "2.4"]
    assert first.dependencies is None
    assert first.line_number == 3
    assert first.qualified_id == "feature/1"

    assert [subtask.id for subtask in first.subtasks] == ["1.1", "1.2"]
    layout, linting = first.subtasks
    assert layout.status is TaskStatus.COMPLETED
    assert layout.description == ["Add src/ and tests/ directories"]
    assert linting.optional
    assert [subtask.id for subtask in first.incomplete_required_subtasks()] == []

    assert second.status is TaskStatus.IN_PROGRESS
    assert second.dependencies == ["1"]
    assert third.status is TaskStatus.COMPLETED


def test_serialize_is_byte_identical_without_changes() -> None:
    text = SAMPLE.replace("\n", "\r\n") + "\r\n\r\nTrailing notes without newline"
    document = parse(text)

    assert serialize_document(document) == text


def test_serialize_changes_only_marker_characters() -> None:
    document = parse()
    document.tasks[0].status = TaskStatus.IN_PROGRESS
    document.tasks[0].subtasks[1].status = TaskStatus.COMPLETED

    rendered = serialize_document(document)
    original_lines = SAMPLE.splitlines()
    rendered_lines = rendered.splitlines()

    assert len(rendered_lines) == len(original_lines)
    changed = [
        (before, after)
        for before, after in zip(original_lines, rendered_lines)
        if before != after
    ]
    assert changed == [
        ("- [ ] 1. Set up project", "- [~] 1. Set up project"),
        ("  - [ ]* 1.2 Add optional linting", "  - [x]* 1.2 Add optional linting"),
    ]


def test_serialize_keeps_uppercase_completion_marker() -> None:
    document = parse()

    assert "- [X] 3. Write docs" in serialize_document(document)


def test_failed_status_renders_as_unchecked() -> None:
    document = parse()
    document.tasks[1].status = TaskStatus.FAILED

    assert "- [ ] 2. Build parser" in serialize_document(document)


def test_duplicate_identifier_is_structural_error() -> None:
    text = "- [ ] 1. First\n- [ ] 1. Again\n"

    with pytest.raises(StructuralError) as excinfo:
        parse(text)

    assert "duplicate task identifier '1'" in str(excinfo.value)
    assert excinfo.value.line == 2


def test_subtask_before_any_task_is_structural_error() -> None:
    with pytest.raises(StructuralError):
        parse("  - [ ] 1.1 Orphan\n")


def test_missing_parent_is_structural_error() -> None:
    text = "- [ ] 1. First\n  - [ ] 2.1 Wrong parent\n"

    with pytest.raises(StructuralError) as excinfo:
        parse(text)

    assert "missing parent '2'" in str(excinfo.value)


def test_heading_ends_task_description() -> None:
    text = "- [ ] 1. First\n  detail\n\n## Notes\nnot part of the task\n"

    document = parse(text)

    assert document.tasks[0].description == ["detail"]
