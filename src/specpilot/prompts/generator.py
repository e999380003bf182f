"""Render tasks into worker prompts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..tasks.models import SubTask, Task
from .models import DEFAULT_TEMPLATE, PromptTemplate

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Content truncated due to length]"


@dataclass(slots=True)
class PromptContext:
    """Per-attempt information available to prompt generators."""

    attempt: int = 1
    previous_error: str | None = None
    custom_context: str | None = None
    skip_optional: bool = False


def format_subtasks(subtasks: list[SubTask], *, skip_optional: bool = False) -> str:
    visible = [subtask for subtask in subtasks if not (skip_optional and subtask.optional)]
    if not visible:
        return ""
    lines = ["Subtasks:"]
    for subtask in visible:
        lines.append(f"- {subtask.id} {subtask.title}")
        lines.extend(f"  {line}" for line in subtask.description)
        if subtask.optional:
            lines.append("  (Optional)")
    return "\n".join(lines)


def truncate_prompt(prompt: str, max_length: int) -> str:
    """Cut ``prompt`` to ``max_length``, preferring a sentence or line boundary."""

    if len(prompt) <= max_length:
        return prompt
    truncated = prompt[:max_length]
    cut = max(truncated.rfind("."), truncated.rfind("\n"))
    if cut > max_length * 0.8:
        truncated = truncated[: cut + 1]
    return truncated + TRUNCATION_MARKER


def _read_sibling(task: Task, filename: str) -> str:
    path = Path(task.path).parent / filename
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read spec file", extra={"path": str(path), "error": str(exc)})
        return ""


class TemplatePromptGenerator:
    """Built-in prompt generator driven by a PromptTemplate."""

    name = "template"

    def __init__(self, template: PromptTemplate | None = None) -> None:
        self._template = template or DEFAULT_TEMPLATE

    @property
    def template(self) -> PromptTemplate:
        return self._template

    def variables(self, task: Task, context: PromptContext) -> dict[str, str]:
        template = self._template
        return {
            "spec_name": task.document,
            "task_id": task.id,
            "task_title": task.title,
            "description": "\n".join(task.description),
            "subtasks": (
                format_subtasks(task.subtasks, skip_optional=context.skip_optional)
                if template.include_subtasks
                else ""
            ),
            "requirements": ", ".join(task.requirements) if task.requirements else "None specified",
            "requirements_content": _read_sibling(task, "requirements.md") if template.include_requirements else "",
            "design_content": _read_sibling(task, "design.md") if template.include_design else "",
            "custom_context": context.custom_context or "",
        }

    def generate(self, task: Task, context: PromptContext | None = None) -> str:
        context = context or PromptContext()
        prompt = self._template.body
        for key, value in self.variables(task, context).items():
            prompt = prompt.replace("{" + key + "}", value)

        if context.attempt > 1:
            prompt = (
                self._template.retry_template.replace("{attempt}", str(context.attempt - 1))
                .replace("{previous_error}", context.previous_error or "unknown")
                .replace("{prompt}", prompt)
            )

        return truncate_prompt(prompt, self._template.max_length)


__all__ = [
    "PromptContext",
    "TRUNCATION_MARKER",
    "TemplatePromptGenerator",
    "format_subtasks",
    "truncate_prompt",
]
