"""Prompt template models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_TEMPLATE_BODY = """Implement the task from the markdown document at {spec_name}/tasks.md:

Task: {task_id} - {task_title}

{description}

{subtasks}

Requirements: {requirements}

## Context

### Requirements
{requirements_content}

### Design
{design_content}

{custom_context}

## Instructions
Implement the task according to the requirements and design.
Only focus on ONE task at a time. Do NOT implement functionality for other tasks.
If the task has sub-tasks, implement the sub-tasks first.
Write all required code changes before executing any tests or validation steps.
Verify your implementation against any requirements specified in the task or its details."""

DEFAULT_RETRY_TEMPLATE = """Previous attempt {attempt} did not complete the task.
Last error: {previous_error}

{prompt}"""


class PromptTemplate(BaseModel):
    """A named prompt layout rendered for each dispatched task."""

    id: str = Field(..., description="Unique identifier used to select the template.")
    title: str = Field(default="", description="Display title for the template.")
    body: str = Field(..., description="Template text with task placeholders.")
    retry_template: str = Field(
        default=DEFAULT_RETRY_TEMPLATE,
        description="Wrapper applied on retry attempts; {prompt} is the rendered body.",
    )
    include_requirements: bool = Field(
        default=True,
        description="Whether requirements.md beside the task document is inlined.",
    )
    include_design: bool = Field(
        default=True,
        description="Whether design.md beside the task document is inlined.",
    )
    include_subtasks: bool = Field(default=True, description="Whether subtasks are listed.")
    max_length: int = Field(default=10000, description="Prompts longer than this are truncated.")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Prompt template id must not be empty")
        return normalized

    @field_validator("body")
    @classmethod
    def _require_task_placeholder(cls, value: str) -> str:
        if "{task_id}" not in value and "{task_title}" not in value:
            raise ValueError("Prompt template body must reference {task_id} or {task_title}")
        return value

    @field_validator("max_length")
    @classmethod
    def _validate_max_length(cls, value: int) -> int:
        if value < 100:
            raise ValueError("max_length must be >= 100")
        return value


DEFAULT_TEMPLATE = PromptTemplate(id="default", title="Default task prompt", body=DEFAULT_TEMPLATE_BODY)


__all__ = ["DEFAULT_TEMPLATE", "DEFAULT_TEMPLATE_BODY", "PromptTemplate"]
