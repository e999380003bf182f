"""Automation session models."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def resumable(self) -> bool:
        return self in (SessionStatus.RUNNING, SessionStatus.PAUSED, SessionStatus.STOPPED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationSession(BaseModel):
    """Durable record of one automation run over a workspace."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workspace: str = Field(..., description="Resolved workspace root the session automates.")
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime | None = None
    updated_at: datetime | None = None
    status: SessionStatus = SessionStatus.RUNNING
    engine_state: str = "running"
    current_task_id: str | None = None
    completed_task_ids: list[str] = Field(default_factory=list)
    failed_task_ids: list[str] = Field(default_factory=list)
    skipped_task_ids: list[str] = Field(default_factory=list)
    task_durations: dict[str, float] = Field(
        default_factory=dict,
        description="Seconds spent on each resolved task, keyed by qualified id.",
    )
    configuration: dict[str, Any] = Field(default_factory=dict)
    last_error: str | None = None

    @field_validator("workspace")
    @classmethod
    def _normalize_workspace(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("Session workspace must not be empty")
        return normalized

    def record_outcome(self, task_id: str, outcome: str, duration: float | None = None) -> None:
        """Append ``task_id`` to the list for ``outcome`` exactly once."""

        target = {
            "completed": self.completed_task_ids,
            "failed": self.failed_task_ids,
            "skipped": self.skipped_task_ids,
        }[outcome]
        if task_id not in target:
            target.append(task_id)
        if duration is not None:
            self.task_durations[task_id] = round(duration, 3)
        if self.current_task_id == task_id:
            self.current_task_id = None


@dataclass(slots=True)
class SessionStatistics:
    session_id: str
    duration: float
    total_tasks: int
    completed: int
    failed: int
    skipped: int
    completion_rate: float
    failure_rate: float
    average_task_time: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = ["AutomationSession", "SessionStatistics", "SessionStatus"]
