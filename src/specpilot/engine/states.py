"""Engine lifecycle states."""

from __future__ import annotations

from enum import Enum

from ..errors import SpecPilotError


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset({EngineState.RUNNING}),
    EngineState.RUNNING: frozenset({EngineState.PAUSED, EngineState.STOPPING, EngineState.ERROR}),
    EngineState.PAUSED: frozenset({EngineState.RUNNING, EngineState.STOPPING}),
    EngineState.STOPPING: frozenset({EngineState.STOPPED}),
    EngineState.STOPPED: frozenset({EngineState.IDLE}),
    EngineState.ERROR: frozenset({EngineState.IDLE}),
}


class InvalidTransitionError(SpecPilotError):
    """Raised when a control operation is not allowed in the current state."""

    retryable = False

    def __init__(self, current: EngineState, target: EngineState) -> None:
        super().__init__(f"cannot move engine from {current.value} to {target.value}")
        self.current = current
        self.target = target


def can_transition(current: EngineState, target: EngineState) -> bool:
    return target in TRANSITIONS[current]


__all__ = ["EngineState", "InvalidTransitionError", "TRANSITIONS", "can_transition"]
