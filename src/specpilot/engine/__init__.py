"""Execution engine state machine."""

from .engine import AutomationEngine
from .events import EngineEvent, EventChannel
from .states import EngineState, InvalidTransitionError

__all__ = [
    "AutomationEngine",
    "EngineEvent",
    "EngineState",
    "EventChannel",
    "InvalidTransitionError",
]
