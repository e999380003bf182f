"""Typed extension points and their explicit registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .detection.models import CompletionDetectionResult, CompletionSignals
from .prompts.generator import PromptContext
from .tasks.models import Task

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskProcessor(Protocol):
    """Hooks invoked around task execution.

    Hooks may be plain or ``async`` callables.
    """

    name: str

    def pre_process(self, task: Task) -> None:
        ...

    def post_process(self, task: Task, result: CompletionDetectionResult) -> None:
        ...

    def on_task_failed(self, task: Task, error: BaseException) -> None:
        ...


@runtime_checkable
class PromptGenerator(Protocol):
    name: str

    def generate(self, task: Task, context: PromptContext) -> str:
        ...


@runtime_checkable
class DetectorExtension(Protocol):
    """Additional completion signal folded into the detector's combination."""

    name: str

    def evaluate(
        self, task: Task, elapsed: float, signals: CompletionSignals
    ) -> CompletionDetectionResult | None:
        ...


@dataclass(slots=True)
class _Registration:
    kind: str
    name: str
    priority: int
    extension: object
    order: int


class ExtensionRegistry:
    """Holds explicitly registered extensions ordered by priority.

    Higher priority runs first; registration order breaks ties.
    """

    def __init__(self) -> None:
        self._registrations: list[_Registration] = []
        self._counter = 0

    def _register(self, kind: str, extension: object, priority: int) -> None:
        name = getattr(extension, "name", None) or type(extension).__name__
        if any(reg.kind == kind and reg.name == name for reg in self._registrations):
            raise ValueError(f"{kind} extension '{name}' is already registered")
        self._counter += 1
        self._registrations.append(
            _Registration(kind=kind, name=name, priority=priority, extension=extension, order=self._counter)
        )
        logger.info("Registered extension", extra={"kind": kind, "extension": name, "priority": priority})

    def register_processor(self, processor: TaskProcessor, *, priority: int = 0) -> None:
        self._register("processor", processor, priority)

    def register_prompt_generator(self, generator: PromptGenerator, *, priority: int = 0) -> None:
        self._register("prompt_generator", generator, priority)

    def register_detector_extension(self, extension: DetectorExtension, *, priority: int = 0) -> None:
        self._register("detector", extension, priority)

    def unregister(self, name: str) -> bool:
        """Remove every extension registered under ``name``."""

        before = len(self._registrations)
        self._registrations = [reg for reg in self._registrations if reg.name != name]
        return len(self._registrations) != before

    def _ordered(self, kind: str) -> list:
        matching = [reg for reg in self._registrations if reg.kind == kind]
        matching.sort(key=lambda reg: (-reg.priority, reg.order))
        return [reg.extension for reg in matching]

    def processors(self) -> list[TaskProcessor]:
        return self._ordered("processor")

    def prompt_generator(self) -> PromptGenerator | None:
        generators = self._ordered("prompt_generator")
        return generators[0] if generators else None

    def detector_extensions(self) -> list[DetectorExtension]:
        return self._ordered("detector")

    def describe(self) -> list[dict[str, object]]:
        return [
            {"kind": reg.kind, "name": reg.name, "priority": reg.priority}
            for reg in sorted(self._registrations, key=lambda reg: (reg.kind, -reg.priority, reg.order))
        ]


__all__ = ["DetectorExtension", "ExtensionRegistry", "PromptGenerator", "TaskProcessor"]
