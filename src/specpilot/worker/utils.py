"""Utility helpers for worker subprocesses."""

from __future__ import annotations

import os
import shlex
from typing import Mapping, Sequence

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the current environment without interpreter overrides."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def split_command(command: str | Sequence[str]) -> list[str]:
    """Split a configured worker command into argv form."""

    if isinstance(command, str):
        parts = shlex.split(command)
    else:
        parts = [str(part) for part in command]
    if not parts:
        raise ValueError("worker command must not be empty")
    return parts
