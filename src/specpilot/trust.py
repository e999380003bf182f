"""Workspace trust checks."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .config import SpecPilotSettings
from .errors import PermissionDeniedError

logger = logging.getLogger(__name__)


def is_trusted(workspace: Path, trusted_roots: Iterable[Path]) -> bool:
    """Return True when ``workspace`` lies inside one of ``trusted_roots``."""

    resolved = Path(workspace).expanduser().resolve()
    for root in trusted_roots:
        root = Path(root).expanduser().resolve()
        if resolved == root or root in resolved.parents:
            return True
    return False


def check_workspace_trust(workspace: Path, settings: SpecPilotSettings) -> None:
    """Raise PermissionDeniedError when automation is not authorized for ``workspace``."""

    if not settings.require_workspace_trust:
        return
    if is_trusted(workspace, settings.trusted_workspaces):
        return
    logger.warning("Workspace is not trusted", extra={"workspace": str(workspace)})
    raise PermissionDeniedError(f"workspace {workspace} is not trusted for automation")


__all__ = ["check_workspace_trust", "is_trusted"]
