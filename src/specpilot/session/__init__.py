"""Session persistence and resume."""

from .models import AutomationSession, SessionStatistics, SessionStatus
from .store import SessionStore

__all__ = ["AutomationSession", "SessionStatistics", "SessionStatus", "SessionStore"]
