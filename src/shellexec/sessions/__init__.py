"""Interactive session management."""

from .registry import SessionRegistry
from .session import Session, SessionEvent

__all__ = ["Session", "SessionEvent", "SessionRegistry"]
