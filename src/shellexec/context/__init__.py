"""Execution context tracking."""

from .store import ContextStore
from .tracking import describe_side_effects, directory_change, environment_changes, file_changes

__all__ = [
    "ContextStore",
    "describe_side_effects",
    "directory_change",
    "environment_changes",
    "file_changes",
]
