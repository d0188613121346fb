"""Command validation policy."""

from .confirmation import ConfirmationManager, PendingConfirmation
from .engine import (
    SECURITY_LEVELS,
    PolicyConfig,
    PolicyEngine,
    default_system_directories,
    extract_path_tokens,
    validate_command,
)
from .rules import DEFAULT_BLOCKED_COMMANDS, PolicyRule

__all__ = [
    "ConfirmationManager",
    "DEFAULT_BLOCKED_COMMANDS",
    "PendingConfirmation",
    "PolicyConfig",
    "PolicyEngine",
    "PolicyRule",
    "SECURITY_LEVELS",
    "default_system_directories",
    "extract_path_tokens",
    "validate_command",
]
