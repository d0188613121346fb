"""Shell adapter implementations."""

import os

from .base import (
    ShellAdapter,
    ShellRun,
    normalize_output,
    process_group_kwargs,
    redact_command,
    terminate_process,
)
from .bash_adapter import BashAdapter
from .cmd_adapter import CmdAdapter
from .powershell_adapter import PowerShellAdapter


def create_shell_adapter(shell_name: str | None = None) -> ShellAdapter:
    normalized = (shell_name or default_shell_name()).strip().lower()
    if normalized == "cmd":
        return CmdAdapter()
    if normalized in {"bash", "sh", "shell"}:
        return BashAdapter(executable="sh" if normalized == "sh" else None)
    if normalized in {"powershell", "pwsh"}:
        return PowerShellAdapter(executable="pwsh" if normalized == "pwsh" else None)
    msg = f"Unsupported shell adapter: {shell_name}"
    raise ValueError(msg)


def default_shell_name() -> str:
    return "powershell" if os.name == "nt" else "bash"


__all__ = [
    "BashAdapter",
    "CmdAdapter",
    "PowerShellAdapter",
    "ShellAdapter",
    "ShellRun",
    "create_shell_adapter",
    "default_shell_name",
    "normalize_output",
    "process_group_kwargs",
    "redact_command",
    "terminate_process",
]
