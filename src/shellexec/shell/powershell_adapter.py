"""PowerShell adapter implementation."""

from __future__ import annotations

import shutil
from collections.abc import Sequence

from .base import ShellAdapter


class PowerShellAdapter(ShellAdapter):
    """Adapter for command execution via PowerShell."""

    def __init__(self, executable: str | None = None) -> None:
        self.executable = executable or _default_executable()

    @property
    def name(self) -> str:
        return "powershell"

    def build_command(self, command: str, *, interactive: bool = False) -> list[str]:
        if interactive:
            return [self.executable, "-NoProfile", "-NoExit", "-Command", command]
        return [self.executable, "-NoProfile", "-NonInteractive", "-Command", command]

    def join_arguments(self, command: str, args: Sequence[str]) -> str:
        if not args:
            return command
        return " ".join([command, *(_quote(arg) for arg in args)])


def _quote(arg: str) -> str:
    if arg and not any(char.isspace() or char in "'\"`$;&|(){}" for char in arg):
        return arg
    return "'" + arg.replace("'", "''") + "'"


def _default_executable() -> str:
    if shutil.which("pwsh"):
        return "pwsh"
    return "powershell.exe"
