"""Windows Command Prompt adapter."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence

from .base import ShellAdapter


class CmdAdapter(ShellAdapter):
    """Adapter for command execution via ``cmd.exe``."""

    def __init__(self, executable: str = "cmd.exe") -> None:
        self.executable = executable

    @property
    def name(self) -> str:
        return "cmd"

    def build_command(self, command: str, *, interactive: bool = False) -> list[str]:
        # /k keeps the interpreter reading stdin after the first command.
        return [self.executable, "/d", "/s", "/k" if interactive else "/c", command]

    def join_arguments(self, command: str, args: Sequence[str]) -> str:
        if not args:
            return command
        return f"{command} {subprocess.list2cmdline(list(args))}"
