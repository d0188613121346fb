"""Bash shell adapter implementation."""

from __future__ import annotations

import shlex
import shutil
from collections.abc import Sequence

from .base import ShellAdapter


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``bash``/``sh``."""

    def __init__(self, executable: str | None = None, *, fallback_to_sh: bool = True) -> None:
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash"

    def build_command(self, command: str, *, interactive: bool = False) -> list[str]:
        # Sessions read follow-up input from stdin, so -c is right for both.
        return [self.executable, "-c", command]

    def join_arguments(self, command: str, args: Sequence[str]) -> str:
        if not args:
            return command
        return " ".join([command, *(shlex.quote(arg) for arg in args)])


def _default_executable(*, fallback_to_sh: bool) -> str:
    if shutil.which("bash"):
        return "bash"
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    return "bash"
