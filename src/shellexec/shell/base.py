"""Base shell adapter primitives: invocation building, one-shot runs, teardown."""

from __future__ import annotations

import abc
import locale
import logging
import os
import re
import signal
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


@dataclass(slots=True)
class ShellRun:
    """Raw outcome of a one-shot process run."""

    command: str
    shell: str
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    executed: bool = True
    pid: int | None = None


class ShellAdapter(abc.ABC):
    """Abstract adapter for shell-specific command invocation."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly shell adapter name."""

    @abc.abstractmethod
    def build_command(self, command: str, *, interactive: bool = False) -> list[str]:
        """Return the argv that runs ``command`` through this shell."""

    @abc.abstractmethod
    def join_arguments(self, command: str, args: Sequence[str]) -> str:
        """Append arguments to a base command using this shell's quoting."""

    def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        kill_grace: float = 5.0,
    ) -> ShellRun:
        """Run ``command`` to completion, killing its process group on timeout."""
        self.log_request(command, timeout=timeout, cwd=cwd)
        started = self.monotonic_now()
        try:
            process = subprocess.Popen(
                self.build_command(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                **process_group_kwargs(),
            )
        except OSError as exc:
            result = ShellRun(
                command=command,
                shell=self.name,
                returncode=127,
                stdout="",
                stderr=f"{self.name} could not start: {exc}",
                executed=False,
                duration_seconds=self.monotonic_now() - started,
            )
            self.log_result(result)
            return result

        try:
            stdout, stderr = process.communicate(timeout=timeout)
            result = ShellRun(
                command=command,
                shell=self.name,
                returncode=process.returncode,
                stdout=normalize_output(stdout),
                stderr=normalize_output(stderr),
                duration_seconds=self.monotonic_now() - started,
                pid=process.pid,
            )
        except subprocess.TimeoutExpired:
            terminate_process(process, grace=kill_grace)
            try:
                stdout, stderr = process.communicate(timeout=kill_grace)
            except subprocess.TimeoutExpired:
                stdout, stderr = b"", b""
            result = ShellRun(
                command=command,
                shell=self.name,
                returncode=124,
                stdout=normalize_output(stdout),
                stderr=normalize_output(stderr),
                timed_out=True,
                duration_seconds=self.monotonic_now() - started,
                pid=process.pid,
            )

        self.log_result(result)
        return result

    def spawn(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.Popen[bytes]:
        """Start a long-lived process with piped stdio for an interactive session."""
        LOGGER.info(
            "session_spawn",
            extra={"shell": self.name, "command": redact_command(command), "cwd": cwd},
        )
        return subprocess.Popen(
            self.build_command(command, interactive=True),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            bufsize=0,
            **process_group_kwargs(),
        )

    def log_request(self, command: str, *, timeout: float | None, cwd: str | None) -> None:
        LOGGER.info(
            "command_request",
            extra={
                "shell": self.name,
                "command": redact_command(command),
                "timeout": timeout,
                "cwd": cwd,
            },
        )

    def log_result(self, result: ShellRun) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "shell": result.shell,
                "returncode": result.returncode,
                "timed_out": result.timed_out,
                "duration_seconds": round(result.duration_seconds, 4),
                "executed": result.executed,
                "stdout_length": len(result.stdout),
                "stderr_length": len(result.stderr),
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()


def redact_command(command: str) -> str:
    """Mask secret-looking values before a command reaches the logs."""
    sanitized = command
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(r"\1***", sanitized)
    return sanitized


def normalize_output(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload

    for encoding in ("utf-8", "utf-8-sig", "utf-16", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")


def process_group_kwargs() -> dict[str, object]:
    """Popen keyword arguments that put the child in its own process group."""
    if os.name == "nt":
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def terminate_process(process: subprocess.Popen, *, grace: float = 5.0) -> int | None:
    """Terminate a process and its group, escalating to a kill after ``grace``.

    Returns the exit code, or None when the process outlived the kill too.
    """
    if process.poll() is not None:
        return process.returncode

    _signal_group(process, forceful=False)
    try:
        return process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        LOGGER.warning("process_kill_escalated", extra={"pid": process.pid, "grace": grace})

    _signal_group(process, forceful=True)
    try:
        return process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        LOGGER.error("process_kill_failed", extra={"pid": process.pid})
        return None


def _signal_group(process: subprocess.Popen, *, forceful: bool) -> None:
    try:
        if os.name == "nt":
            if forceful:
                process.kill()
            else:
                process.terminate()
            return
        os.killpg(process.pid, signal.SIGKILL if forceful else signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        # Group leader already reaped and the pgid is gone or reused.
        if forceful:
            process.kill()
        else:
            process.terminate()
