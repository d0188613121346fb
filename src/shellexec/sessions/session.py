"""Interactive session state and the events that drive it."""

from __future__ import annotations

import queue
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from shellexec.models import SessionInfo, SessionStatus

EventKind = Literal["data-received", "process-exited", "kill-requested"]
StreamName = Literal["stdout", "stderr"]

DEFAULT_LINE_CHARS = 8192


@dataclass(frozen=True, slots=True)
class SessionEvent:
    kind: EventKind
    session_id: str
    stream: StreamName | None = None
    data: str = ""
    exit_code: int | None = None


@dataclass(slots=True)
class Session:
    """One live process and its undelivered output.

    Only the registry mutates a session, from inside its event path. A
    buffered line holds at most ``line_chars`` characters; longer output is
    stored in slices of that width, so each buffer is bounded by
    ``buffer_lines * line_chars``.
    """

    session_id: str
    command: str
    process: subprocess.Popen
    created_at: datetime
    last_activity: datetime
    cwd: str | None
    env: dict[str, str]
    buffer_lines: int
    intent: str | None = None
    status: SessionStatus = "running"
    exit_code: int | None = None
    truncated: bool = False
    line_chars: int = DEFAULT_LINE_CHARS
    input_error: str | None = None
    pending_input: queue.SimpleQueue = field(default_factory=queue.SimpleQueue)
    stdout: deque[str] = field(init=False)
    stderr: deque[str] = field(init=False)
    threads: list[threading.Thread] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.stdout = deque(maxlen=self.buffer_lines)
        self.stderr = deque(maxlen=self.buffer_lines)

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def has_pending(self) -> bool:
        return bool(self.stdout) or bool(self.stderr)

    def append(self, stream: StreamName, data: str) -> None:
        buffer = self.stdout if stream == "stdout" else self.stderr
        for line in data.splitlines(keepends=True):
            # A short trailing fragment without a newline continues on the next chunk.
            if buffer and not buffer[-1].endswith("\n") and len(buffer[-1]) < self.line_chars:
                line = buffer.pop() + line
            while len(line) > self.line_chars:
                self._push(buffer, line[: self.line_chars])
                line = line[self.line_chars :]
            self._push(buffer, line)

    def _push(self, buffer: deque[str], line: str) -> None:
        if len(buffer) == buffer.maxlen:
            self.truncated = True
        buffer.append(line)

    def drain(self) -> tuple[str, str, bool]:
        stdout = "".join(self.stdout)
        stderr = "".join(self.stderr)
        truncated = self.truncated
        self.stdout.clear()
        self.stderr.clear()
        self.truncated = False
        return stdout, stderr, truncated

    def finish(self, exit_code: int | None, *, killed: bool = False) -> bool:
        """Leave ``running``; later calls keep the first terminal status."""
        if not self.is_running:
            return False
        self.exit_code = exit_code
        self.status = "finished" if exit_code == 0 and not killed else "error"
        return True

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            command=self.command,
            created_at=self.created_at,
            last_activity=self.last_activity,
            status=self.status,
            cwd=self.cwd,
            intent=self.intent,
            pid=self.process.pid,
        )
