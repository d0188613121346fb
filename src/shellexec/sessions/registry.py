"""Registry of live interactive sessions."""

from __future__ import annotations

import codecs
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import IO

from shellexec.errors import (
    IOFailure,
    RegistryCorrupted,
    ResourceExhausted,
    SessionNotFound,
    SpawnFailed,
)
from shellexec.models import SessionInfo, SessionOutput, SessionSpec
from shellexec.shell import ShellAdapter, redact_command, terminate_process

from .session import DEFAULT_LINE_CHARS, Session, SessionEvent, StreamName

LOGGER = logging.getLogger(__name__)

_READ_CHUNK = 4096


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:12]}"


class SessionRegistry:
    """Owns session processes, their buffers and the inactivity sweep.

    Reader and exit-watcher threads never touch a session directly: they
    submit events to ``_handle_event``, which applies them under the
    registry lock. Input goes through a per-session queue drained by a
    writer thread, so no pipe write ever happens under that lock.
    """

    def __init__(
        self,
        adapter: ShellAdapter,
        *,
        max_sessions: int = 10,
        session_timeout: float = 1800.0,
        sweep_interval: float = 60.0,
        kill_grace: float = 5.0,
        buffer_lines: int = 1000,
        line_chars: int = DEFAULT_LINE_CHARS,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_session_id,
    ) -> None:
        self.adapter = adapter
        self.max_sessions = max_sessions
        self.session_timeout = session_timeout
        self.sweep_interval = sweep_interval
        self.kill_grace = kill_grace
        self.buffer_lines = buffer_lines
        self.line_chars = line_chars
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._output = threading.Condition(self._lock)
        self._sessions: dict[str, Session] = {}
        self._allocated: set[str] = set()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        self._closed = False

    def start(self, spec: SessionSpec) -> str:
        with self._lock:
            if self._closed:
                raise ResourceExhausted("Session registry has been shut down")
            live = sum(1 for session in self._sessions.values() if session.is_running)
            if live >= self.max_sessions:
                raise ResourceExhausted(
                    f"Maximum number of sessions ({self.max_sessions}) reached"
                )

            session_id = self._id_factory()
            if session_id in self._allocated:
                raise RegistryCorrupted(f"Session id allocated twice: {session_id}")
            self._allocated.add(session_id)

            try:
                process = self.adapter.spawn(spec.command, cwd=spec.cwd, env=spec.env)
            except OSError as exc:
                raise SpawnFailed(f"Failed to start session: {exc}") from exc

            now = self._clock()
            session = Session(
                session_id=session_id,
                command=spec.command,
                process=process,
                created_at=now,
                last_activity=now,
                cwd=spec.cwd,
                env=dict(spec.env or {}),
                buffer_lines=self.buffer_lines,
                line_chars=self.line_chars,
                intent=spec.intent,
            )
            self._sessions[session_id] = session
            self._start_threads(session)
            self._ensure_sweeper()

        LOGGER.info(
            "session_started",
            extra={
                "session_id": session_id,
                "command": redact_command(spec.command),
                "pid": process.pid,
            },
        )
        return session_id

    def feed(self, session_id: str, text: str) -> None:
        """Queue one line of input; the session's writer thread delivers it."""
        payload = text if text.endswith("\n") else f"{text}\n"
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if not session.is_running:
                raise SessionNotFound(session_id, f"Session {session_id} is {session.status}")
            if session.process.stdin is None:
                raise IOFailure(f"Session {session_id} has no input stream")
            if session.input_error is not None:
                raise IOFailure(
                    f"Failed to write to session {session_id}: {session.input_error}"
                )
            session.pending_input.put(payload.encode("utf-8"))
            session.last_activity = self._clock()
        LOGGER.debug("session_fed", extra={"session_id": session_id, "length": len(payload)})

    def read_output(self, session_id: str) -> SessionOutput:
        """Drain undelivered output; never blocks on the process."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            stdout, stderr, truncated = session.drain()
            return SessionOutput(
                session_id=session_id,
                stdout=stdout,
                stderr=stderr,
                status=session.status,
                has_more=truncated,
                exit_code=session.exit_code,
            )

    def wait_for_output(self, session_id: str, timeout: float) -> bool:
        """Block up to ``timeout`` seconds for output or exit; true if either arrived."""
        with self._output:
            if session_id not in self._sessions:
                raise SessionNotFound(session_id)

            def ready() -> bool:
                session = self._sessions.get(session_id)
                return session is None or session.has_pending or not session.is_running

            return self._output.wait_for(ready, timeout=max(0.0, timeout))

    def kill(self, session_id: str) -> None:
        with self._lock:
            if session_id not in self._sessions:
                raise SessionNotFound(session_id)
            self._handle_event(SessionEvent("kill-requested", session_id))
            session = self._sessions.pop(session_id)
            self._output.notify_all()

        exit_code = terminate_process(session.process, grace=self.kill_grace)
        # Readers see EOF once the group is gone and close their own pipes.
        # The writer closes stdin after any write blocked on the dead pipe fails.
        session.pending_input.put(None)
        LOGGER.info("session_killed", extra={"session_id": session_id, "exit_code": exit_code})

    def list(self) -> list[SessionInfo]:
        with self._lock:
            return [session.info() for session in self._sessions.values()]

    def sweep(self) -> list[str]:
        """Kill sessions idle for longer than the session timeout."""
        now = self._clock()
        with self._lock:
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if (now - session.last_activity).total_seconds() > self.session_timeout
            ]
        killed: list[str] = []
        for session_id in stale:
            try:
                self.kill(session_id)
            except SessionNotFound:
                continue
            killed.append(session_id)
        if killed:
            LOGGER.info("session_sweep", extra={"killed": killed})
        return killed

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            session_ids = list(self._sessions)
        self._stop.set()
        for session_id in session_ids:
            try:
                self.kill(session_id)
            except SessionNotFound:
                continue
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=self.kill_grace)
        LOGGER.info("session_registry_shutdown", extra={"killed": len(session_ids)})

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _handle_event(self, event: SessionEvent) -> None:
        with self._output:
            session = self._sessions.get(event.session_id)
            if session is None:
                return
            if event.kind == "data-received" and event.stream is not None:
                session.append(event.stream, event.data)
                session.last_activity = self._clock()
            elif event.kind == "process-exited":
                if session.finish(event.exit_code):
                    LOGGER.info(
                        "session_exited",
                        extra={
                            "session_id": session.session_id,
                            "exit_code": event.exit_code,
                            "status": session.status,
                        },
                    )
            elif event.kind == "kill-requested":
                session.finish(session.process.poll(), killed=True)
            self._output.notify_all()

    def _start_threads(self, session: Session) -> None:
        process = session.process
        readers = [
            threading.Thread(
                target=self._pump,
                args=(session.session_id, stream_name, stream),
                name=f"{session.session_id}-{stream_name}",
                daemon=True,
            )
            for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr))
            if stream is not None
        ]
        threads = list(readers)
        if process.stdin is not None:
            threads.append(
                threading.Thread(
                    target=self._write_input,
                    args=(session, process.stdin),
                    name=f"{session.session_id}-stdin",
                    daemon=True,
                )
            )
        threads.append(
            threading.Thread(
                target=self._watch_exit,
                args=(session, readers),
                name=f"{session.session_id}-exit",
                daemon=True,
            )
        )
        session.threads = threads
        for thread in session.threads:
            thread.start()

    def _pump(self, session_id: str, stream_name: StreamName, stream: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            try:
                chunk = stream.read(_READ_CHUNK)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._handle_event(SessionEvent("data-received", session_id, stream_name, text))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._handle_event(SessionEvent("data-received", session_id, stream_name, tail))
        try:
            stream.close()
        except OSError:
            LOGGER.debug("session_stream_close_failed", extra={"session_id": session_id})

    def _write_input(self, session: Session, stdin: IO[bytes]) -> None:
        """Deliver queued input until a ``None`` marker or a failed write.

        Writes happen outside the registry lock, so a child that stops
        reading only stalls this thread.
        """
        while True:
            payload = session.pending_input.get()
            if payload is None:
                break
            try:
                stdin.write(payload)
                stdin.flush()
            except (OSError, ValueError) as exc:
                LOGGER.warning(
                    "session_input_failed",
                    extra={"session_id": session.session_id, "error": str(exc)},
                )
                with self._lock:
                    session.input_error = str(exc)
                break
        try:
            stdin.close()
        except (OSError, ValueError):
            LOGGER.debug("session_stdin_close_failed", extra={"session_id": session.session_id})

    def _watch_exit(self, session: Session, readers: list[threading.Thread]) -> None:
        exit_code = session.process.wait()
        # Deliver everything the process wrote before reporting the exit.
        for reader in readers:
            reader.join(timeout=self.kill_grace)
        self._handle_event(
            SessionEvent("process-exited", session.session_id, exit_code=exit_code)
        )
        session.pending_input.put(None)

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None or self.sweep_interval <= 0:
            return
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="session-sweeper", daemon=True
        )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except RegistryCorrupted:
                LOGGER.critical("session_sweep_corrupted", exc_info=True)
                return
            except Exception:
                LOGGER.exception("session_sweep_failed")
