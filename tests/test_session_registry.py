from __future__ import annotations

import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from shellexec.errors import RegistryCorrupted, ResourceExhausted, SessionNotFound, SpawnFailed
from shellexec.models import SessionSpec
from shellexec.sessions import Session, SessionRegistry
from shellexec.shell import BashAdapter

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX shell sessions")


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def registry():
    registry = SessionRegistry(
        BashAdapter(executable="sh"),
        max_sessions=2,
        sweep_interval=0,
        kill_grace=2.0,
    )
    yield registry
    registry.shutdown()


def _read_until(registry: SessionRegistry, session_id: str, needle: str) -> str:
    collected = ""
    deadline = time.monotonic() + 5
    while needle not in collected and time.monotonic() < deadline:
        registry.wait_for_output(session_id, 0.5)
        collected += registry.read_output(session_id).stdout
    return collected


def test_limit_counts_running_sessions(registry: SessionRegistry) -> None:
    first = registry.start(SessionSpec(command="cat"))
    second = registry.start(SessionSpec(command="cat"))

    with pytest.raises(ResourceExhausted):
        registry.start(SessionSpec(command="cat"))

    assert first != second
    assert {info.session_id for info in registry.list()} == {first, second}


def test_killing_a_session_frees_a_slot(registry: SessionRegistry) -> None:
    first = registry.start(SessionSpec(command="cat"))
    registry.start(SessionSpec(command="cat"))

    registry.kill(first)

    assert registry.start(SessionSpec(command="cat"))
    assert len(registry) == 2


def test_feed_then_read_drains_output(registry: SessionRegistry) -> None:
    session_id = registry.start(SessionSpec(command="cat"))

    registry.feed(session_id, "hello")

    assert "hello\n" in _read_until(registry, session_id, "hello")
    second = registry.read_output(session_id)
    assert second.stdout == ""
    assert second.status == "running"


def test_session_runs_in_requested_directory(registry: SessionRegistry, tmp_path: Path) -> None:
    session_id = registry.start(SessionSpec(command="pwd; cat", cwd=str(tmp_path)))

    assert str(tmp_path) in _read_until(registry, session_id, str(tmp_path))


def test_natural_exit_reports_status(registry: SessionRegistry) -> None:
    session_id = registry.start(SessionSpec(command="echo done; exit 3"))

    deadline = time.monotonic() + 5
    output = registry.read_output(session_id)
    collected = output.stdout
    while output.status == "running" and time.monotonic() < deadline:
        registry.wait_for_output(session_id, 0.5)
        output = registry.read_output(session_id)
        collected += output.stdout

    assert collected == "done\n"
    assert output.status == "error"
    assert output.exit_code == 3
    with pytest.raises(SessionNotFound):
        registry.feed(session_id, "more")


def test_killed_session_is_gone(registry: SessionRegistry) -> None:
    session_id = registry.start(SessionSpec(command="cat"))

    registry.kill(session_id)

    with pytest.raises(SessionNotFound):
        registry.feed(session_id, "x")
    with pytest.raises(SessionNotFound):
        registry.read_output(session_id)
    with pytest.raises(SessionNotFound):
        registry.kill(session_id)


def test_duplicate_session_id_is_fatal() -> None:
    registry = SessionRegistry(
        BashAdapter(executable="sh"),
        sweep_interval=0,
        id_factory=lambda: "session_fixed",
    )
    try:
        registry.start(SessionSpec(command="cat"))
        with pytest.raises(RegistryCorrupted):
            registry.start(SessionSpec(command="cat"))
    finally:
        registry.shutdown()


def test_spawn_failure_is_reported() -> None:
    registry = SessionRegistry(BashAdapter(executable="/definitely/missing/sh"), sweep_interval=0)

    with pytest.raises(SpawnFailed):
        registry.start(SessionSpec(command="cat"))
    assert len(registry) == 0


def test_sweep_kills_idle_sessions() -> None:
    clock = MutableClock()
    registry = SessionRegistry(
        BashAdapter(executable="sh"),
        session_timeout=60,
        sweep_interval=0,
        kill_grace=2.0,
        clock=clock,
    )
    try:
        idle = registry.start(SessionSpec(command="cat"))
        clock.now += timedelta(seconds=45)
        busy = registry.start(SessionSpec(command="cat"))
        clock.now += timedelta(seconds=30)

        assert registry.sweep() == [idle]
        assert [info.session_id for info in registry.list()] == [busy]
    finally:
        registry.shutdown()


def test_shutdown_kills_everything_and_refuses_new_sessions() -> None:
    registry = SessionRegistry(BashAdapter(executable="sh"), sweep_interval=0, kill_grace=2.0)
    registry.start(SessionSpec(command="cat"))
    registry.start(SessionSpec(command="cat"))

    registry.shutdown()

    assert len(registry) == 0
    with pytest.raises(ResourceExhausted):
        registry.start(SessionSpec(command="cat"))


class _NoProcess:
    pid = None

    def poll(self) -> None:
        return None


def _session(buffer_lines: int) -> Session:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Session(
        session_id="session_test",
        command="cat",
        process=_NoProcess(),  # type: ignore[arg-type]
        created_at=now,
        last_activity=now,
        cwd=None,
        env={},
        buffer_lines=buffer_lines,
    )


def test_session_buffer_joins_partial_lines() -> None:
    session = _session(10)

    session.append("stdout", "hel")
    session.append("stdout", "lo\nwor")
    session.append("stdout", "ld\n")

    assert session.drain() == ("hello\nworld\n", "", False)


def test_session_buffer_eviction_sets_has_more() -> None:
    session = _session(2)

    session.append("stdout", "1\n2\n3\n")

    assert session.drain() == ("2\n3\n", "", True)
    assert session.drain() == ("", "", False)


def test_session_finish_keeps_first_terminal_status() -> None:
    session = _session(2)

    assert session.finish(0) is True
    assert session.finish(1, killed=True) is False
    assert session.status == "finished"
    assert session.exit_code == 0


def test_session_buffer_bounds_output_without_newlines() -> None:
    session = _session(2)
    session.line_chars = 1000

    for _ in range(10_000):
        session.append("stdout", "y" * 100)

    assert len(session.stdout) == 2
    assert all(len(line) <= 1000 for line in session.stdout)
    stdout, _, truncated = session.drain()
    assert len(stdout) == 2000
    assert truncated is True


def test_session_buffer_slices_keep_following_output() -> None:
    session = _session(10)
    session.line_chars = 4

    session.append("stdout", "abcdefg")
    session.append("stdout", "h\nij\n")

    assert session.drain() == ("abcdefgh\nij\n", "", False)


def test_large_feed_does_not_stall_the_registry(registry: SessionRegistry) -> None:
    session_id = registry.start(SessionSpec(command="cat"))
    started = time.monotonic()

    registry.feed(session_id, "x" * (4 * 1024 * 1024))

    assert time.monotonic() - started < 2
    assert "x" in _read_until(registry, session_id, "x")
    assert [info.session_id for info in registry.list()] == [session_id]
    registry.kill(session_id)
    assert time.monotonic() - started < 10
    assert len(registry) == 0


def test_feed_returns_while_child_ignores_input(registry: SessionRegistry) -> None:
    session_id = registry.start(SessionSpec(command="sleep 30"))
    started = time.monotonic()

    registry.feed(session_id, "x" * (1024 * 1024))
    registry.feed(session_id, "more")

    assert time.monotonic() - started < 2
    registry.kill(session_id)
    assert time.monotonic() - started < 10
