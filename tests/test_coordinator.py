from __future__ import annotations

import os
from pathlib import Path

import pytest

from shellexec.audit import RecordDispatcher
from shellexec.context import ContextStore
from shellexec.coordinator import ExecutionCoordinator, ExecutionSettings
from shellexec.errors import RegistryCorrupted
from shellexec.models import NEW_SESSION, AuditRecord, ExecutionRequest
from shellexec.security import ConfirmationManager, PolicyConfig
from shellexec.security.rules import POSIX_SYSTEM_DIRECTORIES
from shellexec.sessions import SessionRegistry
from shellexec.shell import BashAdapter

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX shell execution")


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _coordinator(
    workdir: Path,
    *,
    security_level: str = "moderate",
    executable: str = "sh",
    sinks: list | None = None,
    id_factory=None,
) -> ExecutionCoordinator:
    adapter = BashAdapter(executable=executable)
    registry_kwargs = {"id_factory": id_factory} if id_factory is not None else {}
    return ExecutionCoordinator(
        adapter=adapter,
        registry=SessionRegistry(adapter, sweep_interval=0, kill_grace=2.0, **registry_kwargs),
        store=ContextStore(working_directory=str(workdir)),
        settings=ExecutionSettings(
            security_level=security_level,  # type: ignore[arg-type]
            policy=PolicyConfig(system_directories=POSIX_SYSTEM_DIRECTORIES),
            session_response_wait_ms=2000,
            kill_grace_seconds=2.0,
        ),
        confirmations=ConfirmationManager(),
        dispatcher=RecordDispatcher(sinks or []),
    )


@pytest.fixture
def coordinator(workdir: Path):
    coordinator = _coordinator(workdir)
    yield coordinator
    coordinator.shutdown()


def test_one_shot_runs_in_context_directory(
    coordinator: ExecutionCoordinator, workdir: Path
) -> None:
    result = coordinator.execute(ExecutionRequest(command="pwd"))

    assert result.success is True
    assert result.exit_code == 0
    assert result.stdout.strip() == str(workdir)
    assert result.working_directory == str(workdir)
    assert result.history_id == coordinator.history()[-1].id


def test_arguments_are_quoted(coordinator: ExecutionCoordinator) -> None:
    result = coordinator.execute(ExecutionRequest(command="echo", args=("a  b", "$HOME")))

    assert result.stdout == "a  b $HOME\n"


def test_nonzero_exit_is_a_failed_result(coordinator: ExecutionCoordinator) -> None:
    result = coordinator.execute(ExecutionRequest(command="echo oops >&2; exit 4"))

    assert result.success is False
    assert result.exit_code == 4
    assert result.stderr == "oops\n"
    assert result.error_kind is None
    assert len(coordinator.history()) == 1


def test_timeout_terminates_and_is_recorded(coordinator: ExecutionCoordinator) -> None:
    result = coordinator.execute(
        ExecutionRequest(command="sleep", args=("10",), timeout_ms=100)
    )

    assert result.success is False
    assert result.timed_out is True
    assert result.error_kind == "timeout"
    assert result.exit_code == 124
    assert result.duration < 8
    history = coordinator.history()
    assert history[-1].summary.error_kind == "timeout"


@pytest.mark.parametrize("timeout_ms", [0, -5])
def test_non_positive_timeout_is_rejected(
    coordinator: ExecutionCoordinator, workdir: Path, timeout_ms: int
) -> None:
    result = coordinator.execute(
        ExecutionRequest(command="touch ran.txt", timeout_ms=timeout_ms)
    )

    assert result.success is False
    assert result.error_kind == "invalid_request"
    assert result.exit_code == 1
    assert "timeout_ms must be positive" in result.stderr
    assert not (workdir / "ran.txt").exists()
    assert coordinator.history() == []


def test_rejection_writes_no_history(workdir: Path) -> None:
    coordinator = _coordinator(workdir, security_level="strict")
    try:
        result = coordinator.execute(ExecutionRequest(command="cat /etc/hosts"))
    finally:
        coordinator.shutdown()

    assert result.success is False
    assert result.exit_code == 126
    assert result.error_kind == "policy_rejected"
    assert result.risk_level == "high"
    assert result.metadata["rule"] == "system_directory"
    assert coordinator.history() == []


def test_confirmation_round_trip(coordinator: ExecutionCoordinator, workdir: Path) -> None:
    (workdir / "build").mkdir()

    first = coordinator.execute(ExecutionRequest(command="rm -rf build"))

    assert first.error_kind == "policy_rejected"
    confirmation_id = first.metadata["confirmation_id"]
    assert [item.confirmation_id for item in coordinator.pending_confirmations()] == [
        confirmation_id
    ]
    assert (workdir / "build").exists()

    second = coordinator.execute(
        ExecutionRequest(command="rm -rf build", confirmation_id=str(confirmation_id))
    )

    assert second.success is True
    assert second.risk_level == "high"
    assert not (workdir / "build").exists()
    assert f"deleted: {workdir / 'build'}" in second.side_effects
    assert coordinator.pending_confirmations() == []


def test_confirmation_is_bound_to_command(coordinator: ExecutionCoordinator) -> None:
    first = coordinator.execute(ExecutionRequest(command="rm -rf build"))

    other = coordinator.execute(
        ExecutionRequest(
            command="rm -rf dist",
            confirmation_id=str(first.metadata["confirmation_id"]),
        )
    )

    assert other.error_kind == "policy_rejected"
    assert other.metadata["confirmation_id"] != first.metadata["confirmation_id"]


def test_cd_and_export_carry_into_later_commands(
    coordinator: ExecutionCoordinator, workdir: Path
) -> None:
    (workdir / "sub").mkdir()

    moved = coordinator.execute(ExecutionRequest(command="cd sub"))
    coordinator.execute(ExecutionRequest(command="export GREETING=hi"))
    result = coordinator.execute(ExecutionRequest(command='echo "$GREETING"; pwd'))

    assert f"working directory: {workdir / 'sub'}" in moved.side_effects
    assert result.stdout.splitlines() == ["hi", str(workdir / "sub")]
    assert coordinator.context().environment == {"GREETING": "hi"}


def test_request_env_and_cwd_overrides(coordinator: ExecutionCoordinator, workdir: Path) -> None:
    (workdir / "other").mkdir()

    result = coordinator.execute(
        ExecutionRequest(command='echo "$FLAG"; pwd', cwd="other", env={"FLAG": "on"})
    )

    assert result.stdout.splitlines() == ["on", str(workdir / "other")]


def test_spawn_failure_writes_no_history(workdir: Path) -> None:
    coordinator = _coordinator(workdir, executable="/definitely/missing/sh")
    try:
        result = coordinator.execute(ExecutionRequest(command="echo hi"))
    finally:
        coordinator.shutdown()

    assert result.error_kind == "spawn_failed"
    assert result.exit_code == 127
    assert coordinator.history() == []


def test_session_start_feed_read_kill(coordinator: ExecutionCoordinator) -> None:
    started = coordinator.execute(ExecutionRequest(command="cat", session_id=NEW_SESSION))

    assert started.success is True
    session_id = started.session_id
    assert session_id is not None
    assert started.metadata["session_status"] == "running"
    assert [info.session_id for info in coordinator.list_sessions()] == [session_id]

    fed = coordinator.execute(ExecutionRequest(command="hello", session_id=session_id))
    assert fed.session_id == session_id
    echoed = fed.stdout
    if "hello" not in echoed:
        echoed += coordinator.read_session(session_id).stdout
    assert "hello" in echoed

    killed = coordinator.kill_session(session_id)
    assert killed.success is True

    after = coordinator.read_session(session_id)
    assert after.error_kind == "not_found"
    missing = coordinator.execute(ExecutionRequest(command="again", session_id=session_id))
    assert missing.error_kind == "not_found"

    session_entries = [entry for entry in coordinator.history() if entry.session_id]
    assert [entry.command for entry in session_entries] == ["cat", "hello"]


def test_audit_records_each_decision(workdir: Path) -> None:
    records: list[AuditRecord] = []
    coordinator = _coordinator(workdir, sinks=[records.append])
    try:
        coordinator.execute(ExecutionRequest(command="echo hi", intent="greet"))
        coordinator.execute(ExecutionRequest(command="exit 2"))
        coordinator.execute(ExecutionRequest(command="rm -rf build"))
        assert coordinator.dispatcher is not None
        coordinator.dispatcher.flush(timeout=5)
    finally:
        coordinator.shutdown()

    assert [record.event for record in records] == ["executed", "failed", "rejected"]
    assert records[0].intent == "greet"
    assert records[2].validation.requires_confirmation is True


def test_failing_sink_does_not_affect_result(workdir: Path) -> None:
    def broken(record: AuditRecord) -> None:
        raise RuntimeError("sink down")

    coordinator = _coordinator(workdir, sinks=[broken])
    try:
        result = coordinator.execute(ExecutionRequest(command="echo ok"))
    finally:
        coordinator.shutdown()

    assert result.success is True


def test_internal_error_becomes_result(coordinator: ExecutionCoordinator, monkeypatch) -> None:
    def explode(*args: object, **kwargs: object) -> None:
        raise ValueError("boom")

    monkeypatch.setattr(coordinator.adapter, "run", explode)

    result = coordinator.execute(ExecutionRequest(command="echo hi"))

    assert result.success is False
    assert result.error_kind == "internal_error"
    assert result.exit_code == 1
    assert "boom" in result.stderr


def test_registry_corruption_propagates(workdir: Path) -> None:
    coordinator = _coordinator(workdir, id_factory=lambda: "session_fixed")
    try:
        coordinator.execute(ExecutionRequest(command="cat", session_id=NEW_SESSION))
        with pytest.raises(RegistryCorrupted):
            coordinator.execute(ExecutionRequest(command="cat", session_id=NEW_SESSION))
        assert len(coordinator.registry) == 0
    finally:
        coordinator.shutdown()


def test_set_working_directory(coordinator: ExecutionCoordinator, workdir: Path) -> None:
    assert coordinator.set_working_directory(str(workdir / "missing")) is False
    assert coordinator.context().working_directory == str(workdir)
