"""Request orchestration: policy, dispatch, context update and audit."""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from shellexec.audit import AuditLogger, MonitoringSystem, RecordDispatcher, RecordSink
from shellexec.context import ContextStore, describe_side_effects
from shellexec.errors import (
    CommandTimeout,
    InvalidRequest,
    PolicyRejected,
    RegistryCorrupted,
    SessionNotFound,
    ShellExecError,
    SpawnFailed,
)
from shellexec.models import (
    AuditEvent,
    AuditRecord,
    ContextSnapshot,
    ContextUpdate,
    ExecutionRequest,
    ExecutionResult,
    HistoryEntry,
    RiskLevel,
    SecurityLevel,
    SessionInfo,
    SessionOutput,
    SessionSpec,
    ValidationResult,
)
from shellexec.security import (
    ConfirmationManager,
    PendingConfirmation,
    PolicyConfig,
    PolicyEngine,
)
from shellexec.sessions import SessionRegistry
from shellexec.shell import ShellAdapter, create_shell_adapter, redact_command

if TYPE_CHECKING:
    from shellexec.config import AppConfig

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Core settings handed to the coordinator at construction time."""

    security_level: SecurityLevel = "moderate"
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    default_timeout_ms: int = 300_000
    session_response_wait_ms: int = 1000
    kill_grace_seconds: float = 5.0
    user: str | None = None


class ExecutionCoordinator:
    """Single entry point for execution requests.

    Requests are handled one at a time. ``execute`` always returns an
    ``ExecutionResult``; the only exception that escapes is
    ``RegistryCorrupted``, after the session registry has been shut down.
    """

    def __init__(
        self,
        *,
        adapter: ShellAdapter,
        registry: SessionRegistry,
        store: ContextStore,
        settings: ExecutionSettings | None = None,
        policy: PolicyEngine | None = None,
        confirmations: ConfirmationManager | None = None,
        dispatcher: RecordDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.adapter = adapter
        self.registry = registry
        self.store = store
        self.settings = settings or ExecutionSettings()
        self.policy = policy or PolicyEngine()
        self.confirmations = confirmations
        self.dispatcher = dispatcher
        self._clock = clock
        self._dispatch_lock = threading.RLock()

    @classmethod
    def from_config(cls, config: AppConfig) -> ExecutionCoordinator:
        adapter = create_shell_adapter(config.shell)
        registry = SessionRegistry(
            adapter,
            max_sessions=config.max_sessions,
            session_timeout=config.session_timeout_seconds,
            sweep_interval=config.sweep_interval_seconds,
            kill_grace=config.kill_grace_seconds,
            buffer_lines=config.session_buffer_lines,
        )
        store = ContextStore(
            working_directory=config.working_directory,
            max_history=config.max_history,
            persistence_file=config.context_persistence_file,
        )
        if config.context_persistence_file:
            store.load()

        sinks: list[RecordSink] = []
        if config.audit_enabled:
            sinks.append(
                AuditLogger(
                    config.audit_log_dir,
                    retention_days=config.audit_retention_days,
                ).record
            )
        if config.monitoring_enabled:
            sinks.append(
                MonitoringSystem(
                    webhook_url=config.alert_webhook_url,
                    max_alerts_per_hour=config.max_alerts_per_hour,
                ).process
            )

        return cls(
            adapter=adapter,
            registry=registry,
            store=store,
            settings=ExecutionSettings(
                security_level=config.security_level,
                policy=config.policy_config(),
                default_timeout_ms=config.default_timeout_ms,
                session_response_wait_ms=config.session_response_wait_ms,
                kill_grace_seconds=config.kill_grace_seconds,
                user=config.user,
            ),
            confirmations=ConfirmationManager(config.confirmation_timeout_seconds),
            dispatcher=RecordDispatcher(sinks),
        )

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        with self._dispatch_lock:
            started = time.monotonic()
            try:
                return self._execute(request, started)
            except RegistryCorrupted:
                LOGGER.critical("session_registry_corrupted", exc_info=True)
                self.registry.shutdown()
                raise
            except Exception as exc:
                LOGGER.exception(
                    "execution_internal_error",
                    extra={"command": redact_command(str(request.command))},
                )
                result = self._error_result(
                    str(request.command),
                    ShellExecError(f"Internal error: {exc}"),
                    started=started,
                    session_id=request.session_id if request.targets_session else None,
                )
                self._publish(
                    "failed",
                    str(request.command),
                    ValidationResult(allowed=False, reason=str(exc)),
                    self.store.current(),
                    result,
                    request,
                )
                return result

    def compose_command(self, request: ExecutionRequest) -> str:
        command = request.command if isinstance(request.command, str) else ""
        return self.adapter.join_arguments(command, request.args)

    def read_session(self, session_id: str) -> ExecutionResult:
        with self._dispatch_lock:
            started = time.monotonic()
            try:
                output = self.registry.read_output(session_id)
            except SessionNotFound as exc:
                return self._error_result("", exc, started=started, session_id=session_id)
            return self._session_result("", output, started=started)

    def kill_session(self, session_id: str) -> ExecutionResult:
        with self._dispatch_lock:
            started = time.monotonic()
            try:
                self.registry.kill(session_id)
            except SessionNotFound as exc:
                return self._error_result("", exc, started=started, session_id=session_id)
            return ExecutionResult(
                command="",
                stdout="",
                stderr="",
                exit_code=0,
                duration=time.monotonic() - started,
                success=True,
                side_effects=(f"session terminated: {session_id}",),
                session_id=session_id,
            )

    def list_sessions(self) -> list[SessionInfo]:
        return self.registry.list()

    def context(self) -> ContextSnapshot:
        return self.store.current()

    def history(self, limit: int | None = None, pattern: str | None = None) -> list[HistoryEntry]:
        return self.store.history(limit, pattern)

    def set_working_directory(self, path: str) -> bool:
        with self._dispatch_lock:
            return self.store.set_working_directory(path)

    def pending_confirmations(self) -> list[PendingConfirmation]:
        if self.confirmations is None:
            return []
        return self.confirmations.pending()

    def shutdown(self) -> None:
        with self._dispatch_lock:
            self.registry.shutdown()
            if self.dispatcher is not None:
                self.dispatcher.close()
        LOGGER.info("coordinator_shutdown")

    def _execute(self, request: ExecutionRequest, started: float) -> ExecutionResult:
        command = self.compose_command(request)
        snapshot = self.store.current()
        LOGGER.info(
            "execution_request",
            extra={
                "command": redact_command(command),
                "session_id": request.session_id,
                "intent": request.intent,
            },
        )

        try:
            validation = self._check_policy(command, request)
        except PolicyRejected as exc:
            metadata: dict[str, object] = {"rule": exc.validation.rule}
            if exc.validation.suggestions:
                metadata["suggestions"] = list(exc.validation.suggestions)
            if exc.confirmation_id:
                metadata["confirmation_id"] = exc.confirmation_id
            result = self._error_result(
                command,
                exc,
                started=started,
                session_id=request.session_id if request.targets_session else None,
                risk_level=exc.validation.risk_level,
                metadata=metadata,
            )
            LOGGER.warning(
                "execution_rejected",
                extra={
                    "command": redact_command(command),
                    "reason": exc.validation.reason,
                    "risk_level": exc.validation.risk_level,
                },
            )
            self._publish("rejected", command, exc.validation, snapshot, result, request)
            return result

        if request.targets_session:
            cwd = snapshot.working_directory
        else:
            cwd = self._resolve_cwd(request, snapshot)
        overlay = dict(snapshot.environment)
        if request.env and not request.targets_session:
            overlay.update(request.env)
        process_env = {**os.environ, **overlay}

        try:
            if request.targets_session:
                result = self._feed_session(request.session_id or "", command, started)
            elif request.starts_session:
                result = self._start_session(command, cwd, process_env, request, started)
            else:
                result = self._run_one_shot(command, cwd, process_env, request, started)
        except ShellExecError as exc:
            result = self._error_result(
                command,
                exc,
                started=started,
                session_id=request.session_id if request.targets_session else None,
                risk_level=validation.risk_level,
            )
            LOGGER.warning(
                "execution_failed",
                extra={"command": redact_command(command), "error_kind": exc.kind},
            )
            self._publish("failed", command, validation, snapshot, result, request)
            return result

        side_effects = result.side_effects
        if result.success:
            side_effects += describe_side_effects(
                command, cwd, track_shell_state=request.session_id is None
            )
        entry = self.store.update(
            ContextUpdate(
                command=command,
                working_directory=cwd,
                environment=overlay,
                result=result,
                session_id=result.session_id if request.session_id is not None else None,
                intent=request.intent,
            )
        )
        result = replace(
            result,
            side_effects=side_effects,
            working_directory=cwd,
            risk_level=validation.risk_level,
            history_id=entry.id,
        )

        event: AuditEvent
        if request.session_id is not None:
            event = "session"
        else:
            event = "executed" if result.success else "failed"
        self._publish(event, command, validation, snapshot, result, request)
        LOGGER.info(
            "execution_completed",
            extra={
                "history_id": entry.id,
                "exit_code": result.exit_code,
                "success": result.success,
                "duration": round(result.duration, 4),
            },
        )
        return result

    def _check_policy(self, command: str, request: ExecutionRequest) -> ValidationResult:
        validation = self.policy.validate(
            command, self.settings.security_level, self.settings.policy
        )
        if validation.allowed:
            return validation

        if validation.requires_confirmation and self.confirmations is not None:
            if request.confirmation_id and self.confirmations.confirm(
                request.confirmation_id, command
            ):
                return replace(validation, allowed=True)
            confirmation_id = self.confirmations.create(command, validation)
            raise PolicyRejected(
                f"{validation.reason}. Resubmit with confirmation_id={confirmation_id} to proceed",
                validation=validation,
                confirmation_id=confirmation_id,
            )

        raise PolicyRejected(
            validation.reason or "Command rejected by security policy",
            validation=validation,
        )

    def _resolve_cwd(self, request: ExecutionRequest, snapshot: ContextSnapshot) -> str:
        base = snapshot.working_directory or os.getcwd()
        if request.cwd:
            return os.path.normpath(os.path.join(base, os.path.expanduser(request.cwd)))
        return base

    def _run_one_shot(
        self,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        request: ExecutionRequest,
        started: float,
    ) -> ExecutionResult:
        timeout_ms = request.timeout_ms
        if timeout_ms is None:
            timeout_ms = self.settings.default_timeout_ms
        elif timeout_ms <= 0:
            raise InvalidRequest(f"timeout_ms must be positive, got {timeout_ms}")
        run = self.adapter.run(
            command,
            cwd=cwd,
            env=env,
            timeout=timeout_ms / 1000,
            kill_grace=self.settings.kill_grace_seconds,
        )
        if not run.executed:
            raise SpawnFailed(run.stderr or f"Failed to start: {command}")

        if run.timed_out:
            return self._error_result(
                command,
                CommandTimeout(
                    f"Command timed out after {timeout_ms}ms",
                    stdout=run.stdout,
                    stderr=run.stderr,
                ),
                started=started,
                timed_out=True,
            )

        return ExecutionResult(
            command=command,
            stdout=run.stdout,
            stderr=run.stderr,
            exit_code=run.returncode,
            duration=time.monotonic() - started,
            success=run.returncode == 0,
            metadata={"shell": run.shell, "pid": run.pid},
        )

    def _start_session(
        self,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        request: ExecutionRequest,
        started: float,
    ) -> ExecutionResult:
        session_id = self.registry.start(
            SessionSpec(command=command, cwd=cwd, env=env, intent=request.intent)
        )
        self.registry.wait_for_output(session_id, self.settings.session_response_wait_ms / 1000)
        output = self.registry.read_output(session_id)
        result = self._session_result(command, output, started=started)
        return replace(result, side_effects=(f"session started: {session_id}",))

    def _feed_session(self, session_id: str, command: str, started: float) -> ExecutionResult:
        self.registry.feed(session_id, command)
        self.registry.wait_for_output(session_id, self.settings.session_response_wait_ms / 1000)
        output = self.registry.read_output(session_id)
        return self._session_result(command, output, started=started)

    def _session_result(
        self, command: str, output: SessionOutput, *, started: float
    ) -> ExecutionResult:
        return ExecutionResult(
            command=command,
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=output.exit_code if output.exit_code is not None else 0,
            duration=time.monotonic() - started,
            success=output.status != "error",
            session_id=output.session_id,
            metadata={"session_status": output.status, "has_more": output.has_more},
        )

    def _error_result(
        self,
        command: str,
        error: ShellExecError,
        *,
        started: float,
        session_id: str | None = None,
        risk_level: RiskLevel | None = None,
        timed_out: bool = False,
        metadata: Mapping[str, object] | None = None,
    ) -> ExecutionResult:
        message = str(error)
        stderr = f"{error.stderr}\n{message}" if error.stderr else message
        return ExecutionResult(
            command=command,
            stdout=error.stdout,
            stderr=stderr,
            exit_code=error.exit_code,
            duration=time.monotonic() - started,
            success=False,
            session_id=session_id,
            timed_out=timed_out,
            error_kind=error.kind,
            risk_level=risk_level or "low",
            metadata={"error_kind": error.kind, "message": message, **(metadata or {})},
        )

    def _publish(
        self,
        event: AuditEvent,
        command: str,
        validation: ValidationResult,
        snapshot: ContextSnapshot,
        result: ExecutionResult,
        request: ExecutionRequest,
    ) -> None:
        if self.dispatcher is None:
            return
        record = AuditRecord(
            record_id=uuid.uuid4().hex,
            timestamp=self._clock(),
            event=event,
            command=command,
            validation=validation,
            context=snapshot,
            result=result,
            intent=request.intent,
            user=self.settings.user,
        )
        self.dispatcher.publish(record)
