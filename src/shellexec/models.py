"""Data models shared by the execution core."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

RiskLevel = Literal["low", "medium", "high"]
SecurityLevel = Literal["strict", "moderate", "permissive"]
SessionStatus = Literal["running", "finished", "error"]
ChangeKind = Literal["created", "modified", "deleted", "moved"]
AuditEvent = Literal["executed", "rejected", "failed", "session"]

NEW_SESSION = "new"

RISK_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2}


def max_risk(*levels: RiskLevel) -> RiskLevel:
    """Return the most severe of the given risk levels."""
    highest: RiskLevel = "low"
    for level in levels:
        if RISK_ORDER[level] > RISK_ORDER[highest]:
            highest = level
    return highest


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """A single caller request; immutable once constructed."""

    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    timeout_ms: int | None = None
    session_id: str | None = None
    intent: str | None = None
    confirmation_id: str | None = None

    @property
    def starts_session(self) -> bool:
        return self.session_id == NEW_SESSION

    @property
    def targets_session(self) -> bool:
        return self.session_id is not None and self.session_id != NEW_SESSION


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a policy check."""

    allowed: bool
    risk_level: RiskLevel = "low"
    reason: str | None = None
    suggestions: tuple[str, ...] = ()
    requires_confirmation: bool = False
    rule: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Normalized answer returned for every request."""

    command: str
    stdout: str
    stderr: str
    exit_code: int
    duration: float
    success: bool
    side_effects: tuple[str, ...] = ()
    working_directory: str | None = None
    session_id: str | None = None
    timed_out: bool = False
    error_kind: str | None = None
    risk_level: RiskLevel = "low"
    history_id: str | None = None
    metadata: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 4),
            "success": self.success,
            "side_effects": list(self.side_effects),
            "working_directory": self.working_directory,
            "session_id": self.session_id,
            "timed_out": self.timed_out,
            "error_kind": self.error_kind,
            "risk_level": self.risk_level,
            "history_id": self.history_id,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class SessionSpec:
    """What the registry needs to spawn a session process."""

    command: str
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    intent: str | None = None


@dataclass(frozen=True, slots=True)
class SessionOutput:
    """Output drained from a session since the previous read."""

    session_id: str
    stdout: str
    stderr: str
    status: SessionStatus
    has_more: bool = False
    exit_code: int | None = None


@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Listing entry for a live session."""

    session_id: str
    command: str
    created_at: datetime
    last_activity: datetime
    status: SessionStatus
    cwd: str | None
    intent: str | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "command": self.command,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "status": self.status,
            "cwd": self.cwd,
            "intent": self.intent,
            "pid": self.pid,
        }


@dataclass(frozen=True, slots=True)
class ResultSummary:
    exit_code: int
    success: bool
    duration: float
    error_kind: str | None = None


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """One executed command as remembered by the context store."""

    id: str
    command: str
    timestamp: datetime
    working_directory: str
    summary: ResultSummary
    session_id: str | None = None
    intent: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "command": self.command,
            "timestamp": self.timestamp.isoformat(),
            "working_directory": self.working_directory,
            "exit_code": self.summary.exit_code,
            "success": self.summary.success,
            "duration": self.summary.duration,
            "error_kind": self.summary.error_kind,
            "session_id": self.session_id,
            "intent": self.intent,
        }


@dataclass(frozen=True, slots=True)
class FileSystemChange:
    kind: ChangeKind
    path: str
    timestamp: datetime
    history_id: str
    old_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "path": self.path,
            "old_path": self.old_path,
            "timestamp": self.timestamp.isoformat(),
            "history_id": self.history_id,
        }


@dataclass(frozen=True, slots=True)
class ContextSnapshot:
    """Read-only view of the context visible to the next command."""

    context_id: str
    working_directory: str
    environment: Mapping[str, str]
    history: tuple[HistoryEntry, ...] = ()
    file_system_changes: tuple[FileSystemChange, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "context_id": self.context_id,
            "working_directory": self.working_directory,
            "environment": dict(self.environment),
            "history": [entry.to_dict() for entry in self.history],
            "file_system_changes": [change.to_dict() for change in self.file_system_changes],
        }


@dataclass(frozen=True, slots=True)
class ContextUpdate:
    """Values the coordinator commits to the context store after a dispatch."""

    command: str
    working_directory: str
    environment: Mapping[str, str]
    result: ExecutionResult
    session_id: str | None = None
    intent: str | None = None


@dataclass(frozen=True, slots=True)
class AuditRecord:
    """Immutable record handed to audit and monitoring collaborators."""

    record_id: str
    timestamp: datetime
    event: AuditEvent
    command: str
    validation: ValidationResult
    context: ContextSnapshot
    result: ExecutionResult
    intent: str | None = None
    user: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "event": self.event,
            "command": self.command,
            "user": self.user,
            "intent": self.intent,
            "validation": {
                "allowed": self.validation.allowed,
                "risk_level": self.validation.risk_level,
                "reason": self.validation.reason,
                "requires_confirmation": self.validation.requires_confirmation,
                "rule": self.validation.rule,
            },
            "context": self.context.to_dict(),
            "result": self.result.to_dict(),
        }
