"""Failure taxonomy raised inside the core and reported by the coordinator."""

from __future__ import annotations

from .models import ValidationResult

POLICY_REJECTED = "policy_rejected"
NOT_FOUND = "not_found"
RESOURCE_EXHAUSTED = "resource_exhausted"
TIMEOUT = "timeout"
SPAWN_FAILED = "spawn_failed"
IO_FAILURE = "io_failure"
INVALID_REQUEST = "invalid_request"
INTERNAL_ERROR = "internal_error"

EXIT_CODES = {
    POLICY_REJECTED: 126,
    TIMEOUT: 124,
    SPAWN_FAILED: 127,
}


class ShellExecError(Exception):
    """Base class for recoverable core failures.

    Output captured before the failure travels with the exception so the
    coordinator can still report it.
    """

    kind = INTERNAL_ERROR

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.kind, 1)


class PolicyRejected(ShellExecError):
    kind = POLICY_REJECTED

    def __init__(
        self,
        message: str,
        *,
        validation: ValidationResult,
        confirmation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.validation = validation
        self.confirmation_id = confirmation_id


class SessionNotFound(ShellExecError):
    kind = NOT_FOUND

    def __init__(self, session_id: str, detail: str | None = None) -> None:
        self.session_id = session_id
        super().__init__(detail or f"Session {session_id} not found")


class ResourceExhausted(ShellExecError):
    kind = RESOURCE_EXHAUSTED


class CommandTimeout(ShellExecError):
    kind = TIMEOUT


class SpawnFailed(ShellExecError):
    kind = SPAWN_FAILED


class IOFailure(ShellExecError):
    kind = IO_FAILURE


class InvalidRequest(ShellExecError):
    kind = INVALID_REQUEST


class RegistryCorrupted(RuntimeError):
    """Fatal: session registry invariants no longer hold."""
