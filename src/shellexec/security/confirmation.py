"""Pending confirmations for commands the policy parks behind approval."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from shellexec.models import RiskLevel, ValidationResult

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class PendingConfirmation:
    confirmation_id: str
    command: str
    risk_level: RiskLevel
    reason: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "confirmation_id": self.confirmation_id,
            "command": self.command,
            "risk_level": self.risk_level,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class ConfirmationManager:
    """Single-use confirmation tokens that expire after a timeout.

    A token only confirms the exact command text it was issued for.
    """

    def __init__(self, timeout_seconds: float = 300.0, *, clock: Clock = _utcnow) -> None:
        self.timeout = timedelta(seconds=timeout_seconds)
        self._clock = clock
        self._pending: dict[str, PendingConfirmation] = {}
        self._lock = threading.Lock()

    def create(self, command: str, validation: ValidationResult) -> str:
        now = self._clock()
        confirmation = PendingConfirmation(
            confirmation_id=f"confirm_{uuid.uuid4().hex[:12]}",
            command=command,
            risk_level=validation.risk_level,
            reason=validation.reason or "Command requires confirmation",
            created_at=now,
            expires_at=now + self.timeout,
        )
        with self._lock:
            self._pending[confirmation.confirmation_id] = confirmation
        LOGGER.info(
            "confirmation_created",
            extra={
                "confirmation_id": confirmation.confirmation_id,
                "risk_level": confirmation.risk_level,
            },
        )
        return confirmation.confirmation_id

    def confirm(self, confirmation_id: str, command: str) -> bool:
        """Consume a token; true only if it is live and issued for ``command``."""
        with self._lock:
            confirmation = self._pending.get(confirmation_id)
            if confirmation is None:
                return False
            if self._clock() > confirmation.expires_at:
                del self._pending[confirmation_id]
                LOGGER.info("confirmation_expired", extra={"confirmation_id": confirmation_id})
                return False
            if confirmation.command != command:
                return False
            del self._pending[confirmation_id]
        LOGGER.info("confirmation_accepted", extra={"confirmation_id": confirmation_id})
        return True

    def get(self, confirmation_id: str) -> PendingConfirmation | None:
        with self._lock:
            self._expire_locked()
            return self._pending.get(confirmation_id)

    def pending(self) -> list[PendingConfirmation]:
        with self._lock:
            self._expire_locked()
            return sorted(self._pending.values(), key=lambda item: item.created_at)

    def cancel(self, confirmation_id: str) -> bool:
        with self._lock:
            return self._pending.pop(confirmation_id, None) is not None

    def _expire_locked(self) -> None:
        now = self._clock()
        expired = [key for key, item in self._pending.items() if now > item.expires_at]
        for key in expired:
            del self._pending[key]
