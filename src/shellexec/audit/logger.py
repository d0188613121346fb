"""JSON-lines audit trail of every coordinator decision."""

from __future__ import annotations

import json
import logging
import re
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from shellexec.models import AuditRecord, RiskLevel

LOGGER = logging.getLogger(__name__)

_DAY_FILE = re.compile(r"^audit-(\d{4}-\d{2}-\d{2})\.log$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class AuditReport:
    since: datetime | None
    until: datetime | None
    total_commands: int = 0
    successful_commands: int = 0
    failed_commands: int = 0
    security_violations: int = 0
    top_commands: list[tuple[str, int]] = field(default_factory=list)
    risk_distribution: dict[str, int] = field(
        default_factory=lambda: {"low": 0, "medium": 0, "high": 0}
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
            "total_commands": self.total_commands,
            "successful_commands": self.successful_commands,
            "failed_commands": self.failed_commands,
            "security_violations": self.security_violations,
            "top_commands": [
                {"command": command, "count": count} for command, count in self.top_commands
            ],
            "risk_distribution": dict(self.risk_distribution),
        }


class AuditLogger:
    """Writes one JSON object per record to ``audit-YYYY-MM-DD.log``.

    Records from the last ``retention_days`` are also kept in memory for
    ``query`` and ``report``.
    """

    def __init__(
        self,
        log_dir: str | Path | None = "logs",
        *,
        retention_days: int = 30,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.log_dir = Path(log_dir) if log_dir else None
        self.retention = timedelta(days=max(1, retention_days))
        self.enabled = enabled
        self._clock = clock
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def record(self, record: AuditRecord) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._records.append(record)
            self._prune_locked()
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"audit-{record.timestamp.date().isoformat()}.log"
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record.to_dict()) + "\n")

    def query(
        self,
        *,
        command: str | None = None,
        risk_level: RiskLevel | None = None,
        event: str | None = None,
        user: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditRecord]:
        with self._lock:
            records = list(self._records)
        if command:
            try:
                matcher = re.compile(command, re.IGNORECASE)
            except re.error:
                matcher = re.compile(re.escape(command), re.IGNORECASE)
            records = [item for item in records if matcher.search(item.command)]
        if risk_level:
            records = [item for item in records if item.validation.risk_level == risk_level]
        if event:
            records = [item for item in records if item.event == event]
        if user:
            records = [item for item in records if item.user == user]
        if since is not None:
            records = [item for item in records if item.timestamp >= since]
        if until is not None:
            records = [item for item in records if item.timestamp <= until]
        return records

    def report(self, since: datetime | None = None, until: datetime | None = None) -> AuditReport:
        records = self.query(since=since, until=until)
        report = AuditReport(since=since, until=until, total_commands=len(records))
        counts: Counter[str] = Counter()
        for item in records:
            if item.result.success:
                report.successful_commands += 1
            else:
                report.failed_commands += 1
            if not item.validation.allowed:
                report.security_violations += 1
            report.risk_distribution[item.validation.risk_level] += 1
            base = item.command.split()[0] if item.command.split() else item.command
            counts[base] += 1
        report.top_commands = counts.most_common(10)
        return report

    def prune_files(self) -> list[Path]:
        """Delete day files older than the retention window."""
        if self.log_dir is None or not self.log_dir.is_dir():
            return []
        cutoff: date = (self._clock() - self.retention).date()
        removed: list[Path] = []
        for path in sorted(self.log_dir.iterdir()):
            match = _DAY_FILE.match(path.name)
            if match is None:
                continue
            try:
                day = date.fromisoformat(match.group(1))
            except ValueError:
                continue
            if day < cutoff:
                path.unlink()
                removed.append(path)
        if removed:
            LOGGER.info("audit_files_pruned", extra={"count": len(removed)})
        return removed

    def _prune_locked(self) -> None:
        cutoff = self._clock() - self.retention
        if self._records and self._records[0].timestamp < cutoff:
            self._records = [item for item in self._records if item.timestamp >= cutoff]
