"""Rule-based alerting over the audit record stream."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Literal
from urllib import request
from urllib.error import HTTPError, URLError

from shellexec.models import AuditRecord

LOGGER = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high", "critical"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AlertRule:
    rule_id: str
    name: str
    description: str
    condition: Callable[[AuditRecord], bool]
    severity: Severity
    cooldown_minutes: float
    enabled: bool = True


@dataclass(slots=True)
class Alert:
    alert_id: str
    rule_id: str
    rule_name: str
    severity: Severity
    message: str
    timestamp: datetime
    record: AuditRecord
    acknowledged: bool = False
    acknowledged_by: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "command": self.record.command,
            "acknowledged": self.acknowledged,
        }


def _is_privileged(record: AuditRecord) -> bool:
    command = record.command.lower()
    return "sudo" in command or "su " in command


def _is_suspicious_file_op(record: AuditRecord) -> bool:
    command = record.command.lower()
    return "rm -rf" in command or "del /f /s" in command or "format " in command


def default_rules() -> list[AlertRule]:
    return [
        AlertRule(
            "high-risk-command",
            "High Risk Command",
            "A command classified as high risk was submitted",
            lambda record: record.validation.risk_level == "high",
            "high",
            5,
        ),
        AlertRule(
            "security-violation",
            "Security Violation",
            "A command was rejected by the security policy",
            lambda record: not record.validation.allowed,
            "critical",
            1,
        ),
        AlertRule(
            "privileged-command",
            "Privileged Command",
            "A command requested elevated privileges",
            _is_privileged,
            "medium",
            10,
        ),
        AlertRule(
            "command-failure",
            "Command Failure",
            "An allowed command finished with a non-zero exit code",
            lambda record: record.validation.allowed and record.result.exit_code != 0,
            "low",
            15,
        ),
        AlertRule(
            "suspicious-file-ops",
            "Suspicious File Operations",
            "Potentially destructive file operations detected",
            _is_suspicious_file_op,
            "critical",
            1,
        ),
    ]


class MonitoringSystem:
    """Raises alerts from audit records; never lets a failure escape."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        webhook_url: str | None = None,
        max_alerts_per_hour: int = 50,
        alert_retention_days: int = 7,
        webhook_timeout: float = 10.0,
        rules: Iterable[AlertRule] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.enabled = enabled
        self.webhook_url = webhook_url
        self.max_alerts_per_hour = max_alerts_per_hour
        self.alert_retention = timedelta(days=max(1, alert_retention_days))
        self.webhook_timeout = webhook_timeout
        self._clock = clock
        self._rules: dict[str, AlertRule] = {
            rule.rule_id: rule for rule in (default_rules() if rules is None else rules)
        }
        self._alerts: list[Alert] = []
        self._last_fired: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def add_rule(self, rule: AlertRule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return False
            self._rules[rule_id] = replace(rule, enabled=enabled)
            return True

    def process(self, record: AuditRecord) -> list[Alert]:
        if not self.enabled:
            return []
        now = self._clock()
        fired: list[Alert] = []
        with self._lock:
            recent = sum(1 for alert in self._alerts if now - alert.timestamp < timedelta(hours=1))
            for rule in list(self._rules.values()):
                if not rule.enabled:
                    continue
                last = self._last_fired.get(rule.rule_id)
                if last is not None and now - last < timedelta(minutes=rule.cooldown_minutes):
                    continue
                try:
                    matched = rule.condition(record)
                except Exception:
                    LOGGER.exception("alert_rule_failed", extra={"rule_id": rule.rule_id})
                    continue
                if not matched:
                    continue
                if recent >= self.max_alerts_per_hour:
                    LOGGER.warning(
                        "alert_rate_limited",
                        extra={"rule_id": rule.rule_id, "limit": self.max_alerts_per_hour},
                    )
                    break
                alert = Alert(
                    alert_id=f"alert_{uuid.uuid4().hex[:12]}",
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    severity=rule.severity,
                    message=_alert_message(rule, record),
                    timestamp=now,
                    record=record,
                )
                self._alerts.append(alert)
                self._last_fired[rule.rule_id] = now
                recent += 1
                fired.append(alert)
            self._alerts = [
                alert for alert in self._alerts if now - alert.timestamp < self.alert_retention
            ]

        for alert in fired:
            LOGGER.warning(
                "alert_raised",
                extra={
                    "alert_id": alert.alert_id,
                    "rule_id": alert.rule_id,
                    "severity": alert.severity,
                },
            )
            self._notify(alert)
        return fired

    def alerts(
        self,
        *,
        severity: Severity | None = None,
        acknowledged: bool | None = None,
    ) -> list[Alert]:
        with self._lock:
            selected = list(self._alerts)
        if severity is not None:
            selected = [alert for alert in selected if alert.severity == severity]
        if acknowledged is not None:
            selected = [alert for alert in selected if alert.acknowledged == acknowledged]
        return selected

    def acknowledge(self, alert_id: str, acknowledged_by: str) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert.alert_id == alert_id and not alert.acknowledged:
                    alert.acknowledged = True
                    alert.acknowledged_by = acknowledged_by
                    return True
        return False

    def _notify(self, alert: Alert) -> None:
        if not self.webhook_url:
            return
        payload = {
            "alert": {
                "id": alert.alert_id,
                "severity": alert.severity,
                "message": alert.message,
                "timestamp": alert.timestamp.isoformat(),
                "rule": alert.rule_name,
            },
            "command": alert.record.command,
            "user": alert.record.user,
        }
        body = json.dumps(payload).encode("utf-8")
        req = request.Request(
            self.webhook_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.webhook_timeout) as resp:  # noqa: S310
                resp.read()
        except HTTPError as exc:
            LOGGER.error(
                "alert_webhook_http_error",
                extra={"http_status": exc.code, "reason": exc.reason, "alert_id": alert.alert_id},
            )
        except URLError as exc:
            LOGGER.error(
                "alert_webhook_transport_error",
                extra={"reason": str(exc.reason), "alert_id": alert.alert_id},
            )
        except (TimeoutError, OSError) as exc:
            LOGGER.error(
                "alert_webhook_failed",
                extra={"error": str(exc), "alert_id": alert.alert_id},
            )


def _alert_message(rule: AlertRule, record: AuditRecord) -> str:
    details = [
        f"Command: {record.command}",
        f"User: {record.user or 'unknown'}",
        f"Context: {record.context.context_id}",
        f"Risk Level: {record.validation.risk_level}",
        f"Exit Code: {record.result.exit_code}",
    ]
    return f"{rule.name}: {rule.description}\n\nDetails:\n" + "\n".join(details)
