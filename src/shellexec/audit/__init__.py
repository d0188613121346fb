"""Audit trail and alerting collaborators."""

from .dispatcher import RecordDispatcher, RecordSink
from .logger import AuditLogger, AuditReport
from .monitoring import Alert, AlertRule, MonitoringSystem, default_rules

__all__ = [
    "Alert",
    "AlertRule",
    "AuditLogger",
    "AuditReport",
    "MonitoringSystem",
    "RecordDispatcher",
    "RecordSink",
    "default_rules",
]
