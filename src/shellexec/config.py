"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from shellexec.models import SecurityLevel
from shellexec.security import DEFAULT_BLOCKED_COMMANDS, PolicyConfig, default_system_directories

_SECURITY_LEVELS = {"strict", "moderate", "permissive"}


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    security_level: SecurityLevel
    shell: str
    default_timeout_ms: int
    max_sessions: int
    session_timeout_seconds: int
    sweep_interval_seconds: int
    kill_grace_seconds: int
    session_response_wait_ms: int
    session_buffer_lines: int
    max_history: int
    working_directory: str | None
    context_persistence_file: str | None
    confirm_dangerous: bool
    confirmation_timeout_seconds: int
    check_resource_usage: bool
    allowed_directories: tuple[str, ...]
    blocked_commands: tuple[str, ...]
    audit_enabled: bool
    audit_log_dir: str
    audit_retention_days: int
    monitoring_enabled: bool
    alert_webhook_url: str | None
    max_alerts_per_hour: int
    user: str | None

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        security = _section(file_config, "security")
        sessions = _section(file_config, "sessions")
        audit = _section(file_config, "audit")

        return cls(
            security_level=_resolve_security_level(
                os.getenv("SHELLEXEC_SECURITY_LEVEL")
                or _to_optional_string(security.get("level"))
            ),
            shell=_resolve_shell(
                os.getenv("SHELLEXEC_SHELL") or _to_optional_string(file_config.get("shell"))
            ),
            default_timeout_ms=_to_positive_int(
                os.getenv("SHELLEXEC_TIMEOUT_MS") or file_config.get("timeout_ms"),
                default=300_000,
            ),
            max_sessions=_to_positive_int(
                os.getenv("SHELLEXEC_MAX_SESSIONS") or sessions.get("max_sessions"),
                default=10,
            ),
            session_timeout_seconds=_to_positive_int(
                os.getenv("SHELLEXEC_SESSION_TIMEOUT") or sessions.get("timeout_seconds"),
                default=1800,
            ),
            sweep_interval_seconds=_to_positive_int(
                os.getenv("SHELLEXEC_SWEEP_INTERVAL") or sessions.get("sweep_interval_seconds"),
                default=60,
            ),
            kill_grace_seconds=_to_positive_int(
                os.getenv("SHELLEXEC_KILL_GRACE") or sessions.get("kill_grace_seconds"),
                default=5,
            ),
            session_response_wait_ms=_to_positive_int(
                os.getenv("SHELLEXEC_SESSION_RESPONSE_WAIT_MS")
                or sessions.get("response_wait_ms"),
                default=1000,
            ),
            session_buffer_lines=_to_positive_int(
                os.getenv("SHELLEXEC_SESSION_BUFFER_LINES") or sessions.get("buffer_lines"),
                default=1000,
            ),
            max_history=_to_positive_int(
                os.getenv("SHELLEXEC_MAX_HISTORY") or file_config.get("max_history"),
                default=1000,
            ),
            working_directory=(
                os.getenv("SHELLEXEC_CWD") or _to_optional_string(file_config.get("cwd"))
            ),
            context_persistence_file=(
                os.getenv("SHELLEXEC_CONTEXT_FILE")
                or _to_optional_string(file_config.get("context_persistence_file"))
            ),
            confirm_dangerous=_to_bool(
                os.getenv("SHELLEXEC_CONFIRM_DANGEROUS"),
                default=bool(security.get("confirm_dangerous", True)),
            ),
            confirmation_timeout_seconds=_to_positive_int(
                os.getenv("SHELLEXEC_CONFIRMATION_TIMEOUT")
                or security.get("confirmation_timeout_seconds"),
                default=300,
            ),
            check_resource_usage=_to_bool(
                os.getenv("SHELLEXEC_CHECK_RESOURCE_USAGE"),
                default=bool(security.get("check_resource_usage", False)),
            ),
            allowed_directories=tuple(
                os.path.abspath(os.path.expanduser(item))
                for item in _to_string_list(
                    os.getenv("SHELLEXEC_ALLOWED_DIRECTORIES"),
                    security.get("allowed_directories"),
                    separator=os.pathsep,
                )
            ),
            blocked_commands=(
                _to_string_list(
                    os.getenv("SHELLEXEC_BLOCKED_COMMANDS"),
                    security.get("blocked_commands"),
                    separator=",",
                )
                or DEFAULT_BLOCKED_COMMANDS
            ),
            audit_enabled=_to_bool(
                os.getenv("SHELLEXEC_AUDIT_ENABLED"),
                default=bool(audit.get("enabled", True)),
            ),
            audit_log_dir=(
                os.getenv("SHELLEXEC_AUDIT_LOG_DIR")
                or _to_optional_string(audit.get("log_dir"))
                or "logs"
            ),
            audit_retention_days=_to_positive_int(
                os.getenv("SHELLEXEC_AUDIT_RETENTION_DAYS") or audit.get("retention_days"),
                default=30,
            ),
            monitoring_enabled=_to_bool(
                os.getenv("SHELLEXEC_MONITORING_ENABLED"),
                default=bool(audit.get("monitoring_enabled", True)),
            ),
            alert_webhook_url=(
                os.getenv("SHELLEXEC_ALERT_WEBHOOK_URL")
                or _to_optional_string(audit.get("webhook_url"))
            ),
            max_alerts_per_hour=_to_positive_int(
                os.getenv("SHELLEXEC_MAX_ALERTS_PER_HOUR") or audit.get("max_alerts_per_hour"),
                default=50,
            ),
            user=(
                os.getenv("SHELLEXEC_USER")
                or _to_optional_string(file_config.get("user"))
                or _to_optional_string(os.getenv("USER") or os.getenv("USERNAME"))
            ),
        )

    def policy_config(self) -> PolicyConfig:
        return PolicyConfig(
            blocked_commands=self.blocked_commands,
            confirm_dangerous=self.confirm_dangerous,
            allowed_directories=self.allowed_directories,
            system_directories=default_system_directories(),
            check_resource_usage=self.check_resource_usage,
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _to_string_list(
    env_value: str | None,
    file_value: object,
    *,
    separator: str,
) -> tuple[str, ...]:
    if env_value is not None and env_value.strip():
        return tuple(item.strip() for item in env_value.split(separator) if item.strip())
    if isinstance(file_value, list):
        return tuple(item.strip() for item in file_value if isinstance(item, str) and item.strip())
    return ()


def _section(config: dict[str, object], key: str) -> dict[str, object]:
    value = config.get(key)
    return value if isinstance(value, dict) else {}


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("SHELLEXEC_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("shellexec.config.json")
    local_override = _load_file_config("shellexec.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _resolve_security_level(value: str | None) -> SecurityLevel:
    if value is None:
        return "moderate"
    normalized = value.strip().lower()
    if normalized in _SECURITY_LEVELS:
        return normalized  # type: ignore[return-value]
    return "moderate"


def _shell_value(value: str) -> str:
    normalized = value.strip().lower()
    aliases = {
        "cmd": "cmd",
        "powershell": "powershell",
        "pwsh": "powershell",
        "bash": "bash",
        "sh": "sh",
        "shell": "bash",
    }
    return aliases.get(normalized, _default_shell_for_platform())


def _default_shell_for_platform(os_name: str | None = None) -> str:
    platform_name = os.name if os_name is None else os_name
    return "powershell" if platform_name == "nt" else "bash"


def _resolve_shell(value: str | None) -> str:
    if value is None:
        return _default_shell_for_platform()
    return _shell_value(value)


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default
