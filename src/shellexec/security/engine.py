"""Stateless command validation against a security level and rule set."""

from __future__ import annotations

import ntpath
import os
import posixpath
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from shellexec.models import RiskLevel, SecurityLevel, ValidationResult, max_risk

from .rules import (
    DANGEROUS_RULES,
    DEFAULT_BLOCKED_COMMANDS,
    HIGH_RISK_SIGNATURES,
    MEDIUM_RISK_SIGNATURES,
    POSIX_SYSTEM_DIRECTORIES,
    PRIVILEGE_RULES,
    RESOURCE_RULES,
    SAFE_DEVICE_PATHS,
    WINDOWS_SYSTEM_DIRECTORIES,
    PolicyRule,
)

_PATH_TOKEN = re.compile(r"[^\s'\"<>|;&()`=,]+")
_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:[\\/]")

SECURITY_LEVELS: tuple[SecurityLevel, ...] = ("strict", "moderate", "permissive")


def default_system_directories(os_name: str | None = None) -> tuple[str, ...]:
    platform_name = os.name if os_name is None else os_name
    return WINDOWS_SYSTEM_DIRECTORIES if platform_name == "nt" else POSIX_SYSTEM_DIRECTORIES


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    """Policy knobs consumed by :class:`PolicyEngine`.

    ``allowed_directories`` entries are expected to be absolute; relative
    entries are compared after normalization only.
    """

    blocked_commands: tuple[str, ...] = DEFAULT_BLOCKED_COMMANDS
    confirm_dangerous: bool = True
    allowed_directories: tuple[str, ...] = ()
    system_directories: tuple[str, ...] = field(default_factory=default_system_directories)
    check_resource_usage: bool = False


class PolicyEngine:
    """Evaluates rule tables in a fixed order.

    The engine holds no mutable state: every call is a pure function of the
    command text, the security level and the policy config.
    """

    def __init__(
        self,
        *,
        dangerous_rules: Iterable[PolicyRule] = DANGEROUS_RULES,
        privilege_rules: Iterable[PolicyRule] = PRIVILEGE_RULES,
        resource_rules: Iterable[PolicyRule] = RESOURCE_RULES,
        high_risk_signatures: Iterable[re.Pattern[str]] = HIGH_RISK_SIGNATURES,
        medium_risk_signatures: Iterable[re.Pattern[str]] = MEDIUM_RISK_SIGNATURES,
    ) -> None:
        self.dangerous_rules = tuple(dangerous_rules)
        self.privilege_rules = tuple(privilege_rules)
        self.resource_rules = tuple(resource_rules)
        self.high_risk_signatures = tuple(high_risk_signatures)
        self.medium_risk_signatures = tuple(medium_risk_signatures)

    def validate(
        self,
        command: str,
        level: SecurityLevel,
        config: PolicyConfig,
    ) -> ValidationResult:
        text = command.strip() if isinstance(command, str) else ""
        if not text:
            return ValidationResult(allowed=False, risk_level="low", reason="empty command")

        blocked_entry = self._match_blocklist(text, config.blocked_commands)
        if blocked_entry is not None:
            return ValidationResult(
                allowed=False,
                risk_level="high",
                reason=f"Command contains blocked pattern: {blocked_entry}",
                suggestions=("Use a safer alternative command",),
                rule="blocklist",
            )

        assessed = self.assess_risk(text)
        notes: list[tuple[RiskLevel, str, str]] = []
        needs_confirmation: ValidationResult | None = None

        for rule in self.dangerous_rules:
            if not rule.matches(text):
                continue
            risk = max_risk(rule.risk_level, assessed)
            if level in rule.blocking_levels or (level == "strict" and risk == "high"):
                return ValidationResult(
                    allowed=False,
                    risk_level=risk,
                    reason=f"High-risk command blocked in {level} mode: {rule.reason}",
                    suggestions=_suggestions(
                        rule.suggestion,
                        "Use a safer alternative or switch to moderate security level",
                    ),
                    rule=rule.name,
                )
            if (
                needs_confirmation is None
                and config.confirm_dangerous
                and risk != "low"
                and level != "permissive"
            ):
                needs_confirmation = ValidationResult(
                    allowed=False,
                    risk_level=risk,
                    reason=f"Dangerous command requires confirmation: {rule.reason}",
                    suggestions=_suggestions(
                        rule.suggestion, "Review command carefully before proceeding"
                    ),
                    requires_confirmation=True,
                    rule=rule.name,
                )
                continue
            notes.append((risk, f"Dangerous command detected: {rule.reason}", rule.suggestion))

        directory_check = self._check_paths(text, level, config)
        if directory_check is not None:
            return directory_check

        for rule in self.privilege_rules:
            if not rule.matches(text):
                continue
            if level in rule.blocking_levels:
                return ValidationResult(
                    allowed=False,
                    risk_level="high",
                    reason=f"Privilege escalation commands blocked in {level} mode",
                    suggestions=_suggestions(rule.suggestion),
                    rule=rule.name,
                )
            notes.append(
                (
                    "high",
                    "Privilege escalation detected",
                    "Ensure you understand the implications of elevated privileges",
                )
            )

        if config.check_resource_usage:
            for rule in self.resource_rules:
                if not rule.matches(text):
                    continue
                if level in rule.blocking_levels:
                    return ValidationResult(
                        allowed=False,
                        risk_level=rule.risk_level,
                        reason=f"Resource-intensive command blocked: {rule.reason}",
                        suggestions=_suggestions(rule.suggestion),
                        rule=rule.name,
                    )
                notes.append(
                    (
                        rule.risk_level,
                        f"Resource-intensive command detected: {rule.reason}",
                        "Monitor resource usage during execution",
                    )
                )

        final_risk = max_risk(assessed, *(risk for risk, _, _ in notes))
        # Confirmation only gates commands that nothing else would block.
        if needs_confirmation is not None:
            return replace(
                needs_confirmation,
                risk_level=max_risk(final_risk, needs_confirmation.risk_level),
            )
        return ValidationResult(
            allowed=True,
            risk_level=final_risk,
            reason=notes[0][1] if notes else None,
            suggestions=_suggestions(*(suggestion for _, _, suggestion in notes)),
        )

    def assess_risk(self, command: str) -> RiskLevel:
        """Classify a command using the high/medium signature tiers."""
        if any(pattern.search(command) for pattern in self.high_risk_signatures):
            return "high"
        if any(pattern.search(command) for pattern in self.medium_risk_signatures):
            return "medium"
        return "low"

    @staticmethod
    def _match_blocklist(command: str, blocked_commands: Iterable[str]) -> str | None:
        lowered = command.lower()
        for entry in blocked_commands:
            needle = entry.strip().lower()
            if not needle:
                continue
            if needle in lowered:
                return entry
        return None

    def _check_paths(
        self, command: str, level: SecurityLevel, config: PolicyConfig
    ) -> ValidationResult | None:
        for token in extract_path_tokens(command):
            if token in SAFE_DEVICE_PATHS:
                continue
            windows = _WINDOWS_ABSOLUTE.match(token) is not None
            if not windows and not token.startswith("/"):
                continue

            if level == "strict":
                for system_dir in config.system_directories:
                    if _is_within(token, system_dir, windows=windows):
                        return ValidationResult(
                            allowed=False,
                            risk_level="high",
                            reason=f"Access to system directory blocked: {system_dir}",
                            suggestions=("Use a path within allowed directories",),
                            rule="system_directory",
                        )

            if config.allowed_directories and not any(
                _is_within(token, allowed, windows=windows)
                for allowed in config.allowed_directories
            ):
                return ValidationResult(
                    allowed=False,
                    risk_level="medium",
                    reason=f"Path not in allowed directories: {token}",
                    suggestions=(
                        f"Use a path within: {', '.join(config.allowed_directories)}",
                    ),
                    rule="allowed_directories",
                )
        return None


def extract_path_tokens(command: str) -> list[str]:
    """Return tokens of a command that look like filesystem paths."""
    tokens: list[str] = []
    for token in _PATH_TOKEN.findall(command):
        if "://" in token:
            continue
        if "/" in token or "\\" in token or token.startswith("~"):
            tokens.append(token)
    return tokens


def _is_within(path: str, directory: str, *, windows: bool) -> bool:
    if windows:
        candidate = ntpath.normcase(ntpath.normpath(path))
        root = ntpath.normcase(ntpath.normpath(directory))
        sep = "\\"
    else:
        if _WINDOWS_ABSOLUTE.match(directory):
            return False
        candidate = posixpath.normpath(path)
        root = posixpath.normpath(directory)
        sep = "/"
    if root in {"/", "\\"}:
        return True
    return candidate == root or candidate.startswith(root.rstrip(sep) + sep)


def _suggestions(*items: str) -> tuple[str, ...]:
    seen: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return tuple(seen)


_DEFAULT_ENGINE = PolicyEngine()


def validate_command(
    command: str,
    level: SecurityLevel,
    config: PolicyConfig | None = None,
) -> ValidationResult:
    """Validate with the built-in rule tables."""
    return _DEFAULT_ENGINE.validate(command, level, config or PolicyConfig())
