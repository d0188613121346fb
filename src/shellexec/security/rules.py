"""Rule descriptors evaluated by the policy engine.

Rules are plain data so each table can be tested and swapped on its own.
Every pattern is matched case-insensitively against the raw command text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from shellexec.models import RiskLevel, SecurityLevel


@dataclass(frozen=True, slots=True)
class PolicyRule:
    name: str
    category: str
    pattern: re.Pattern[str]
    risk_level: RiskLevel
    blocking_levels: tuple[SecurityLevel, ...] = ()
    reason: str = ""
    suggestion: str = ""

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


def _rule(
    name: str,
    category: str,
    pattern: str,
    risk_level: RiskLevel,
    blocking_levels: tuple[SecurityLevel, ...] = (),
    reason: str = "",
    suggestion: str = "",
) -> PolicyRule:
    return PolicyRule(
        name=name,
        category=category,
        pattern=re.compile(pattern, re.IGNORECASE),
        risk_level=risk_level,
        blocking_levels=blocking_levels,
        reason=reason,
        suggestion=suggestion,
    )


DANGEROUS_RULES: tuple[PolicyRule, ...] = (
    _rule(
        "recursive_delete",
        "filesystem",
        r"\brm\s+(-\w*[rf]\w*|--recursive|--force)",
        "high",
        ("strict",),
        "recursive or forced delete",
        "Delete specific files instead of whole trees",
    ),
    _rule(
        "windows_recursive_delete",
        "filesystem",
        r"\b(del\s+/[fsq]|rmdir\s+/s|rd\s+/s|remove-item\b.*-recurse)",
        "high",
        ("strict",),
        "recursive or forced delete",
        "Delete specific files instead of whole trees",
    ),
    _rule(
        "disk_format",
        "disk",
        r"\b(mkfs(\.\w+)?|fdisk|parted|diskpart|format\s+[a-z]:)",
        "high",
        ("strict",),
        "disk partitioning or formatting",
    ),
    _rule(
        "raw_device_write",
        "disk",
        r"\bdd\s+.*\bof=/dev/|\bdd\s+if=",
        "high",
        ("strict",),
        "raw block device copy",
    ),
    _rule(
        "network_pipe_to_shell",
        "network",
        r"\b(curl|wget)\b.*\|\s*(sudo\s+)?(sh|bash|zsh|cmd|powershell|pwsh)\b",
        "high",
        ("strict",),
        "downloaded script piped into a shell",
        "Download the script, review it, then run it",
    ),
    _rule(
        "kill_by_signal",
        "process",
        r"\bkill\s+-(9|kill|s\s+kill)\b|\bkillall\b|\bpkill\b",
        "medium",
        (),
        "process termination by signal",
    ),
    _rule(
        "power_control",
        "system",
        r"\b(shutdown|reboot|halt|poweroff)\b|\binit\s+[06]\b",
        "high",
        ("strict",),
        "system power control",
    ),
    _rule(
        "service_stop",
        "system",
        r"\bsystemctl\s+(stop|disable|mask)\b|\bservice\s+\S+\s+stop\b",
        "medium",
        (),
        "system service shutdown",
    ),
    _rule(
        "protected_redirect",
        "system",
        r">\s*/(etc|sys|proc|boot)/|>\s*/dev/(?!null\b|stdout\b|stderr\b|tty\b)",
        "high",
        ("strict",),
        "redirection into a protected system path",
    ),
    _rule(
        "switch_user",
        "privilege",
        r"\bsudo\s+(su|-i|-s)\b|\bsu\s+-",
        "high",
        ("strict",),
        "switching to another user shell",
    ),
)

PRIVILEGE_RULES: tuple[PolicyRule, ...] = (
    _rule(
        "privilege_escalation",
        "privilege",
        r"(^|[\s;&|(])(sudo|su|doas|pkexec|runas)(\s|$)|start-process\b.*-verb\s+runas",
        "high",
        ("strict",),
        "privilege escalation",
        "Run without elevated privileges or switch security level",
    ),
)

RESOURCE_RULES: tuple[PolicyRule, ...] = (
    _rule(
        "filesystem_scan",
        "resource",
        r"\bfind\s+/(\s|$)",
        "medium",
        ("strict",),
        "full filesystem search may consume excessive resources",
        "Use more specific parameters to limit resource usage",
    ),
    _rule(
        "recursive_grep_root",
        "resource",
        r"\bgrep\s+-\w*r\w*\s+.*\s/(\s|$)",
        "medium",
        ("strict",),
        "recursive grep from the filesystem root",
        "Use more specific parameters to limit resource usage",
    ),
    _rule(
        "large_buffer",
        "resource",
        r"\bdd\s+.*\bbs=\d+[MG]\b|\bsort\s+.*-S\s*\d+[MG]\b",
        "medium",
        ("strict",),
        "large memory buffers requested",
        "Use more specific parameters to limit resource usage",
    ),
)

# Second tier: classification only, never blocks on its own.
HIGH_RISK_SIGNATURES: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\brm\s+.*-\w*r",
        r"\bdel\s+/[fs]",
        r"\bformat\s+[a-z]:",
        r"\bformat-volume\b",
        r"\bdd\s+if=",
        r"\bsudo\b",
        r"\bshutdown\b",
        r"\breboot\b",
        r"\bmkfs",
        r"\bfdisk\b",
        r"\bparted\b",
    )
)

MEDIUM_RISK_SIGNATURES: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\brm\s+",
        r"\bdel\s+",
        r"\bmv\s+.*/dev/null",
        r"\bkill\s+",
        r"\bchmod\s+(-\w+\s+)?777\b",
        r"\bchown\s+",
        r"\b(wget|curl)\b.*\|",
        r">\s*/etc",
        r">\s*/sys",
    )
)

POSIX_SYSTEM_DIRECTORIES: tuple[str, ...] = (
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/etc",
    "/sys",
    "/proc",
    "/dev",
    "/boot",
    "/root",
)

WINDOWS_SYSTEM_DIRECTORIES: tuple[str, ...] = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\System Volume Information",
)

# Device sinks that are safe to name even though they live under /dev.
SAFE_DEVICE_PATHS = frozenset({"/dev/null", "/dev/stdout", "/dev/stderr", "/dev/tty"})

DEFAULT_BLOCKED_COMMANDS: tuple[str, ...] = (
    "rm -rf /",
    "rm -rf /*",
    "sudo rm -rf /",
    "del /f /s /q c:\\",
    "dd if=/dev/zero",
    ":(){ :|:& };:",
)
