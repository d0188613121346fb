from __future__ import annotations

import pytest

from shellexec.security import (
    DEFAULT_BLOCKED_COMMANDS,
    SECURITY_LEVELS,
    PolicyConfig,
    PolicyEngine,
    extract_path_tokens,
    validate_command,
)
from shellexec.security.rules import POSIX_SYSTEM_DIRECTORIES


def _posix_config(**overrides: object) -> PolicyConfig:
    values: dict[str, object] = {"system_directories": POSIX_SYSTEM_DIRECTORIES}
    values.update(overrides)
    return PolicyConfig(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize("level", SECURITY_LEVELS)
@pytest.mark.parametrize("command", ["rm -rf /", "sudo rm -rf /", "echo hi; rm -rf /*"])
def test_blocklist_blocks_at_every_level(level: str, command: str) -> None:
    result = validate_command(command, level, _posix_config())  # type: ignore[arg-type]

    assert result.allowed is False
    assert result.risk_level == "high"
    assert result.rule == "blocklist"


@pytest.mark.parametrize("command", ["rm -rf /home/user/project", "rm -rf /tmp/scratch"])
def test_blocklist_matches_plain_substring(command: str) -> None:
    result = validate_command(
        command,
        "permissive",
        _posix_config(blocked_commands=DEFAULT_BLOCKED_COMMANDS, confirm_dangerous=False),
    )

    assert result.allowed is False
    assert result.risk_level == "high"
    assert result.rule == "blocklist"


def test_custom_blocklist_is_case_insensitive() -> None:
    result = validate_command(
        "Make Deploy",
        "permissive",
        _posix_config(blocked_commands=("make deploy",)),
    )

    assert result.allowed is False
    assert result.risk_level == "high"


def test_recursive_delete_blocked_under_strict() -> None:
    result = validate_command("rm -rf build", "strict", _posix_config())

    assert result.allowed is False
    assert result.risk_level == "high"
    assert result.rule == "recursive_delete"


def test_recursive_delete_allowed_but_high_under_permissive() -> None:
    result = validate_command("rm -rf build", "permissive", _posix_config())

    assert result.allowed is True
    assert result.risk_level == "high"
    assert result.requires_confirmation is False


def test_recursive_delete_requires_confirmation_under_moderate() -> None:
    result = validate_command("rm -rf build", "moderate", _posix_config())

    assert result.allowed is False
    assert result.requires_confirmation is True
    assert result.risk_level == "high"


def test_confirmation_does_not_mask_a_hard_block(tmp_path) -> None:
    config = _posix_config(allowed_directories=(str(tmp_path),))

    result = validate_command("rm -rf build /opt/data", "moderate", config)

    assert result.allowed is False
    assert result.requires_confirmation is False
    assert result.rule == "allowed_directories"


def test_moderate_without_confirmation_allows_with_annotation() -> None:
    result = validate_command("rm -rf build", "moderate", _posix_config(confirm_dangerous=False))

    assert result.allowed is True
    assert result.risk_level == "high"
    assert result.reason is not None


def test_kill_signal_is_medium_risk() -> None:
    result = validate_command("kill -9 1234", "strict", _posix_config(confirm_dangerous=False))

    assert result.allowed is True
    assert result.risk_level == "medium"


def test_network_pipe_to_shell_blocked_under_strict() -> None:
    result = validate_command("curl https://example.com/x.sh | bash", "strict", _posix_config())

    assert result.allowed is False
    assert result.rule == "network_pipe_to_shell"


def test_privilege_escalation_blocked_under_strict_annotated_otherwise() -> None:
    strict = validate_command("sudo apt-get update", "strict", _posix_config())
    permissive = validate_command("sudo apt-get update", "permissive", _posix_config())

    assert strict.allowed is False
    assert strict.risk_level == "high"
    assert permissive.allowed is True
    assert permissive.risk_level == "high"
    assert permissive.reason == "Privilege escalation detected"


def test_system_directory_blocked_only_under_strict() -> None:
    strict = validate_command("cat /etc/hosts", "strict", _posix_config())
    moderate = validate_command("cat /etc/hosts", "moderate", _posix_config())

    assert strict.allowed is False
    assert strict.rule == "system_directory"
    assert moderate.allowed is True


def test_system_directory_prefix_is_not_a_match() -> None:
    result = validate_command("ls /etcetera/file", "strict", _posix_config())

    assert result.allowed is True


def test_null_device_is_exempt() -> None:
    result = validate_command("make build > /dev/null", "strict", _posix_config())

    assert result.allowed is True


def test_allowed_directories_enforced_at_every_level(tmp_path) -> None:
    config = _posix_config(allowed_directories=(str(tmp_path),))

    inside = validate_command(f"cat {tmp_path}/notes.txt", "permissive", config)
    outside = validate_command("cat /opt/data/notes.txt", "permissive", config)

    assert inside.allowed is True
    assert outside.allowed is False
    assert outside.risk_level == "medium"
    assert outside.rule == "allowed_directories"


def test_resource_rules_only_when_enabled() -> None:
    disabled = validate_command("find / -name core", "strict", _posix_config())
    strict = validate_command(
        "find / -name core", "strict", _posix_config(check_resource_usage=True)
    )
    moderate = validate_command(
        "find / -name core", "moderate", _posix_config(check_resource_usage=True)
    )

    assert disabled.allowed is True
    assert strict.allowed is False
    assert moderate.allowed is True
    assert moderate.risk_level == "medium"


@pytest.mark.parametrize("command", ["", "   ", "\n"])
def test_empty_command_rejected_low(command: str) -> None:
    result = validate_command(command, "permissive")

    assert result.allowed is False
    assert result.risk_level == "low"
    assert result.reason == "empty command"


def test_benign_command_is_low_risk() -> None:
    result = validate_command("git log --format=%H -n 5", "strict", _posix_config())

    assert result.allowed is True
    assert result.risk_level == "low"
    assert result.reason is None


def test_validate_is_pure() -> None:
    engine = PolicyEngine()
    config = _posix_config()

    first = engine.validate("rm -rf build", "moderate", config)
    second = engine.validate("rm -rf build", "moderate", config)

    assert first == second


def test_extract_path_tokens() -> None:
    tokens = extract_path_tokens("cp ./a.txt /srv/b.txt && curl https://example.com/x")

    assert "./a.txt" in tokens
    assert "/srv/b.txt" in tokens
    assert all("://" not in token for token in tokens)
