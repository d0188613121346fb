from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from shellexec.context import (
    ContextStore,
    describe_side_effects,
    directory_change,
    environment_changes,
    file_changes,
)
from shellexec.models import ContextUpdate, ExecutionResult


def _result(command: str, *, exit_code: int = 0, stdout: str = "") -> ExecutionResult:
    return ExecutionResult(
        command=command,
        stdout=stdout,
        stderr="",
        exit_code=exit_code,
        duration=0.01,
        success=exit_code == 0,
    )


def _update(
    store: ContextStore,
    command: str,
    *,
    exit_code: int = 0,
    stdout: str = "",
    session_id: str | None = None,
) -> ContextUpdate:
    return ContextUpdate(
        command=command,
        working_directory=store.working_directory,
        environment=store.environment,
        result=_result(command, exit_code=exit_code, stdout=stdout),
        session_id=session_id,
    )


def test_each_update_appends_one_entry_with_increasing_timestamps(tmp_path: Path) -> None:
    frozen = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store = ContextStore(working_directory=str(tmp_path), clock=lambda: frozen)

    for index in range(5):
        store.update(_update(store, f"echo {index}"))

    history = store.history()
    assert [entry.command for entry in history] == [f"echo {index}" for index in range(5)]
    timestamps = [entry.timestamp for entry in history]
    assert all(earlier < later for earlier, later in zip(timestamps, timestamps[1:]))


def test_eviction_drops_oldest_entry_and_its_output(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path), max_history=2)

    first = store.update(_update(store, "echo a", stdout="a\n"))
    store.update(_update(store, "echo b", stdout="b\n"))
    third = store.update(_update(store, "echo c", stdout="c\n"))

    assert [entry.command for entry in store.history()] == ["echo b", "echo c"]
    assert store.get_output(first.id) is None
    output = store.get_output(third.id)
    assert output is not None and output.stdout == "c\n"


def test_eviction_drops_file_changes_of_evicted_entries(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path), max_history=1)

    store.update(_update(store, "touch one.txt"))
    store.update(_update(store, "touch two.txt"))

    paths = [change.path for change in store.file_system_changes()]
    assert paths == [os.path.join(str(tmp_path), "two.txt")]


def test_set_working_directory_rejects_missing_path(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path))

    assert store.set_working_directory(str(tmp_path / "nonexistent")) is False
    assert store.working_directory == str(tmp_path)


def test_set_working_directory_resolves_relative_paths(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    store = ContextStore(working_directory=str(tmp_path))

    assert store.set_working_directory("sub") is True
    assert store.working_directory == str(tmp_path / "sub")


def test_successful_cd_moves_working_directory(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    store = ContextStore(working_directory=str(tmp_path))

    store.update(_update(store, "cd sub"))

    assert store.working_directory == str(tmp_path / "sub")


def test_failed_or_session_cd_is_ignored(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    store = ContextStore(working_directory=str(tmp_path))

    store.update(_update(store, "cd sub", exit_code=1))
    store.update(_update(store, "cd sub", session_id="abc"))
    store.update(_update(store, "cd missing"))

    assert store.working_directory == str(tmp_path)


def test_export_updates_environment_overlay(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path), environment={"KEEP": "1"})

    store.update(_update(store, "export FOO=bar BAZ='two words'"))

    assert store.environment == {"KEEP": "1", "FOO": "bar", "BAZ": "two words"}


def test_clear_keeps_directory_and_environment(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path), environment={"A": "1"})
    entry = store.update(_update(store, "touch x"))

    store.clear()

    assert store.history() == []
    assert store.get_output(entry.id) is None
    assert store.file_system_changes() == []
    assert store.working_directory == str(tmp_path)
    assert store.environment == {"A": "1"}


def test_history_filter_and_limit(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path))
    for command in ("git status", "ls", "git diff", "git log"):
        store.update(_update(store, command))

    assert [entry.command for entry in store.history(pattern="^git")] == [
        "git status",
        "git diff",
        "git log",
    ]
    assert [entry.command for entry in store.history(limit=2, pattern="git")] == [
        "git diff",
        "git log",
    ]
    # Invalid regexes fall back to a literal match.
    assert store.history(pattern="(") == []


def test_snapshot_is_detached_from_store(tmp_path: Path) -> None:
    store = ContextStore(working_directory=str(tmp_path))
    snapshot = store.current()

    store.update(_update(store, "echo later"))

    assert snapshot.history == ()
    assert len(store.current().history) == 1


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "context.json"
    store = ContextStore(working_directory=str(tmp_path), environment={"A": "1"})
    store.update(_update(store, "touch notes.txt"))

    assert store.save(path) is True

    restored = ContextStore(working_directory="/")
    assert restored.load(path) is True
    assert restored.context_id == store.context_id
    assert restored.working_directory == str(tmp_path)
    assert restored.environment == {"A": "1"}
    assert [entry.command for entry in restored.history()] == ["touch notes.txt"]
    assert restored.file_system_changes()[0].kind == "created"


def test_load_rejects_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "context.json"
    path.write_text("{not json", encoding="utf-8")

    assert ContextStore(working_directory=str(tmp_path)).load(path) is False


def test_persistence_file_saved_after_update(tmp_path: Path) -> None:
    path = tmp_path / "context.json"
    store = ContextStore(working_directory=str(tmp_path), persistence_file=path)

    store.update(_update(store, "echo hi"))

    assert path.is_file()


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("cd sub", "/work/sub"),
        ("cd ..", "/"),
        ("pushd /opt", "/opt"),
        ("cd sub && ls", None),
        ("cd -", None),
        ("ls", None),
    ],
)
def test_directory_change(command: str, expected: str | None) -> None:
    result = directory_change(command, "/work")
    assert result == (os.path.normpath(expected) if expected else None)


def test_environment_changes_skip_pipelines() -> None:
    assert environment_changes("export A=1 && export B=2") == {"A": "1", "B": "2"}
    assert environment_changes("export A=1 | cat") == {}
    assert environment_changes("X=1 make") == {}
    assert environment_changes("X=1 Y=2") == {"X": "1", "Y": "2"}


def test_file_changes_detects_common_operations() -> None:
    changes = file_changes("mkdir out && mv a.txt out/b.txt; echo hi >> log.txt", "/work")

    described = [change.describe() for change in changes]
    assert "created: /work/out" in described
    assert "moved: /work/a.txt -> /work/out/b.txt" in described
    assert "modified: /work/log.txt" in described


def test_file_changes_ignores_null_sink() -> None:
    assert file_changes("make > /dev/null 2>&1", "/work") == []


def test_describe_side_effects_includes_shell_state() -> None:
    effects = describe_side_effects("cd sub", "/work", track_shell_state=True)
    assert effects == ("working directory: /work/sub",)

    assert describe_side_effects("cd sub", "/work", track_shell_state=False) == ()
