"""Heuristics that infer context changes from command text.

These helpers never touch the filesystem; callers decide whether an inferred
directory actually exists.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass

from shellexec.models import ChangeKind

_DIRECTORY_CHANGE = re.compile(r"^\s*(cd|pushd|chdir)(?:\s+(.+?))?\s*$", re.IGNORECASE)
_CHAINING = re.compile(r"[;&|]")
_EXPORT = re.compile(r"^\s*export\s+(.+)$", re.IGNORECASE)
_WINDOWS_SET = re.compile(r"^\s*set\s+(\w+)=(.*)$", re.IGNORECASE)
_POWERSHELL_ENV = re.compile(r"^\s*\$env:(\w+)\s*=\s*(.+)$", re.IGNORECASE)
_ASSIGNMENT = re.compile(r"^([A-Za-z_]\w*)=(.*)$")
_REDIRECT = re.compile(r"(>>?)\s*([^\s;&|<>]+)")

_CREATE_COMMANDS = frozenset({"touch", "mkdir", "new-item", "ni"})
_COPY_COMMANDS = frozenset({"cp", "copy", "copy-item"})
_MOVE_COMMANDS = frozenset({"mv", "move", "ren", "rename", "move-item"})
_DELETE_COMMANDS = frozenset({"rm", "del", "rmdir", "rd", "unlink", "remove-item"})
_EDIT_COMMANDS = frozenset({"vim", "vi", "nano", "code", "notepad", "sed", "truncate"})

_SAFE_SINKS = frozenset({"/dev/null", "/dev/stdout", "/dev/stderr", "nul", "$null"})


@dataclass(frozen=True, slots=True)
class InferredChange:
    kind: ChangeKind
    path: str
    old_path: str | None = None

    def describe(self) -> str:
        if self.kind == "moved" and self.old_path:
            return f"moved: {self.old_path} -> {self.path}"
        return f"{self.kind}: {self.path}"


def split_words(command: str) -> list[str]:
    try:
        return shlex.split(command, posix=True)
    except ValueError:
        return command.split()


def directory_change(command: str, cwd: str) -> str | None:
    """Return the directory a lone ``cd``/``pushd`` would move to, if any."""
    match = _DIRECTORY_CHANGE.match(command)
    if match is None:
        return None
    target = (match.group(2) or "~").strip()
    if _CHAINING.search(target):
        return None
    target = target.strip("'\"")
    if target == "-":
        return None
    if target.lower() == "/d":
        return None
    if target.lower().startswith("/d "):
        target = target[3:].strip().strip("'\"")
    target = os.path.expanduser(target)
    return os.path.normpath(os.path.join(cwd, target))


def environment_changes(command: str) -> dict[str, str]:
    """Variables a command exports into the calling shell."""
    changes: dict[str, str] = {}
    for segment in re.split(r"&&|;", command):
        segment = segment.strip()
        # Pipelines run in subshells and cannot export into the caller.
        if not segment or "|" in segment:
            continue
        export = _EXPORT.match(segment)
        if export:
            for word in split_words(export.group(1)):
                assignment = _ASSIGNMENT.match(word)
                if assignment:
                    changes[assignment.group(1)] = assignment.group(2)
            continue

        windows_set = _WINDOWS_SET.match(segment)
        if windows_set:
            changes[windows_set.group(1)] = windows_set.group(2).strip().strip("'\"")
            continue

        powershell = _POWERSHELL_ENV.match(segment)
        if powershell:
            changes[powershell.group(1)] = powershell.group(2).strip().strip("'\"")
            continue

        # Bare `A=1 B=2` with no command runs in the calling shell.
        words = split_words(segment)
        if words and all(_ASSIGNMENT.match(word) for word in words):
            for word in words:
                key, _, value = word.partition("=")
                changes[key] = value
    return changes


def file_changes(command: str, cwd: str) -> list[InferredChange]:
    """Best-effort list of files a command creates, moves, deletes or edits."""
    changes: list[InferredChange] = []
    for segment in re.split(r"&&|\|\||;", command):
        changes.extend(_segment_changes(segment.strip(), cwd))
    return changes


def _segment_changes(segment: str, cwd: str) -> list[InferredChange]:
    if not segment:
        return []
    changes: list[InferredChange] = []

    for operator, target in _REDIRECT.findall(segment):
        if target.lower() in _SAFE_SINKS or target.startswith("&"):
            continue
        kind: ChangeKind = "modified" if operator == ">>" else "created"
        changes.append(InferredChange(kind, _resolve(cwd, target)))

    words = split_words(_REDIRECT.sub(" ", segment.split("|", 1)[0]))
    while words and _ASSIGNMENT.match(words[0]):
        words.pop(0)
    if not words:
        return changes

    program = os.path.basename(words[0]).lower()
    operands = [word for word in words[1:] if not word.startswith("-")]
    if program in {"del", "rmdir", "rd"}:
        operands = [word for word in operands if not word.startswith("/")] or operands

    if program in _CREATE_COMMANDS:
        changes.extend(InferredChange("created", _resolve(cwd, item)) for item in operands)
    elif program in _COPY_COMMANDS and len(operands) >= 2:
        changes.append(InferredChange("created", _resolve(cwd, operands[-1])))
    elif program in _MOVE_COMMANDS and len(operands) >= 2:
        changes.append(
            InferredChange(
                "moved",
                _resolve(cwd, operands[-1]),
                old_path=_resolve(cwd, operands[-2]),
            )
        )
    elif program in _DELETE_COMMANDS:
        changes.extend(InferredChange("deleted", _resolve(cwd, item)) for item in operands)
    elif program in _EDIT_COMMANDS and operands:
        changes.append(InferredChange("modified", _resolve(cwd, operands[-1])))
    return changes


def describe_side_effects(
    command: str,
    cwd: str,
    *,
    track_shell_state: bool,
) -> tuple[str, ...]:
    """Human-readable side effects for a successful command."""
    effects = [change.describe() for change in file_changes(command, cwd)]
    if track_shell_state:
        new_directory = directory_change(command, cwd)
        if new_directory is not None and new_directory != cwd:
            effects.append(f"working directory: {new_directory}")
        effects.extend(
            f"environment: {key}" for key in sorted(environment_changes(command))
        )
    return tuple(effects)


def _resolve(cwd: str, target: str) -> str:
    return os.path.normpath(os.path.join(cwd, os.path.expanduser(target.strip("'\""))))
