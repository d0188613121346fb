"""Working directory, environment overlay and history shared across requests."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path

from shellexec.models import (
    ContextSnapshot,
    ContextUpdate,
    ExecutionResult,
    FileSystemChange,
    HistoryEntry,
    ResultSummary,
)

from .tracking import directory_change, environment_changes, file_changes

LOGGER = logging.getLogger(__name__)

_MIN_STEP = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextStore:
    """Single-writer owner of execution context.

    ``update`` is the only mutation path driven by command execution; every
    call appends exactly one history entry. Timestamps are forced to be
    strictly increasing so history order is unambiguous.
    """

    def __init__(
        self,
        *,
        working_directory: str | None = None,
        environment: Mapping[str, str] | None = None,
        max_history: int = 1000,
        persistence_file: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.context_id = uuid.uuid4().hex
        self.max_history = max(1, max_history)
        self.persistence_file = Path(persistence_file) if persistence_file else None
        self._clock = clock
        self._lock = threading.RLock()
        self._working_directory = os.path.abspath(working_directory or os.getcwd())
        self._environment: dict[str, str] = dict(environment or {})
        self._history: deque[HistoryEntry] = deque()
        self._outputs: dict[str, ExecutionResult] = {}
        self._changes: list[FileSystemChange] = []
        self._last_timestamp: datetime | None = None

    @property
    def working_directory(self) -> str:
        with self._lock:
            return self._working_directory

    @property
    def environment(self) -> dict[str, str]:
        with self._lock:
            return dict(self._environment)

    def current(self) -> ContextSnapshot:
        with self._lock:
            return ContextSnapshot(
                context_id=self.context_id,
                working_directory=self._working_directory,
                environment=dict(self._environment),
                history=tuple(self._history),
                file_system_changes=tuple(self._changes),
            )

    def update(self, update: ContextUpdate) -> HistoryEntry:
        result = update.result
        with self._lock:
            timestamp = self._next_timestamp()
            entry = HistoryEntry(
                id=uuid.uuid4().hex,
                command=update.command,
                timestamp=timestamp,
                working_directory=update.working_directory,
                summary=ResultSummary(
                    exit_code=result.exit_code,
                    success=result.success,
                    duration=result.duration,
                    error_kind=result.error_kind,
                ),
                session_id=update.session_id,
                intent=update.intent,
            )

            self._working_directory = update.working_directory
            self._environment = dict(update.environment)

            # Session shells keep their own cd/export state.
            if update.session_id is None and result.success:
                target = directory_change(update.command, update.working_directory)
                if target is not None and os.path.isdir(target):
                    self._working_directory = target
                self._environment.update(environment_changes(update.command))

            if result.success:
                for change in file_changes(update.command, update.working_directory):
                    self._changes.append(
                        FileSystemChange(
                            kind=change.kind,
                            path=change.path,
                            old_path=change.old_path,
                            timestamp=timestamp,
                            history_id=entry.id,
                        )
                    )

            self._history.append(entry)
            self._outputs[entry.id] = result
            self._evict_locked()

        LOGGER.debug(
            "context_updated",
            extra={
                "history_id": entry.id,
                "working_directory": self._working_directory,
                "history_size": len(self._history),
            },
        )
        if self.persistence_file is not None:
            self.save()
        return entry

    def set_working_directory(self, path: str) -> bool:
        """Move the tracked directory; leaves state untouched unless ``path`` is usable."""
        with self._lock:
            resolved = os.path.abspath(
                os.path.join(self._working_directory, os.path.expanduser(path))
            )
            if not os.path.isdir(resolved) or not os.access(resolved, os.R_OK | os.X_OK):
                LOGGER.info("working_directory_rejected", extra={"path": path})
                return False
            self._working_directory = resolved
        LOGGER.info("working_directory_set", extra={"path": resolved})
        return True

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
            self._outputs.clear()
            self._changes.clear()
        if self.persistence_file is not None:
            self.save()

    def history(self, limit: int | None = None, pattern: str | None = None) -> list[HistoryEntry]:
        with self._lock:
            entries = list(self._history)
        if pattern:
            try:
                matcher = re.compile(pattern, re.IGNORECASE)
            except re.error:
                matcher = re.compile(re.escape(pattern), re.IGNORECASE)
            entries = [
                entry
                for entry in entries
                if matcher.search(entry.command)
                or (entry.intent is not None and matcher.search(entry.intent))
            ]
        if limit is not None and limit > 0:
            entries = entries[-limit:]
        return entries

    def get_output(self, history_id: str) -> ExecutionResult | None:
        with self._lock:
            return self._outputs.get(history_id)

    def file_system_changes(self, since: datetime | None = None) -> list[FileSystemChange]:
        with self._lock:
            changes = list(self._changes)
        if since is not None:
            changes = [change for change in changes if change.timestamp >= since]
        return changes

    def save(self, path: str | Path | None = None) -> bool:
        target = Path(path) if path is not None else self.persistence_file
        if target is None:
            return False
        with self._lock:
            payload = {
                "context_id": self.context_id,
                "working_directory": self._working_directory,
                "environment": dict(self._environment),
                "history": [entry.to_dict() for entry in self._history],
                "file_system_changes": [change.to_dict() for change in self._changes],
                "saved_at": self._clock().isoformat(),
            }
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
        except OSError as exc:
            LOGGER.warning("context_save_failed", extra={"path": str(target), "error": str(exc)})
            return False
        return True

    def load(self, path: str | Path | None = None) -> bool:
        source = Path(path) if path is not None else self.persistence_file
        if source is None or not source.is_file():
            return False
        try:
            with source.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("context_load_failed", extra={"path": str(source), "error": str(exc)})
            return False
        if not isinstance(payload, dict):
            return False

        try:
            history = [_entry_from_dict(item) for item in payload.get("history", [])]
            changes = [_change_from_dict(item) for item in payload.get("file_system_changes", [])]
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("context_load_failed", extra={"path": str(source), "error": str(exc)})
            return False

        with self._lock:
            self.context_id = str(payload.get("context_id") or self.context_id)
            directory = payload.get("working_directory")
            if isinstance(directory, str) and os.path.isdir(directory):
                self._working_directory = directory
            environment = payload.get("environment")
            if isinstance(environment, dict):
                self._environment = {str(key): str(value) for key, value in environment.items()}
            self._history = deque(history)
            self._changes = changes
            self._outputs.clear()
            self._last_timestamp = history[-1].timestamp if history else None
            self._evict_locked()
        LOGGER.info("context_loaded", extra={"path": str(source), "history_size": len(history)})
        return True

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + _MIN_STEP
        self._last_timestamp = now
        return now

    def _evict_locked(self) -> None:
        evicted: set[str] = set()
        while len(self._history) > self.max_history:
            removed = self._history.popleft()
            self._outputs.pop(removed.id, None)
            evicted.add(removed.id)
        if evicted:
            self._changes = [
                change for change in self._changes if change.history_id not in evicted
            ]


def _entry_from_dict(item: Mapping[str, object]) -> HistoryEntry:
    return HistoryEntry(
        id=str(item["id"]),
        command=str(item["command"]),
        timestamp=datetime.fromisoformat(str(item["timestamp"])),
        working_directory=str(item["working_directory"]),
        summary=ResultSummary(
            exit_code=int(item["exit_code"]),
            success=bool(item["success"]),
            duration=float(item["duration"]),
            error_kind=item.get("error_kind") if isinstance(item.get("error_kind"), str) else None,
        ),
        session_id=item.get("session_id") if isinstance(item.get("session_id"), str) else None,
        intent=item.get("intent") if isinstance(item.get("intent"), str) else None,
    )


def _change_from_dict(item: Mapping[str, object]) -> FileSystemChange:
    kind = str(item["kind"])
    if kind not in {"created", "modified", "deleted", "moved"}:
        raise ValueError(f"unknown change kind: {kind}")
    old_path = item.get("old_path")
    return FileSystemChange(
        kind=kind,  # type: ignore[arg-type]
        path=str(item["path"]),
        old_path=old_path if isinstance(old_path, str) else None,
        timestamp=datetime.fromisoformat(str(item["timestamp"])),
        history_id=str(item["history_id"]),
    )
