"""Background delivery of audit records to their sinks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor

from shellexec.models import AuditRecord

LOGGER = logging.getLogger(__name__)

RecordSink = Callable[[AuditRecord], object]


class RecordDispatcher:
    """Delivers records in publish order on one worker thread.

    ``publish`` returns immediately; sink failures are logged and never reach
    the publisher.
    """

    def __init__(self, sinks: Iterable[RecordSink] = ()) -> None:
        self.sinks = list(sinks)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._lock = threading.Lock()
        self._closed = False

    def publish(self, record: AuditRecord) -> None:
        with self._lock:
            if self._closed:
                LOGGER.warning("audit_record_dropped", extra={"record_id": record.record_id})
                return
            self._executor.submit(self._deliver, record)

    def flush(self, timeout: float | None = None) -> None:
        """Wait until every record published so far has been delivered."""
        with self._lock:
            if self._closed:
                return
            marker = self._executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=True)

    def _deliver(self, record: AuditRecord) -> None:
        for sink in self.sinks:
            try:
                sink(record)
            except Exception:
                LOGGER.exception(
                    "audit_sink_failed",
                    extra={
                        "record_id": record.record_id,
                        "sink": getattr(sink, "__qualname__", repr(sink)),
                    },
                )
