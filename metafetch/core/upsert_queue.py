"""Upsert queue — single-consumer write-back channel for scan results.

Scanners hand every per-file result to ``queue_upsert`` and move on. One
consumer thread owns its own session and performs find-then-update-or-insert
for each task, so scan-result writes for a table never contend with each
other.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from metafetch.core.cache_store import ScanResultStore
from metafetch.core.logging import get_logger

logger = get_logger(__name__)


class UpsertQueueNotInitialized(Exception):
    """Raised when a task is queued before ``init_upsert_queue``."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Upsert queue not initialized: {name}")


@dataclass(frozen=True)
class UpsertTask:
    """One scanned file. ``response`` must provide ``to_row_fields()``."""

    package_name: str
    file_path: str
    sha256: str
    response: Any


_STOP = object()


class UpsertQueue:
    """Background writer for one scan-result table."""

    def __init__(self, name: str, store: ScanResultStore) -> None:
        self.name = name
        self.store = store
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.written = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def init_upsert_queue(self) -> bool:
        """Start the consumer thread. Safe to call repeatedly."""
        with self._lock:
            if self.is_running:
                return False
            self._thread = threading.Thread(
                target=self._consume,
                name=f"metafetch-upsert-{self.name}",
                daemon=True,
            )
            self._thread.start()
        logger.info("upsert_queue_started", queue=self.name)
        return True

    def queue_upsert(self, task: UpsertTask) -> None:
        """Hand a task to the consumer. Never blocks."""
        if not self.is_running:
            raise UpsertQueueNotInitialized(self.name)
        self._queue.put_nowait(task)

    def upsert_result(self, task: UpsertTask) -> Any:
        """Write ``task`` synchronously in a session of the caller's own."""
        with self.store.session_factory.begin() as session:
            return self._write(session, task)

    def join(self) -> None:
        """Block until every queued task has been written (or failed)."""
        self._queue.join()

    def shutdown(self, timeout: float | None = None) -> None:
        """Drain pending tasks, then stop the consumer."""
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(_STOP)
        thread.join(timeout)
        logger.info("upsert_queue_stopped", queue=self.name, written=self.written, failed=self.failed)

    def _write(self, session: Session, task: UpsertTask) -> Any:
        return self.store.write(
            session,
            task.package_name,
            task.file_path,
            task.sha256,
            task.response.to_row_fields(),
        )

    def _consume(self) -> None:
        session = self.store.session_factory()
        try:
            while True:
                task = self._queue.get()
                try:
                    if task is _STOP:
                        return
                    try:
                        self._write(session, task)
                        session.commit()
                        self.written += 1
                    except Exception as exc:
                        session.rollback()
                        self.failed += 1
                        logger.error(
                            "upsert_failed",
                            queue=self.name,
                            package_id=task.package_name,
                            file_path=task.file_path,
                            error=str(exc),
                        )
                finally:
                    self._queue.task_done()
        finally:
            session.close()
