"""Fetch queue — deduplicating pending list plus per-id status map.

Lifecycle of one package id::

    enqueue -> Pending -> Fetching -> Success(record) | Error(reason)

Terminal statuses stay in the results map until ``clear_results``; while an
id is queued or has any status, ``enqueue`` is a no-op for it.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from metafetch.core.logging import get_logger

logger = get_logger(__name__)

INVALID_PACKAGE_ID = "invalid package id"


def is_valid_package_id(package_id: str) -> bool:
    """Android package ids need at least two non-empty dot-separated segments."""
    parts = package_id.split(".")
    return len(parts) >= 2 and all(part.strip() for part in parts)


# ── Status ──────────────────────────────────────────────────────────


class FetchState(StrEnum):
    """State of one queued fetch."""

    PENDING = "pending"
    FETCHING = "fetching"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class FetchStatus:
    """Tagged status: ``record`` only on success, ``reason`` only on error."""

    state: FetchState
    record: Any = None
    reason: str | None = None

    @classmethod
    def pending(cls) -> FetchStatus:
        return cls(FetchState.PENDING)

    @classmethod
    def fetching(cls) -> FetchStatus:
        return cls(FetchState.FETCHING)

    @classmethod
    def success(cls, record: Any) -> FetchStatus:
        return cls(FetchState.SUCCESS, record=record)

    @classmethod
    def error(cls, reason: str) -> FetchStatus:
        return cls(FetchState.ERROR, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.state in (FetchState.SUCCESS, FetchState.ERROR)


# ── Queue ───────────────────────────────────────────────────────────


class FetchQueue:
    """Thread-safe pending queue and results map for one provider.

    A single lock guards both structures. It is only ever held for in-memory
    mutation, never across cache or network I/O.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._pending: deque[str] = deque()
        self._results: dict[str, FetchStatus] = {}
        # taken off the queue by the worker and not yet terminal
        self._in_flight: set[str] = set()

    # ── GUI-facing ──────────────────────────────────────────────

    def enqueue(self, package_id: str) -> bool:
        """Queue ``package_id`` unless already known. Returns True if queued."""
        with self._lock:
            if package_id in self._results or package_id in self._pending:
                return False
            if not is_valid_package_id(package_id):
                self._results[package_id] = FetchStatus.error(INVALID_PACKAGE_ID)
                logger.debug("fetch_rejected_invalid_id", queue=self.name, package_id=package_id)
                return False
            self._pending.append(package_id)
            self._results[package_id] = FetchStatus.pending()
            return True

    def enqueue_batch(self, package_ids: Iterable[str]) -> int:
        """Queue each id in order. Returns how many were newly queued."""
        return sum(1 for package_id in package_ids if self.enqueue(package_id))

    def get_status(self, package_id: str) -> FetchStatus | None:
        with self._lock:
            return self._results.get(package_id)

    def get_result(self, package_id: str) -> Any:
        """The fetched record, only once the id reached Success."""
        with self._lock:
            status = self._results.get(package_id)
        if status is not None and status.state == FetchState.SUCCESS:
            return status.record
        return None

    def queue_size(self) -> int:
        with self._lock:
            return len(self._pending)

    def completed_count(self) -> int:
        with self._lock:
            return sum(1 for status in self._results.values() if status.is_terminal)

    def clear_queue(self) -> int:
        """Drop pending ids and their Pending statuses. In-flight and terminal results stay."""
        with self._lock:
            dropped = len(self._pending)
            for package_id in self._pending:
                status = self._results.get(package_id)
                if status is not None and status.state == FetchState.PENDING:
                    del self._results[package_id]
            self._pending.clear()
            self._in_flight.clear()
        logger.info("fetch_queue_cleared", queue=self.name, dropped=dropped)
        return dropped

    def clear_results(self) -> None:
        """Forget every status. Pending queue entries are kept and re-marked Pending."""
        with self._lock:
            self._results.clear()
            for package_id in self._pending:
                self._results[package_id] = FetchStatus.pending()

    def snapshot(self) -> dict[str, FetchStatus]:
        """Copy of the results map for GUI polling."""
        with self._lock:
            return dict(self._results)

    # ── Worker helpers ──────────────────────────────────────────

    def pop_front(self) -> str | None:
        with self._lock:
            if not self._pending:
                return None
            package_id = self._pending.popleft()
            self._in_flight.add(package_id)
            return package_id

    def take(self, package_id: str) -> bool:
        """Remove a specific pending id. False if it is no longer queued."""
        with self._lock:
            try:
                self._pending.remove(package_id)
            except ValueError:
                return False
            self._in_flight.add(package_id)
            return True

    def push_front(self, package_id: str) -> bool:
        """Put a deferred id back at the head and mark it Pending again.

        An id dropped by ``clear_queue`` while it was out of the queue stays
        dropped. Returns True if the id was re-queued.
        """
        with self._lock:
            if package_id not in self._in_flight:
                status = self._results.get(package_id)
                if status is not None and not status.is_terminal:
                    del self._results[package_id]
                return False
            self._in_flight.discard(package_id)
            if package_id not in self._pending:
                self._pending.appendleft(package_id)
            self._results[package_id] = FetchStatus.pending()
            return True

    def pending_snapshot(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def set_status(self, package_id: str, status: FetchStatus) -> None:
        with self._lock:
            self._results[package_id] = status
            if status.is_terminal:
                self._in_flight.discard(package_id)
