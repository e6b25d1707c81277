"""Cache store — one persistent table per metadata provider, keyed by package id.

Rows are both positive records and negative ("not found") markers, told apart
by the ``outcome`` column. Both expire after the same TTL.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from metafetch.core.logging import get_logger
from metafetch.models.base import (
    NOT_FOUND_RAW_RESPONSE,
    NOT_FOUND_TITLE,
    UNKNOWN_DEVELOPER,
    CacheOutcome,
)

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 3600

_KEY_COLUMNS = frozenset({"id", "package_id", "created_at", "updated_at"})


class CacheStoreError(Exception):
    """Raised when the backing table cannot be read or written."""

    def __init__(self, table: str, detail: str) -> None:
        self.table = table
        self.detail = detail
        super().__init__(f"{table}: {detail}")


class CacheStore:
    """Short-session access to one metadata table.

    Every call opens its own session and commits before returning, so the
    store is safe to share between the worker thread and GUI readers.
    Returned rows are detached and keep their loaded attributes.
    """

    def __init__(
        self,
        model: type,
        session_factory: sessionmaker[Session],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        columns = model.__table__.columns
        self.field_names = frozenset(c.name for c in columns if c.name not in _KEY_COLUMNS)
        self._nullable_fields = frozenset(
            c.name for c in columns if c.nullable and c.name not in _KEY_COLUMNS
        )

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("cache_store_error", table=self.table, error=str(exc))
            raise CacheStoreError(self.table, str(exc)) from exc

    # ── Reads ───────────────────────────────────────────────────

    def get(self, package_id: str) -> Any:
        """Row for ``package_id`` regardless of age, or None."""
        with self._session() as session:
            return session.scalar(select(self.model).where(self.model.package_id == package_id))

    def is_stale(self, record: Any, now: int | None = None) -> bool:
        """Older than the TTL. Exactly TTL seconds old is still fresh."""
        now = self.now() if now is None else now
        return now - record.updated_at > self.ttl_seconds

    def get_fresh(self, package_id: str) -> Any:
        record = self.get(package_id)
        if record is None or self.is_stale(record):
            return None
        return record

    def get_all(self) -> list[Any]:
        with self._session() as session:
            return list(session.scalars(select(self.model).order_by(self.model.package_id)))

    def count(self) -> int:
        with self._session() as session:
            return session.scalar(select(func.count()).select_from(self.model)) or 0

    # ── Writes ──────────────────────────────────────────────────

    def upsert(self, package_id: str, **fields: Any) -> Any:
        """Insert or update the row for ``package_id``.

        Keyword names without a matching column are ignored. ``created_at`` is
        stamped on insert only; ``updated_at`` on every call.
        """
        unknown = set(fields) - self.field_names
        if unknown:
            logger.debug("cache_fields_ignored", table=self.table, fields=sorted(unknown))
        values = {k: v for k, v in fields.items() if k in self.field_names}
        values.setdefault("outcome", CacheOutcome.FOUND)
        now = self.now()

        with self._session() as session:
            record = session.scalar(
                select(self.model).where(self.model.package_id == package_id)
            )
            if record is None:
                record = self.model(package_id=package_id, created_at=now)
                session.add(record)
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = now
        return record

    def mark_not_found(self, package_id: str) -> Any:
        """Store a negative row. Provider-specific fields are cleared."""
        fields: dict[str, Any] = {name: None for name in self._nullable_fields}
        fields.update(
            title=NOT_FOUND_TITLE,
            developer=UNKNOWN_DEVELOPER,
            raw_response=NOT_FOUND_RAW_RESPONSE,
            outcome=CacheOutcome.NOT_FOUND,
        )
        return self.upsert(package_id, **fields)

    def delete(self, package_id: str) -> int:
        return self.delete_where(self.model.package_id == package_id)

    def delete_where(self, *criteria: Any) -> int:
        """Delete rows matching SQLAlchemy ``criteria``. Returns the row count."""
        with self._session() as session:
            result = session.execute(delete(self.model).where(*criteria))
            return result.rowcount or 0

    def flush(self) -> int:
        """Empty the table."""
        with self._session() as session:
            deleted = session.execute(delete(self.model)).rowcount or 0
        logger.info("cache_flushed", table=self.table, deleted=deleted)
        return deleted

    def purge_negative(self) -> int:
        """Delete negative rows that are past the TTL."""
        cutoff = self.now() - self.ttl_seconds
        return self.delete_where(
            self.model.outcome == CacheOutcome.NOT_FOUND,
            self.model.updated_at < cutoff,
        )


class ScanResultStore:
    """Scan-result table keyed by ``(package_name, file_path, sha256)``.

    ``write`` takes the caller's session so the upsert queue consumer can
    reuse one session for every task it drains.
    """

    def __init__(
        self,
        model: type,
        session_factory: sessionmaker[Session],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self.session_factory = session_factory
        self._clock = clock

    @property
    def table(self) -> str:
        return self.model.__tablename__

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("scan_store_error", table=self.table, error=str(exc))
            raise CacheStoreError(self.table, str(exc)) from exc

    def get_by_sha256(self, sha256: str) -> Any:
        """Most recently written row for a hash, from any package."""
        with self._session() as session:
            return session.scalar(
                select(self.model)
                .where(self.model.sha256 == sha256)
                .order_by(self.model.updated_at.desc())
                .limit(1)
            )

    def get_by_package(self, package_name: str) -> list[Any]:
        with self._session() as session:
            return list(
                session.scalars(
                    select(self.model)
                    .where(self.model.package_name == package_name)
                    .order_by(self.model.file_path)
                )
            )

    def get_by_package_file_sha256(self, package_name: str, file_path: str, sha256: str) -> Any:
        with self._session() as session:
            return self._find(session, package_name, file_path, sha256)

    def _find(self, session: Session, package_name: str, file_path: str, sha256: str) -> Any:
        return session.scalar(
            select(self.model).where(
                self.model.package_name == package_name,
                self.model.file_path == file_path,
                self.model.sha256 == sha256,
            )
        )

    def write(self, session: Session, package_name: str, file_path: str, sha256: str, fields: dict[str, Any]) -> Any:
        """Update the matching row or insert a new one. Does not commit."""
        now = int(self._clock())
        row = self._find(session, package_name, file_path, sha256)
        if row is None:
            row = self.model(
                package_name=package_name,
                file_path=file_path,
                sha256=sha256,
                created_at=now,
            )
            session.add(row)
        for key, value in fields.items():
            setattr(row, key, value)
        row.updated_at = now
        session.flush()
        return row

    def delete_where(self, *criteria: Any) -> int:
        with self._session() as session:
            return session.execute(delete(self.model).where(*criteria)).rowcount or 0

    def delete_by_package(self, package_name: str) -> int:
        return self.delete_where(self.model.package_name == package_name)

    def flush(self) -> int:
        with self._session() as session:
            deleted = session.execute(delete(self.model)).rowcount or 0
        logger.info("scan_results_flushed", table=self.table, deleted=deleted)
        return deleted
