"""Shared columns for the provider cache tables."""

from enum import StrEnum

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column


class CacheOutcome(StrEnum):
    """What a metadata cache row records about the provider lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"


NOT_FOUND_RAW_RESPONSE = "404"
NOT_FOUND_TITLE = "Not Found"
UNKNOWN_DEVELOPER = "Unknown"


class TimestampMixin:
    """Integer Unix-second timestamps, stamped by the store that writes the row."""

    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False, index=True)


class AppMetadataMixin(TimestampMixin):
    """Columns shared by every metadata provider table (one row per package id)."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    developer: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str | None] = mapped_column(String(128), nullable=True)
    icon_base64: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[str] = mapped_column(Text, nullable=False, default="")
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default=CacheOutcome.FOUND)

    @property
    def is_not_found(self) -> bool:
        return self.outcome == CacheOutcome.NOT_FOUND


class ScanResultMixin(TimestampMixin):
    """Columns shared by the scan-result tables, keyed by (package, file, sha256)."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    raw_response: Mapped[str] = mapped_column(Text, nullable=False, default="")
