"""VirusTotal scan result model."""

from sqlalchemy import Boolean, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from metafetch.database import Base
from metafetch.models.base import ScanResultMixin


class VirusTotalResult(ScanResultMixin, Base):
    """Per-file VirusTotal verdict counts."""

    __tablename__ = "virustotal_results"

    __table_args__ = (
        UniqueConstraint("package_name", "file_path", "sha256", name="uq_virustotal_results_pkg_file_sha"),
    )

    last_analysis_date: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    malicious: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    suspicious: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    undetected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    harmless: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    type_unsupported: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dex_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reputation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_found: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
