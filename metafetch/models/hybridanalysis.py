"""Hybrid Analysis scan result model."""

from sqlalchemy import JSON, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from metafetch.database import Base
from metafetch.models.base import ScanResultMixin


class HybridAnalysisResult(ScanResultMixin, Base):
    """Per-file Hybrid Analysis report summary."""

    __tablename__ = "hybridanalysis_results"

    __table_args__ = (
        UniqueConstraint("package_name", "file_path", "sha256", name="uq_hybridanalysis_results_pkg_file_sha"),
    )

    job_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    environment_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    environment_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    verdict: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    threat_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    threat_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_signatures: Mapped[int | None] = mapped_column(Integer, nullable=True)
    classification_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
