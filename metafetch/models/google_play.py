"""Google Play cache model."""

from sqlalchemy import Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from metafetch.database import Base
from metafetch.models.base import AppMetadataMixin


class GooglePlayApp(AppMetadataMixin, Base):
    """Cached Google Play details page, one row per package id."""

    __tablename__ = "google_play_apps"

    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    installs: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated: Mapped[int | None] = mapped_column(Integer, nullable=True)
