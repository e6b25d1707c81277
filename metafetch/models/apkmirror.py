"""APKMirror cache model."""

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from metafetch.database import Base
from metafetch.models.base import AppMetadataMixin


class ApkMirrorApp(AppMetadataMixin, Base):
    """Cached APKMirror search hit. ``title == package_id`` marks a placeholder row."""

    __tablename__ = "apkmirror_apps"

    icon_url: Mapped[str | None] = mapped_column(Text, nullable=True)
