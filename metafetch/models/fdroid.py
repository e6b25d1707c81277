"""F-Droid cache model."""

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from metafetch.database import Base
from metafetch.models.base import AppMetadataMixin


class FDroidApp(AppMetadataMixin, Base):
    __tablename__ = "fdroid_apps"

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    license: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated: Mapped[int | None] = mapped_column(Integer, nullable=True)
