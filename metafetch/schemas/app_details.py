"""App details — the record a metadata provider returns for one package id."""

from typing import Any

from pydantic import BaseModel


class AppDetails(BaseModel):
    """Parsed metadata for one package.

    Fields a provider does not expose stay None; the cache store keeps only
    the ones its table has columns for.
    """

    package_id: str
    title: str
    developer: str
    version: str | None = None
    icon_url: str | None = None
    icon_base64: str | None = None
    score: float | None = None
    installs: str | None = None
    updated: int | None = None
    description: str | None = None
    license: str | None = None
    raw_response: str = ""

    def cache_fields(self) -> dict[str, Any]:
        """Column values for ``CacheStore.upsert`` (everything but the key)."""
        return self.model_dump(exclude={"package_id"})
