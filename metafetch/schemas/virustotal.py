"""VirusTotal v3 file and analysis objects."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

NOT_FOUND_STATUS = "404 Not Found"


class AnalysisStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    malicious: int = 0
    suspicious: int = 0
    undetected: int = 0
    harmless: int = 0
    timeout: int = 0
    failure: int = 0
    type_unsupported: int = Field(default=0, alias="type-unsupported")
    confirmed_timeout: int = Field(default=0, alias="confirmed-timeout")

    @property
    def total(self) -> int:
        return self.malicious + self.suspicious + self.undetected + self.harmless


class VirusTotalReport(BaseModel):
    """Flattened ``data.attributes`` of a file report or an analysis.

    ``status`` is only set for analyses (``queued`` / ``in-progress`` /
    ``completed``) and for the locally built not-found marker.
    """

    id: str = ""
    sha256: str = ""
    last_analysis_date: int = 0
    stats: AnalysisStats = Field(default_factory=AnalysisStats)
    reputation: int = 0
    dex_count: int | None = None
    status: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> VirusTotalReport:
        data = payload.get("data") or {}
        attrs = data.get("attributes") or {}
        stats = attrs.get("last_analysis_stats") or attrs.get("stats") or {}
        meta_sha = (payload.get("meta") or {}).get("file_info", {}).get("sha256")
        dex_count = (attrs.get("androguard") or {}).get("dex_count")
        if dex_count is None:
            dex_count = attrs.get("dex_count")
        return cls(
            id=data.get("id", ""),
            sha256=attrs.get("sha256") or meta_sha or "",
            last_analysis_date=attrs.get("last_analysis_date") or attrs.get("date") or 0,
            stats=AnalysisStats.model_validate(stats),
            reputation=attrs.get("reputation") or 0,
            dex_count=dex_count,
            status=attrs.get("status"),
            raw=payload,
        )

    @classmethod
    def not_found(cls, sha256: str) -> VirusTotalReport:
        return cls(id=sha256, sha256=sha256, status=NOT_FOUND_STATUS)

    @property
    def is_not_found(self) -> bool:
        return self.status == NOT_FOUND_STATUS

    @property
    def is_completed(self) -> bool:
        return self.status in (None, "completed")

    def _raw_response(self) -> str:
        if self.raw:
            return json.dumps(self.raw)
        return "404" if self.is_not_found else ""

    def to_row_fields(self) -> dict[str, Any]:
        """Column values for ``virustotal_results``."""
        return {
            "last_analysis_date": self.last_analysis_date,
            "malicious": self.stats.malicious,
            "suspicious": self.stats.suspicious,
            "undetected": self.stats.undetected,
            "harmless": self.stats.harmless,
            "timeout": self.stats.timeout,
            "failure": self.stats.failure,
            "type_unsupported": self.stats.type_unsupported,
            "dex_count": self.dex_count,
            "reputation": self.reputation,
            "not_found": self.is_not_found,
            "raw_response": self._raw_response(),
        }
