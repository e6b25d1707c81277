"""Hybrid Analysis v2 report summaries and submissions."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

NOT_FOUND_STATE = "not_found"
ANDROID_STATIC_ENVIRONMENT = 200


class HybridAnalysisReport(BaseModel):
    """Summary of one sandbox report, or the local not-found marker."""

    model_config = ConfigDict(extra="ignore")

    job_id: str = ""
    sha256: str = ""
    environment_id: int = 0
    environment_description: str = ""
    state: str = ""
    verdict: str = ""
    threat_score: int | None = None
    threat_level: int | None = None
    total_signatures: int | None = None
    classification_tags: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> HybridAnalysisReport:
        # the API sends explicit nulls; let the field defaults apply
        present = {key: value for key, value in payload.items() if value is not None}
        return cls.model_validate({**present, "raw": payload})

    @classmethod
    def not_found(cls, sha256: str) -> HybridAnalysisReport:
        return cls(sha256=sha256, state=NOT_FOUND_STATE, verdict="no specific threat")

    @property
    def is_not_found(self) -> bool:
        return self.state == NOT_FOUND_STATE

    def to_row_fields(self) -> dict[str, Any]:
        """Column values for ``hybridanalysis_results``."""
        return {
            "job_id": self.job_id,
            "environment_id": self.environment_id,
            "environment_description": self.environment_description,
            "state": self.state,
            "verdict": self.verdict,
            "threat_score": self.threat_score,
            "threat_level": self.threat_level,
            "total_signatures": self.total_signatures,
            "classification_tags": list(self.classification_tags),
            "tags": list(self.tags),
            "raw_response": json.dumps(self.raw) if self.raw else "",
        }


class HybridAnalysisSubmission(BaseModel):
    """Response of ``/submit/file``."""

    model_config = ConfigDict(extra="ignore")

    job_id: str
    submission_id: str | None = None
    environment_id: int | None = None
    sha256: str | None = None
