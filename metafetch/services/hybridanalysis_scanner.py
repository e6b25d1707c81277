"""Hybrid Analysis scanner — sandbox verdicts rolled up per package."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from metafetch.core.scanner import Scanner
from metafetch.models.hybridanalysis import HybridAnalysisResult
from metafetch.providers.hybridanalysis import report_link
from metafetch.schemas.hybridanalysis import HybridAnalysisReport


@dataclass
class HybridAnalysisFileResult:
    file_path: str
    sha256: str
    verdict: str = ""
    threat_score: int | None = None
    threat_level: int | None = None
    classification_tags: list[str] = field(default_factory=list)
    total_signatures: int | None = None
    link: str = ""
    job_id: str = ""
    wait_until: int | None = None  # Unix time the upload quota frees up
    error: str | None = None

    @property
    def display_text(self) -> str:
        if self.wait_until is not None:
            return "upload quota reached"
        if self.error:
            return f"error: {self.error}"
        if not self.verdict:
            return "unknown"
        if self.threat_score is not None:
            return f"{self.verdict} ({self.threat_score}/100)"
        return self.verdict


class HybridAnalysisScanner(Scanner):
    name = "hybridanalysis"

    def result_from_row(self, row: HybridAnalysisResult) -> HybridAnalysisFileResult:
        return HybridAnalysisFileResult(
            file_path=row.file_path,
            sha256=row.sha256,
            verdict=row.verdict,
            threat_score=row.threat_score,
            threat_level=row.threat_level,
            classification_tags=list(row.classification_tags or []),
            total_signatures=row.total_signatures,
            link=report_link(row.sha256),
            job_id=row.job_id,
        )

    def result_from_report(
        self, file_path: str, sha256: str, report: HybridAnalysisReport
    ) -> HybridAnalysisFileResult:
        return HybridAnalysisFileResult(
            file_path=file_path,
            sha256=sha256,
            verdict=report.verdict,
            threat_score=report.threat_score,
            threat_level=report.threat_level,
            classification_tags=list(report.classification_tags),
            total_signatures=report.total_signatures,
            link=report_link(sha256),
            job_id=report.job_id,
        )

    def not_found_report(self, sha256: str) -> HybridAnalysisReport:
        return HybridAnalysisReport.not_found(sha256)

    def error_result(self, file_path: str, sha256: str, message: str) -> HybridAnalysisFileResult:
        upload_wait = self.limiter.upload_wait_time()
        return HybridAnalysisFileResult(
            file_path=file_path,
            sha256=sha256,
            link=report_link(sha256),
            wait_until=int(time.time() + upload_wait) if upload_wait > 0 else None,
            error=message,
        )
