"""VirusTotal scanner — per-file detection counts rolled up per package."""

from __future__ import annotations

from dataclasses import dataclass

from metafetch.core.scanner import Scanner
from metafetch.models.virustotal import VirusTotalResult
from metafetch.providers.virustotal import report_link
from metafetch.schemas.virustotal import VirusTotalReport


@dataclass
class VirusTotalFileResult:
    file_path: str
    sha256: str
    malicious: int = 0
    suspicious: int = 0
    undetected: int = 0
    harmless: int = 0
    dex_count: int | None = None
    reputation: int = 0
    link: str = ""
    not_found: bool = False
    skipped: bool = False
    error: str | None = None

    @property
    def total(self) -> int:
        return self.malicious + self.suspicious + self.undetected + self.harmless


class VirusTotalScanner(Scanner):
    name = "virustotal"

    def result_from_row(self, row: VirusTotalResult) -> VirusTotalFileResult:
        return VirusTotalFileResult(
            file_path=row.file_path,
            sha256=row.sha256,
            malicious=row.malicious,
            suspicious=row.suspicious,
            undetected=row.undetected,
            harmless=row.harmless,
            dex_count=row.dex_count,
            reputation=row.reputation,
            link=report_link(row.sha256),
            not_found=row.not_found,
        )

    def result_from_report(self, file_path: str, sha256: str, report: VirusTotalReport) -> VirusTotalFileResult:
        stats = report.stats
        return VirusTotalFileResult(
            file_path=file_path,
            sha256=sha256,
            malicious=stats.malicious,
            suspicious=stats.suspicious,
            undetected=stats.undetected,
            harmless=stats.harmless,
            dex_count=report.dex_count,
            reputation=report.reputation,
            link=report_link(sha256),
            not_found=report.is_not_found,
        )

    def not_found_report(self, sha256: str) -> VirusTotalReport:
        return VirusTotalReport.not_found(sha256)

    def error_result(self, file_path: str, sha256: str, message: str) -> VirusTotalFileResult:
        return VirusTotalFileResult(file_path=file_path, sha256=sha256, link=report_link(sha256), error=message)

    def skipped_result(self, file_path: str, sha256: str) -> VirusTotalFileResult:
        return VirusTotalFileResult(
            file_path=file_path,
            sha256=sha256,
            link=report_link(sha256),
            not_found=True,
            skipped=True,
        )
