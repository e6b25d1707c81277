"""Hybrid Analysis v2 adapter — hash search, report summary, submission."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from metafetch.config import get_settings
from metafetch.core.logging import get_logger
from metafetch.providers.base import (
    AnalysisPending,
    HttpAdapter,
    NotFound,
    RateLimited,
    TransientError,
    upload_timeout,
)
from metafetch.schemas.hybridanalysis import (
    ANDROID_STATIC_ENVIRONMENT,
    HybridAnalysisReport,
    HybridAnalysisSubmission,
)

logger = get_logger(__name__)

API_BASE = "https://hybrid-analysis.com/api/v2"
SAMPLE_URL = "https://hybrid-analysis.com/sample/{sha256}"
PREFERRED_ENVIRONMENT = "Android Static Analysis"
MAX_UPLOAD_BYTES = 200 * 1024 * 1024


def report_link(sha256: str) -> str:
    return SAMPLE_URL.format(sha256=sha256)


class HybridAnalysisAdapter(HttpAdapter):
    name = "hybridanalysis"
    default_retry_after = 3.0

    def __init__(self, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key if api_key is not None else get_settings().hybridanalysis_api_key

    def __repr__(self) -> str:
        return f"HybridAnalysisAdapter(timeout={self.timeout})"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["api-key"] = self._api_key
        headers["accept"] = "application/json"
        return headers

    def lookup(self, sha256: str) -> HybridAnalysisReport:
        """Summary of the best existing report for ``sha256``."""
        found = self._get_json(f"{API_BASE}/search/hash", params={"hash": sha256})
        reports = found.get("reports") or []
        if not reports:
            raise NotFound(sha256)

        chosen = next(
            (r for r in reports if r.get("environment_description") == PREFERRED_ENVIRONMENT),
            reports[0],
        )
        report_id = chosen.get("id")
        if not report_id:
            raise TransientError("Hybrid Analysis search result has no report id")
        report = self.summary(report_id)
        if not report.sha256:
            report.sha256 = sha256
        return report

    def summary(self, report_id: str) -> HybridAnalysisReport:
        payload = self._get_json(f"{API_BASE}/report/{report_id}/summary")
        report = HybridAnalysisReport.from_api(payload)
        if not report.job_id:
            report.job_id = report_id
        return report

    def submit(self, path: str) -> str:
        """Submit a file to the Android static environment. Returns the job id.

        A 429 here means the daily submission quota is gone and is raised as
        an upload-scoped ``RateLimited``.
        """
        file_path = Path(path)
        try:
            size = file_path.stat().st_size
        except OSError as exc:
            raise TransientError(f"cannot access {path}: {exc}") from exc
        if size > MAX_UPLOAD_BYTES:
            raise TransientError(f"file too large: {size / 1024 / 1024:.2f} MB exceeds 200 MB limit")

        settings = get_settings()
        timeout = upload_timeout(size, self.timeout, settings.upload_timeout_cap_seconds)
        logger.info("hybridanalysis_upload_started", file=file_path.name, size_bytes=size, timeout=timeout)
        try:
            with file_path.open("rb") as fh:
                response = self._request(
                    "POST",
                    f"{API_BASE}/submit/file",
                    data={"environment_id": str(ANDROID_STATIC_ENVIRONMENT)},
                    files={"file": (file_path.name, fh)},
                    timeout=timeout,
                )
        except RateLimited as exc:
            raise RateLimited(settings.hybridanalysis_upload_cooldown, upload=True) from exc
        submission = HybridAnalysisSubmission.model_validate(self._json(response))
        return submission.job_id

    def poll(self, handle: str) -> HybridAnalysisReport:
        """Report summary once the job succeeded. Raises AnalysisPending before that."""
        state = self._get_json(f"{API_BASE}/report/{handle}/state")
        status = (state.get("state") or "").upper()
        if status == "SUCCESS":
            return self.summary(handle)
        if status == "ERROR":
            raise TransientError(
                f"analysis failed: {state.get('error_type') or state.get('error_origin') or 'unknown error'}"
            )
        raise AnalysisPending(handle)
