"""VirusTotal v3 adapter — file lookup, upload and analysis polling."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from metafetch.config import get_settings
from metafetch.core.logging import get_logger
from metafetch.providers.base import AnalysisPending, HttpAdapter, TransientError, upload_timeout
from metafetch.schemas.virustotal import VirusTotalReport

logger = get_logger(__name__)

API_BASE = "https://www.virustotal.com/api/v3"
GUI_FILE_URL = "https://www.virustotal.com/gui/file/{sha256}"
DIRECT_UPLOAD_LIMIT = 32 * 1024 * 1024


def report_link(sha256: str) -> str:
    return GUI_FILE_URL.format(sha256=sha256)


class VirusTotalAdapter(HttpAdapter):
    name = "virustotal"
    default_retry_after = 60.0

    def __init__(self, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._api_key = api_key if api_key is not None else get_settings().virustotal_api_key

    def __repr__(self) -> str:
        return f"VirusTotalAdapter(timeout={self.timeout})"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["x-apikey"] = self._api_key
        headers["accept"] = "application/json"
        return headers

    def lookup(self, sha256: str) -> VirusTotalReport:
        """File report by hash. Raises NotFound when VirusTotal never saw the file."""
        payload = self._get_json(f"{API_BASE}/files/{sha256}")
        report = VirusTotalReport.from_api(payload)
        if not report.sha256:
            report.sha256 = sha256
        return report

    def submit(self, path: str) -> str:
        """Upload a local file. Returns the analysis id to poll."""
        file_path = Path(path)
        try:
            size = file_path.stat().st_size
        except OSError as exc:
            raise TransientError(f"cannot access {path}: {exc}") from exc

        settings = get_settings()
        timeout = upload_timeout(size, self.timeout, settings.upload_timeout_cap_seconds)
        url = f"{API_BASE}/files"
        if size > DIRECT_UPLOAD_LIMIT:
            url = self._get_json(f"{API_BASE}/files/upload_url").get("data")
            if not isinstance(url, str):
                raise TransientError("VirusTotal did not return an upload URL")

        logger.info("virustotal_upload_started", file=file_path.name, size_bytes=size, timeout=timeout)
        with file_path.open("rb") as fh:
            response = self._request("POST", url, files={"file": (file_path.name, fh)}, timeout=timeout)
        analysis_id = (self._json(response).get("data") or {}).get("id")
        if not analysis_id:
            raise TransientError("VirusTotal upload response had no analysis id")
        return analysis_id

    def poll(self, handle: str) -> VirusTotalReport:
        """Finished analysis report. Raises AnalysisPending until it completes."""
        report = VirusTotalReport.from_api(self._get_json(f"{API_BASE}/analyses/{handle}"))
        if not report.is_completed:
            raise AnalysisPending(handle)
        return report
