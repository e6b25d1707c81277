"""APKMirror adapter — first hit of the site search for a package id, plus
the community upload endpoints.

APKMirror answers unknown ids with a normal page, so "not found" is detected
from the markup rather than the status code.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import unquote

from metafetch.config import get_settings
from metafetch.core.logging import get_logger
from metafetch.providers.base import HttpAdapter, NotFound, TransientError, upload_timeout
from metafetch.schemas.apkmirror import ApkMirrorUploadResult
from metafetch.schemas.app_details import AppDetails

logger = get_logger(__name__)

BASE_URL = "https://www.apkmirror.com"
SEARCH_URL = f"{BASE_URL}/"
NO_RESULTS_MARKER = "No results found matching your query"
UPLOADABLE_URL = f"{BASE_URL}/wp-json/apkm/v1/apk_uploadable/{{md5}}"
UPLOAD_URL = f"{BASE_URL}/wp-json/apkm/v1/upload/"
APK_CONTENT_TYPE = "application/vnd.android.package-archive"

_TITLE_RE = re.compile(r'<h5[^>]*class="[^"]*appRowTitle[^"]*"[^>]*>[\s\S]*?<a[^>]*>(.*?)</a>')
_DEVELOPER_RE = re.compile(r'class="[^"]*byDeveloper[^"]*"[^>]*>(?:by\s+)?(.*?)</a')
_ICON_RE = re.compile(r'<img[^>]*class="[^"]*ellipsisText[^"]*"[^>]*src="([^"]+)"[^>]*>')
_VERSION_RE = re.compile(
    r'<span[^>]*class="[^"]*infoSlide-name[^"]*"[^>]*>Version:</span>\s*'
    r'<span[^>]*class="[^"]*infoSlide-value[^"]*"[^>]*>([^<]+)</span>'
)


def _normalize_icon_url(url: str) -> str:
    if "ap_resize.php" in url and "src=" in url:
        encoded = url.split("src=", 1)[1].split("&", 1)[0]
        return unquote(encoded)
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("/"):
        return f"{BASE_URL}{url}"
    return url


def parse_search_page(package_id: str, html: str) -> AppDetails:
    """First search hit. Raises NotFound for an empty result page."""
    if NO_RESULTS_MARKER in html:
        raise NotFound(package_id)

    title_match = _TITLE_RE.search(html)
    developer_match = _DEVELOPER_RE.search(html)
    title = title_match.group(1).strip() if title_match else "Unknown"
    developer = developer_match.group(1).strip() if developer_match else "Unknown"
    if title == "Unknown" and developer == "Unknown":
        raise NotFound(package_id)

    icon_match = _ICON_RE.search(html)
    version_match = _VERSION_RE.search(html)
    return AppDetails(
        package_id=package_id,
        title=title,
        developer=developer,
        version=version_match.group(1).strip() if version_match else None,
        icon_url=_normalize_icon_url(icon_match.group(1).strip()) if icon_match else None,
        raw_response=html,
    )


class ApkMirrorAdapter(HttpAdapter):
    name = "apkmirror"
    default_retry_after = 120.0

    def __init__(self, *, email: str | None = None, download_icons: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.email = email if email is not None else get_settings().apkmirror_email
        self.download_icons = download_icons

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Cookie"] = f"usprivacy=1---; apkmirror_email={self.email}"
        return headers

    def fetch_app_details(self, package_id: str) -> AppDetails:
        response = self._request(
            "GET",
            SEARCH_URL,
            params={
                "post_type": "app_release",
                "searchtype": "app",
                "sortby": "date",
                "sort": "desc",
                "s": package_id,
            },
        )
        details = parse_search_page(package_id, response.text)
        if self.download_icons and details.icon_url:
            details.icon_base64 = self._download_icon(details.icon_url)
        return details

    # ── Uploads ─────────────────────────────────────────────────

    def check_uploadable(self, md5: str) -> bool:
        """True when APKMirror does not know this APK yet (HTTP 200)."""
        response = self._request(
            "GET",
            UPLOADABLE_URL.format(md5=md5),
            headers={"Accept": "*/*", "Referer": f"{BASE_URL}/"},
        )
        return response.status_code == 200

    def upload(self, path: str | Path, uploader_name: str) -> ApkMirrorUploadResult:
        """POST one APK. HTTP failures come back as a result; network failures raise."""
        file_path = Path(path)
        try:
            size = file_path.stat().st_size
        except OSError as exc:
            raise TransientError(f"cannot access {path}: {exc}") from exc

        timeout = upload_timeout(size, self.timeout, get_settings().upload_timeout_cap_seconds)
        headers = {
            "Accept": "*/*",
            "X-Requested-With": "XMLHttpRequest",
            "Origin": BASE_URL,
            "Referer": f"{BASE_URL}/",
            "Cookie": f"usprivacy=1---; apkmirror_name={uploader_name}; apkmirror_email={self.email}",
        }
        logger.info("apkmirror_upload_started", file=file_path.name, size_bytes=size, timeout=timeout)
        with file_path.open("rb") as fh:
            response = self._request(
                "POST",
                UPLOAD_URL,
                headers=headers,
                data={"fullname": uploader_name, "email": self.email},
                files={"file": (file_path.name, fh, APK_CONTENT_TYPE)},
                timeout=timeout,
                classify=False,
            )

        status = response.status_code
        logger.info("apkmirror_upload_response", status=status)
        if status == 200:
            return ApkMirrorUploadResult.from_body(response.text)
        if status >= 400:
            return ApkMirrorUploadResult(
                already_exists=status == 409,
                rate_limited=status == 429,
                message=f"HTTP {status}: {response.text}",
            )
        return ApkMirrorUploadResult(message=response.text)
