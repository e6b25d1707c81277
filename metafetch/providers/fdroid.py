"""F-Droid adapter — reads the package page of the main repository."""

from __future__ import annotations

import html as html_lib
import re
from datetime import UTC, datetime
from typing import Any

from metafetch.core.logging import get_logger
from metafetch.providers.base import HttpAdapter
from metafetch.schemas.app_details import AppDetails

logger = get_logger(__name__)

PACKAGE_URL = "https://f-droid.org/en/packages/{package_id}/"

_TITLE_RE = re.compile(r'<h3 class="package-name">\s*(.*?)\s*</h3>', re.DOTALL)
_AUTHOR_RE = re.compile(
    r'<li class="package-link" id="author">[^<]*<a href="[^"]*">\s*(.*?)\s*</a>', re.DOTALL
)
_VERSION_RE = re.compile(r"<b>Version\s+([^<]+)</b>")
_ICON_RE = re.compile(r'<img class="package-icon" src="([^"]+)"')
_DESCRIPTION_RE = re.compile(r'<div class="package-description" dir="auto">([\s\S]*?)</div>')
_LICENSE_RE = re.compile(
    r'<li class="package-link" id="license">[^<]*<a href="[^"]*">([\s\S]*?)</a>'
)
_DATE_ISO_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")
_DATE_EN_RE = re.compile(r"Added on ([A-Z][a-z]{2} \d{1,2}, \d{4})")


def _search(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if not match:
        return None
    return html_lib.unescape(match.group(1).strip())


def _parse_date(text: str) -> int | None:
    for pattern, fmt in ((_DATE_ISO_RE, "%Y-%m-%d"), (_DATE_EN_RE, "%b %d, %Y")):
        match = pattern.search(text)
        if match:
            try:
                parsed = datetime.strptime(match.group(1), fmt).replace(tzinfo=UTC)
            except ValueError:
                continue
            return int(parsed.timestamp())
    return None


def parse_app_details(package_id: str, html: str) -> AppDetails:
    description = _search(_DESCRIPTION_RE, html)
    if description is not None:
        description = description.replace("<br>", "\n").strip()
    return AppDetails(
        package_id=package_id,
        title=_search(_TITLE_RE, html) or "Unknown",
        developer=_search(_AUTHOR_RE, html) or "Unknown",
        version=_search(_VERSION_RE, html),
        icon_url=_search(_ICON_RE, html),
        description=description,
        license=_search(_LICENSE_RE, html),
        updated=_parse_date(html),
        raw_response=html,
    )


class FDroidAdapter(HttpAdapter):
    name = "fdroid"

    def __init__(self, *, download_icons: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.download_icons = download_icons

    def fetch_app_details(self, package_id: str) -> AppDetails:
        response = self._request("GET", PACKAGE_URL.format(package_id=package_id))
        details = parse_app_details(package_id, response.text)
        if self.download_icons and details.icon_url:
            details.icon_base64 = self._download_icon(details.icon_url)
        return details
