"""Google Play adapter — scrapes the public details page.

The page embeds its data as a JSON array passed to
``AF_initDataCallback({key: 'ds:5', ...})``; fields are read by position.
"""

from __future__ import annotations

import json
import re
from typing import Any

from metafetch.core.logging import get_logger
from metafetch.providers.base import HttpAdapter, TransientError
from metafetch.schemas.app_details import AppDetails

logger = get_logger(__name__)

DETAILS_URL = "https://play.google.com/store/apps/details"

_DS5_RE = re.compile(
    r"AF_initDataCallback\(\{key:\s*'ds:5',\s*hash:\s*'[^']*',\s*data:\s*(\[.+?\]),\s*sideChannel:",
    re.DOTALL,
)


def _dig(data: Any, *path: int | str) -> Any:
    """Follow list indices / dict keys, returning None on any miss."""
    for key in path:
        try:
            data = data[key]
        except (IndexError, KeyError, TypeError):
            return None
    return data


def _first_str(data: Any, *paths: tuple) -> str | None:
    for path in paths:
        value = _dig(data, *path)
        if isinstance(value, str) and value and value != "VARY":
            return value
    return None


def parse_app_details(package_id: str, html: str) -> AppDetails:
    """Build a record from a details page. Raises TransientError if the payload is missing."""
    match = _DS5_RE.search(html)
    if not match:
        raise TransientError("could not find ds:5 data in Google Play page")
    try:
        data = json.loads(match.group(1))
    except ValueError as exc:
        raise TransientError(f"invalid ds:5 JSON: {exc}") from exc

    app = _dig(data, 1, 2)
    title = _dig(app, 0, 0)
    developer = _dig(app, 68, 0)
    if not isinstance(title, str) or not isinstance(developer, str):
        raise TransientError("could not extract title/developer from Google Play page")

    score = _dig(app, 51, 0, 1)
    installs = _dig(app, 13, 0)
    updated = _dig(app, 145, 0, 1, 0)
    if isinstance(updated, int) and updated > 10_000_000_000:
        updated //= 1000  # milliseconds

    return AppDetails(
        package_id=package_id,
        title=title,
        developer=developer,
        version=_first_str(app, (140, 0, 0, 0)),
        icon_url=_first_str(app, (95, 0, 3, 2)),
        score=float(score) if isinstance(score, (int, float)) else None,
        installs=installs if isinstance(installs, str) else None,
        updated=updated if isinstance(updated, int) else None,
        raw_response=html,
    )


class GooglePlayAdapter(HttpAdapter):
    name = "google_play"

    def __init__(self, *, download_icons: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.download_icons = download_icons

    def fetch_app_details(self, package_id: str) -> AppDetails:
        response = self._request("GET", DETAILS_URL, params={"id": package_id, "hl": "en"})
        details = parse_app_details(package_id, response.text)
        if self.download_icons and details.icon_url:
            details.icon_base64 = self._download_icon(details.icon_url)
        logger.debug("google_play_parsed", package_id=package_id, title=details.title)
        return details
