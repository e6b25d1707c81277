"""Provider adapters — shared HTTP plumbing and outcome classification.

Adapters perform one HTTP exchange and translate the outcome into either a
parsed record or one of the exceptions below. They keep no pacing state: the
worker or scanner that owns the rate limiter decides when to call them.
"""

from __future__ import annotations

import base64
import re
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from metafetch.config import get_settings
from metafetch.core.logging import get_logger
from metafetch.schemas.app_details import AppDetails

logger = get_logger(__name__)

_WAIT_SECONDS_RE = re.compile(r"wait\s+(\d+)\s+seconds?", re.IGNORECASE)


# ── Exceptions ──────────────────────────────────────────────────────


class ProviderError(Exception):
    """Base class for classified provider failures."""


class NotFound(ProviderError):
    """The provider has no record for the requested id or hash."""


class RateLimited(ProviderError):
    """The provider throttled us (HTTP 429)."""

    def __init__(self, retry_after: float, *, upload: bool = False) -> None:
        self.retry_after = retry_after
        self.upload = upload
        scope = "upload quota" if upload else "rate limit"
        super().__init__(f"{scope} reached, retry after {retry_after:.0f}s")


class TransientError(ProviderError):
    """Network failure, unexpected status or unparseable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AnalysisPending(ProviderError):
    """A submitted analysis has not finished yet."""

    def __init__(self, handle: str) -> None:
        self.handle = handle
        super().__init__(f"analysis {handle} still pending")


# ── Classification ──────────────────────────────────────────────────


def parse_retry_after(response: httpx.Response, default: float) -> float:
    """Retry-After header, else a "wait N seconds" hint in the body, else ``default``."""
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass
    try:
        body = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        body = ""
    match = _WAIT_SECONDS_RE.search(body)
    if match:
        return float(match.group(1))
    return default


def classify_response(response: httpx.Response, default_retry_after: float = 60.0) -> ProviderError | None:
    """Map an HTTP response to a provider error, or None when it succeeded."""
    status = response.status_code
    if status == 404:
        return NotFound(str(response.request.url) if response.request else "not found")
    if status == 429:
        return RateLimited(parse_retry_after(response, default_retry_after))
    if status >= 400:
        return TransientError(f"HTTP error {status}", status_code=status)
    return None


def upload_timeout(size_bytes: int, base: float, cap: float) -> float:
    """Base timeout plus one second per MB, capped."""
    return min(cap, base + size_bytes / (1024 * 1024))


# ── Protocols ───────────────────────────────────────────────────────


class MetadataAdapter(Protocol):
    name: str

    def fetch_app_details(self, package_id: str) -> AppDetails: ...


class ScannerAdapter(Protocol):
    name: str

    def lookup(self, sha256: str) -> Any: ...

    def submit(self, path: str) -> str: ...

    def poll(self, handle: str) -> Any: ...


# ── HTTP base ───────────────────────────────────────────────────────


class HttpAdapter:
    """httpx plumbing shared by every adapter.

    One short-lived ``httpx.Client`` per call. ``transport`` lets tests plug in
    ``httpx.MockTransport``.
    """

    name: str = ""
    default_retry_after: float = 60.0

    def __init__(
        self,
        *,
        timeout: float | None = None,
        user_agent: str | None = None,
        transport: httpx.BaseTransport | None = None,
        retry_after_default: float | None = None,
    ) -> None:
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        if retry_after_default is not None:
            self.default_retry_after = retry_after_default
        self.user_agent = user_agent or settings.user_agent
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent}

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        classify: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request and raise the classified error on failure.

        With ``classify=False`` only network failures raise; the caller reads the status.
        """
        merged = {**self._headers(), **(headers or {})}
        try:
            with httpx.Client(
                timeout=timeout or self.timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = client.request(method, url, headers=merged, **kwargs)
                response.read()
        except httpx.HTTPError as exc:
            logger.warning("provider_request_failed", adapter=self.name, error=str(exc))
            raise TransientError(f"{type(exc).__name__}: {exc}") from exc

        error = classify_response(response, self.default_retry_after) if classify else None
        if error is not None:
            logger.debug(
                "provider_response_classified",
                adapter=self.name,
                status=response.status_code,
                error=type(error).__name__,
            )
            raise error
        return response

    def _get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        response = self._request("GET", url, **kwargs)
        return self._json(response)

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(f"invalid JSON from {self.name}: {exc}") from exc

    def _download_icon(self, url: str) -> str | None:
        """Fetch an icon as a ``data:`` URL. Failures only cost the icon."""
        try:
            response = self._request("GET", url)
        except ProviderError as exc:
            logger.warning("icon_download_failed", adapter=self.name, error=str(exc))
            return None
        return to_data_url(url, response.content)


def to_data_url(url: str, content: bytes) -> str:
    if ".jpg" in url or ".jpeg" in url:
        mime = "image/jpeg"
    elif ".webp" in url:
        mime = "image/webp"
    else:
        mime = "image/png"
    return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"
