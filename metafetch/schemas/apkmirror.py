"""APKMirror upload endpoint responses."""

from __future__ import annotations

import json

from pydantic import BaseModel

RATE_LIMIT_MARKERS = ("Too many APKs", "24 hours")
ALREADY_EXISTS_MARKER = "we already have a similar APK"


class ApkMirrorUploadResult(BaseModel):
    """Outcome of one upload POST. ``message`` is the raw body (or the HTTP error)."""

    success: bool = False
    already_exists: bool = False
    rate_limited: bool = False
    message: str = ""

    @classmethod
    def from_body(cls, body: str) -> ApkMirrorUploadResult:
        """Read a 200 body of the form ``{"success": bool, "data": "message"}``.

        A body that is not JSON at all counts as a success.
        """
        try:
            payload = json.loads(body)
        except ValueError:
            return cls(success=True, message=body)
        if not isinstance(payload, dict):
            payload = {}

        data = payload.get("data")
        text = data if isinstance(data, str) else ""
        return cls(
            success=payload.get("success") is True,
            rate_limited=all(marker in text for marker in RATE_LIMIT_MARKERS),
            already_exists=ALREADY_EXISTS_MARKER in text,
            message=body,
        )
