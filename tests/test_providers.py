"""Tests for provider adapters, driven through httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from metafetch.providers.apkmirror import ApkMirrorAdapter, parse_search_page
from metafetch.providers.base import (
    AnalysisPending,
    NotFound,
    RateLimited,
    TransientError,
    classify_response,
    parse_retry_after,
    upload_timeout,
)
from metafetch.providers.fdroid import FDroidAdapter, parse_app_details as parse_fdroid
from metafetch.providers.google_play import GooglePlayAdapter
from metafetch.providers.hybridanalysis import HybridAnalysisAdapter
from metafetch.providers.virustotal import VirusTotalAdapter

SHA = "c" * 64

# ── Helpers ────────────────────────────────────────────────────────


def _transport(handler) -> httpx.MockTransport:
    return httpx.MockTransport(handler)


def _response(status: int, *, text: str = "", headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status, text=text, headers=headers, request=httpx.Request("GET", "https://example.test/"))


def _google_play_html(title: str = "Example App", developer: str = "Example Dev") -> str:
    app: list = [None] * 146
    app[0] = [title]
    app[13] = ["1,000,000+"]
    app[51] = [[None, 4.4]]
    app[68] = [developer]
    app[95] = [[None, None, None, [None, None, "https://play-lh.googleusercontent.com/icon.png"]]]
    app[140] = [[["2.5.1"]]]
    app[145] = [[None, [1_700_000_000_000]]]
    data = [None, [None, None, app]]
    return (
        "<html><script>AF_initDataCallback({key: 'ds:5', hash: '7', data:"
        + json.dumps(data)
        + ", sideChannel: {}});</script></html>"
    )


FDROID_HTML = """
<h3 class="package-name">
    Fossify Gallery
</h3>
<li class="package-link" id="author">
    Author:
    <a href="mailto:hello@fossify.org">
        Fossify
    </a>
</li>
<div class="package-version-header">
    <b>Version 1.10.0</b> (24)
</div>
<img class="package-icon" src="https://example.com/icon.png" alt="icon" />
<div class="package-description" dir="auto">
    Description here<br>New line
</div>
<li class="package-link" id="license">
    License:
    <a href="...">GNU General Public License v3.0 only</a>
</li>
Added on 2025-12-18
"""

APKMIRROR_HTML = """
<div class="appRow">
  <img class="ellipsisText" src="/wp-content/themes/APKMirror/ap_resize/ap_resize.php?src=https%3A%2F%2Fwww.apkmirror.com%2Ficon.png&w=32" />
  <h5 title="Signal" class="appRowTitle wrapText marginZero block-on-mobile">
    <a class="fontBlack" href="/apk/signal/">Signal Private Messenger</a>
  </h5>
  <a class="byDeveloper block-on-mobile wrapText" href="/apk/signal/">by Signal Foundation</a>
  <span class="infoSlide-name">Version:</span><span class="infoSlide-value">7.1.2    </span>
</div>
"""


# ── Classification ─────────────────────────────────────────────────


class TestClassifyResponse:
    def test_success(self):
        assert classify_response(_response(200)) is None

    def test_not_found(self):
        assert isinstance(classify_response(_response(404)), NotFound)

    def test_rate_limited_header(self):
        error = classify_response(_response(429, headers={"Retry-After": "42"}))
        assert isinstance(error, RateLimited)
        assert error.retry_after == 42

    def test_rate_limited_body_hint(self):
        error = classify_response(_response(429, text='{"error": "Please wait 30 seconds"}'))
        assert error.retry_after == 30

    def test_rate_limited_default(self):
        assert classify_response(_response(429), default_retry_after=120).retry_after == 120

    def test_server_error_is_transient(self):
        error = classify_response(_response(503))
        assert isinstance(error, TransientError)
        assert error.status_code == 503

    def test_bad_retry_after_header_falls_back(self):
        assert parse_retry_after(_response(429, headers={"Retry-After": "soon"}), 60) == 60


# ── Google Play ────────────────────────────────────────────────────


class TestGooglePlayAdapter:
    def test_fetch_parses_ds5_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["id"] = request.url.params["id"]
            return httpx.Response(200, text=_google_play_html())

        adapter = GooglePlayAdapter(transport=_transport(handler), download_icons=False)
        details = adapter.fetch_app_details("com.example.app")

        assert seen["id"] == "com.example.app"
        assert details.title == "Example App"
        assert details.developer == "Example Dev"
        assert details.version == "2.5.1"
        assert details.score == 4.4
        assert details.installs == "1,000,000+"
        assert details.updated == 1_700_000_000
        assert details.icon_url.endswith("icon.png")

    def test_icon_is_downloaded_as_data_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "play-lh.googleusercontent.com":
                return httpx.Response(200, content=b"\x89PNG")
            return httpx.Response(200, text=_google_play_html())

        details = GooglePlayAdapter(transport=_transport(handler)).fetch_app_details("com.example.app")
        assert details.icon_base64.startswith("data:image/png;base64,")

    def test_404_is_not_found(self):
        adapter = GooglePlayAdapter(transport=_transport(lambda r: httpx.Response(404)))
        with pytest.raises(NotFound):
            adapter.fetch_app_details("com.gone.app")

    def test_missing_payload_is_transient(self):
        adapter = GooglePlayAdapter(transport=_transport(lambda r: httpx.Response(200, text="<html></html>")))
        with pytest.raises(TransientError, match="ds:5"):
            adapter.fetch_app_details("com.example.app")

    def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = GooglePlayAdapter(transport=_transport(handler))
        with pytest.raises(TransientError, match="ConnectError"):
            adapter.fetch_app_details("com.example.app")


# ── F-Droid ────────────────────────────────────────────────────────


class TestFDroidAdapter:
    def test_parse(self):
        details = parse_fdroid("org.fossify.gallery", FDROID_HTML)
        assert details.title == "Fossify Gallery"
        assert details.developer == "Fossify"
        assert details.version == "1.10.0"
        assert details.license == "GNU General Public License v3.0 only"
        assert details.description == "Description here\nNew line"
        assert details.updated == 1_766_016_000

    def test_fetch_uses_package_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/en/packages/org.fossify.gallery/"
            return httpx.Response(200, text=FDROID_HTML)

        adapter = FDroidAdapter(transport=_transport(handler), download_icons=False)
        assert adapter.fetch_app_details("org.fossify.gallery").title == "Fossify Gallery"

    def test_404_is_not_found(self):
        adapter = FDroidAdapter(transport=_transport(lambda r: httpx.Response(404)))
        with pytest.raises(NotFound):
            adapter.fetch_app_details("com.proprietary.app")


# ── APKMirror ──────────────────────────────────────────────────────


class TestApkMirrorAdapter:
    def test_parse_first_hit(self):
        details = parse_search_page("org.thoughtcrime.securesms", APKMIRROR_HTML)
        assert details.title == "Signal Private Messenger"
        assert details.developer == "Signal Foundation"
        assert details.version == "7.1.2"
        assert details.icon_url == "https://www.apkmirror.com/icon.png"

    def test_no_results_page_is_not_found(self):
        with pytest.raises(NotFound):
            parse_search_page("com.gone.app", "<p>No results found matching your query</p>")

    def test_unparseable_page_is_not_found(self):
        with pytest.raises(NotFound):
            parse_search_page("com.gone.app", "<html></html>")

    def test_sends_email_cookie_and_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["cookie"] = request.headers["cookie"]
            seen["s"] = request.url.params["s"]
            return httpx.Response(200, text=APKMIRROR_HTML)

        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(handler), download_icons=False)
        adapter.fetch_app_details("org.thoughtcrime.securesms")

        assert seen["cookie"] == "usprivacy=1---; apkmirror_email=me@example.com"
        assert seen["s"] == "org.thoughtcrime.securesms"

    def test_default_retry_after_is_two_minutes(self):
        adapter = ApkMirrorAdapter(email="", transport=_transport(lambda r: httpx.Response(429)))
        with pytest.raises(RateLimited) as exc_info:
            adapter.fetch_app_details("com.example.app")
        assert exc_info.value.retry_after == 120


class TestApkMirrorUploadEndpoints:
    @pytest.fixture
    def apk(self, tmp_path):
        path = tmp_path / "base.apk"
        path.write_bytes(b"PK\x03\x04apk")
        return path

    def test_uploadable_only_on_200(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200 if request.url.path.endswith("/abc") else 204)

        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(handler))
        assert adapter.check_uploadable("abc") is True
        assert seen["path"] == "/wp-json/apkm/v1/apk_uploadable/abc"
        assert adapter.check_uploadable("def") is False

    def test_uploadable_error_status_raises(self):
        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(lambda r: httpx.Response(503)))
        with pytest.raises(TransientError):
            adapter.check_uploadable("abc")

    def test_upload_sends_form_and_cookies(self, apk):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["cookie"] = request.headers["cookie"]
            seen["xrw"] = request.headers["x-requested-with"]
            seen["body"] = request.read()
            return httpx.Response(200, json={"success": True, "data": "Thanks!"})

        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(handler))
        result = adapter.upload(apk, "Alice")

        assert result.success is True
        assert seen["cookie"] == "usprivacy=1---; apkmirror_name=Alice; apkmirror_email=me@example.com"
        assert seen["xrw"] == "XMLHttpRequest"
        assert b'name="fullname"' in seen["body"]
        assert b"Alice" in seen["body"]
        assert b"application/vnd.android.package-archive" in seen["body"]
        assert b"PK\x03\x04apk" in seen["body"]

    def test_daily_limit_message(self, apk):
        body = {"success": False, "data": "Too many APKs uploaded. Try again in 24 hours."}
        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(lambda r: httpx.Response(200, json=body)))
        result = adapter.upload(apk, "Alice")
        assert result.rate_limited is True
        assert result.success is False

    def test_similar_apk_message(self, apk):
        body = {"success": False, "data": "Sorry, we already have a similar APK."}
        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(lambda r: httpx.Response(200, json=body)))
        assert adapter.upload(apk, "Alice").already_exists is True

    def test_non_json_200_is_success(self, apk):
        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(lambda r: httpx.Response(200, text="ok")))
        assert adapter.upload(apk, "Alice").success is True

    @pytest.mark.parametrize(
        ("status", "already_exists", "rate_limited"),
        [(409, True, False), (429, False, True), (500, False, False)],
    )
    def test_http_errors_become_results(self, apk, status, already_exists, rate_limited):
        adapter = ApkMirrorAdapter(
            email="me@example.com", transport=_transport(lambda r: httpx.Response(status, text="nope"))
        )
        result = adapter.upload(apk, "Alice")
        assert result.success is False
        assert result.already_exists is already_exists
        assert result.rate_limited is rate_limited
        assert result.message == f"HTTP {status}: nope"

    def test_network_failure_raises(self, apk):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(handler))
        with pytest.raises(TransientError):
            adapter.upload(apk, "Alice")

    def test_missing_file_raises(self, tmp_path):
        adapter = ApkMirrorAdapter(email="me@example.com", transport=_transport(lambda r: httpx.Response(200)))
        with pytest.raises(TransientError):
            adapter.upload(tmp_path / "gone.apk", "Alice")


# ── VirusTotal ─────────────────────────────────────────────────────


VT_FILE = {
    "data": {
        "id": SHA,
        "type": "file",
        "attributes": {
            "sha256": SHA,
            "last_analysis_date": 1_700_000_000,
            "last_analysis_stats": {
                "malicious": 2,
                "suspicious": 1,
                "undetected": 60,
                "harmless": 0,
                "timeout": 0,
                "failure": 0,
                "type-unsupported": 5,
            },
            "reputation": -3,
            "androguard": {"dex_count": 3},
        },
    }
}


class TestVirusTotalAdapter:
    def test_lookup(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["x-apikey"] == "secret"
            assert request.url.path == f"/api/v3/files/{SHA}"
            return httpx.Response(200, json=VT_FILE)

        report = VirusTotalAdapter("secret", transport=_transport(handler)).lookup(SHA)

        assert report.stats.malicious == 2
        assert report.stats.type_unsupported == 5
        assert report.dex_count == 3
        assert report.reputation == -3
        assert report.to_row_fields()["not_found"] is False

    def test_lookup_unknown_hash(self):
        adapter = VirusTotalAdapter("secret", transport=_transport(lambda r: httpx.Response(404)))
        with pytest.raises(NotFound):
            adapter.lookup(SHA)

    def test_lookup_throttled(self):
        adapter = VirusTotalAdapter(
            "secret",
            transport=_transport(lambda r: httpx.Response(429, text="Quota exceeded, wait 45 seconds")),
        )
        with pytest.raises(RateLimited) as exc_info:
            adapter.lookup(SHA)
        assert exc_info.value.retry_after == 45

    def test_poll_pending_then_done(self):
        bodies = iter([
            {"data": {"id": "an-1", "attributes": {"status": "queued", "stats": {}}}},
            {"data": {"id": "an-1", "attributes": {"status": "completed", "stats": {"malicious": 4}}}},
        ])
        adapter = VirusTotalAdapter("secret", transport=_transport(lambda r: httpx.Response(200, json=next(bodies))))

        with pytest.raises(AnalysisPending) as exc_info:
            adapter.poll("an-1")
        assert exc_info.value.handle == "an-1"
        assert adapter.poll("an-1").stats.malicious == 4

    def test_submit_small_file(self, tmp_path):
        apk = tmp_path / "base.apk"
        apk.write_bytes(b"apk bytes")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/v3/files"
            assert b"apk bytes" in request.read()
            return httpx.Response(200, json={"data": {"type": "analysis", "id": "an-9"}})

        assert VirusTotalAdapter("secret", transport=_transport(handler)).submit(str(apk)) == "an-9"

    def test_submit_missing_file(self, tmp_path):
        adapter = VirusTotalAdapter("secret", transport=_transport(lambda r: httpx.Response(200)))
        with pytest.raises(TransientError, match="cannot access"):
            adapter.submit(str(tmp_path / "missing.apk"))

    def test_api_key_not_in_repr(self):
        assert "secret" not in repr(VirusTotalAdapter("secret"))

    def test_upload_timeout_scales_and_caps(self):
        assert upload_timeout(10 * 1024 * 1024, 60, 600) == 70
        assert upload_timeout(10_000 * 1024 * 1024, 60, 600) == 600


# ── Hybrid Analysis ────────────────────────────────────────────────


class TestHybridAnalysisAdapter:
    def test_lookup_prefers_android_static_report(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["api-key"] == "secret"
            if request.url.path == "/api/v2/search/hash":
                return httpx.Response(200, json={
                    "sha256s": [SHA],
                    "reports": [
                        {"id": "r-win", "environment_description": "Windows 10 64 bit"},
                        {"id": "r-android", "environment_description": "Android Static Analysis"},
                    ],
                })
            assert request.url.path == "/api/v2/report/r-android/summary"
            return httpx.Response(200, json={
                "job_id": "r-android",
                "environment_id": 200,
                "environment_description": "Android Static Analysis",
                "state": "SUCCESS",
                "verdict": "no specific threat",
                "threat_score": None,
                "classification_tags": None,
                "tags": ["apk"],
            })

        report = HybridAnalysisAdapter("secret", transport=_transport(handler)).lookup(SHA)

        assert report.job_id == "r-android"
        assert report.sha256 == SHA
        assert report.classification_tags == []
        assert report.to_row_fields()["tags"] == ["apk"]

    def test_lookup_without_reports_is_not_found(self):
        adapter = HybridAnalysisAdapter(
            "secret", transport=_transport(lambda r: httpx.Response(200, json={"sha256s": [], "reports": []}))
        )
        with pytest.raises(NotFound):
            adapter.lookup(SHA)

    def test_default_retry_after_is_three_seconds(self):
        adapter = HybridAnalysisAdapter("secret", transport=_transport(lambda r: httpx.Response(429)))
        with pytest.raises(RateLimited) as exc_info:
            adapter.lookup(SHA)
        assert exc_info.value.retry_after == 3

    def test_submit_quota_exhausted_is_upload_scoped(self, tmp_path):
        apk = tmp_path / "base.apk"
        apk.write_bytes(b"apk")
        adapter = HybridAnalysisAdapter("secret", transport=_transport(lambda r: httpx.Response(429)))

        with pytest.raises(RateLimited) as exc_info:
            adapter.submit(str(apk))

        assert exc_info.value.upload is True
        assert exc_info.value.retry_after == 86_400

    def test_poll_states(self):
        states = iter(["IN_QUEUE", "IN_PROGRESS", "ERROR"])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"state": next(states), "error_type": "sandbox failure"})

        adapter = HybridAnalysisAdapter("secret", transport=_transport(handler))
        with pytest.raises(AnalysisPending):
            adapter.poll("job-1")
        with pytest.raises(AnalysisPending):
            adapter.poll("job-1")
        with pytest.raises(TransientError, match="sandbox failure"):
            adapter.poll("job-1")
