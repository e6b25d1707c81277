"""Tests for the provider worker loop."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest

from metafetch.config import Settings
from metafetch.core.cache_store import CacheStore, CacheStoreError
from metafetch.core.fetch_queue import FetchState
from metafetch.core.rate_limiter import RateLimiter
from metafetch.core.worker import ProviderWorker, WorkerPolicy
from metafetch.models import ApkMirrorApp, GooglePlayApp
from metafetch.providers.base import NotFound, RateLimited, TransientError
from metafetch.schemas.app_details import AppDetails

WEEK = 7 * 24 * 3600

# ── Helpers ────────────────────────────────────────────────────────


def _details(package_id: str, title: str = "Example") -> AppDetails:
    return AppDetails(package_id=package_id, title=title, developer="Example Dev", version="1.0", score=4.2)


def _policy(**overrides) -> WorkerPolicy:
    values = {"request_interval": 2.0, "rate_limit_backoff": 60.0}
    values.update(overrides)
    return WorkerPolicy(**values)


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.fetch_app_details.side_effect = lambda package_id: _details(package_id)
    return adapter


@pytest.fixture
def cache(session_factory, clock):
    return CacheStore(GooglePlayApp, session_factory, ttl_seconds=WEEK, clock=clock)


@pytest.fixture
def worker(adapter, cache, clock):
    policy = _policy()
    limiter = RateLimiter("google_play", min_interval=policy.request_interval, clock=clock)
    return ProviderWorker("google_play", adapter, cache, policy, limiter)


# ── Basic flow ─────────────────────────────────────────────────────


class TestProcessNext:
    def test_idle_when_queue_empty(self, worker, adapter):
        assert worker.process_next() == 0.5
        adapter.fetch_app_details.assert_not_called()

    def test_fetch_success_writes_cache(self, worker, adapter, cache):
        worker.enqueue("com.example.app")

        delay = worker.process_next()

        assert delay == 2.0
        status = worker.get_status("com.example.app")
        assert status.state == FetchState.SUCCESS
        assert worker.get_result("com.example.app").title == "Example"
        assert cache.get("com.example.app").score == 4.2
        adapter.fetch_app_details.assert_called_once_with("com.example.app")

    def test_cache_hit_skips_adapter(self, worker, adapter, cache):
        cache.upsert("com.example.app", title="Cached", developer="Dev")
        worker.enqueue("com.example.app")

        assert worker.process_next() == 0.05
        assert worker.get_result("com.example.app").title == "Cached"
        adapter.fetch_app_details.assert_not_called()

    def test_cache_hit_consumes_no_limiter_budget(self, worker, cache):
        cache.upsert("com.example.app", title="Cached", developer="Dev")
        worker.enqueue("com.example.app")
        worker.process_next()
        assert worker.limiter.last_request is None

    def test_negative_cache_short_circuits(self, worker, adapter, cache):
        cache.mark_not_found("com.gone.app")
        worker.enqueue("com.gone.app")

        worker.process_next()

        status = worker.get_status("com.gone.app")
        assert status.state == FetchState.ERROR
        assert status.reason == "not found (cached)"
        adapter.fetch_app_details.assert_not_called()

    def test_stale_row_is_refetched(self, worker, adapter, cache, clock):
        cache.upsert("com.example.app", title="Old", developer="Dev")
        clock.advance(WEEK + 1)
        worker.enqueue("com.example.app")

        worker.process_next()

        adapter.fetch_app_details.assert_called_once()
        assert worker.get_result("com.example.app").title == "Example"

    def test_row_exactly_ttl_old_is_served(self, worker, adapter, cache, clock):
        cache.upsert("com.example.app", title="Old", developer="Dev")
        clock.advance(WEEK)
        worker.enqueue("com.example.app")

        worker.process_next()

        adapter.fetch_app_details.assert_not_called()


# ── Classified errors ──────────────────────────────────────────────


class TestErrors:
    def test_not_found_is_cached(self, worker, adapter, cache):
        adapter.fetch_app_details.side_effect = NotFound("com.gone.app")
        worker.enqueue("com.gone.app")

        assert worker.process_next() == 2.0

        assert worker.get_status("com.gone.app").reason == "not found"
        assert cache.get("com.gone.app").is_not_found

    def test_transient_error_not_cached(self, worker, adapter, cache):
        adapter.fetch_app_details.side_effect = TransientError("HTTP error 503")
        worker.enqueue("com.example.app")

        worker.process_next()

        assert worker.get_status("com.example.app").reason == "fetch error: HTTP error 503"
        assert cache.get("com.example.app") is None

    def test_unexpected_exception_is_contained(self, worker, adapter):
        adapter.fetch_app_details.side_effect = RuntimeError("boom")
        worker.enqueue("com.example.app")
        worker.enqueue("com.other.app")

        assert worker.process_next() == 30.0

        assert worker.get_status("com.example.app").reason == "worker crashed: boom"
        assert worker.get_status("com.other.app").state == FetchState.PENDING

    def test_save_failure_reported(self, worker, cache):
        worker.enqueue("com.example.app")
        with patch.object(cache, "upsert", side_effect=CacheStoreError("google_play_apps", "disk full")):
            worker.process_next()
        assert worker.get_status("com.example.app").reason == "database save error: disk full"

    def test_not_found_save_failure_reported(self, worker, adapter, cache):
        adapter.fetch_app_details.side_effect = NotFound("com.gone.app")
        worker.enqueue("com.gone.app")
        with patch.object(cache, "mark_not_found", side_effect=CacheStoreError("google_play_apps", "disk full")):
            worker.process_next()
        assert worker.get_status("com.gone.app").reason == "database save error: disk full"

    def test_no_item_left_fetching(self, worker, adapter):
        adapter.fetch_app_details.side_effect = RuntimeError("boom")
        worker.enqueue("com.example.app")
        worker.process_next()
        assert worker.get_status("com.example.app").state != FetchState.FETCHING


# ── Rate limiting ──────────────────────────────────────────────────


class TestRateLimit:
    def test_throttle_arms_backoff_and_is_not_cached(self, worker, adapter, cache):
        adapter.fetch_app_details.side_effect = RateLimited(retry_after=10)
        worker.enqueue("com.example.app")

        delay = worker.process_next()

        assert delay == 60.0
        assert worker.get_status("com.example.app").reason == "rate limit reached"
        assert cache.get("com.example.app") is None
        assert worker.queue_size() == 0
        assert worker.limiter.is_rate_limited()

    def test_retry_after_longer_than_backoff_wins(self, worker, adapter):
        adapter.fetch_app_details.side_effect = RateLimited(retry_after=300)
        worker.enqueue("com.example.app")
        assert worker.process_next() == 300

    def test_no_adapter_call_during_cooldown(self, worker, adapter, clock):
        adapter.fetch_app_details.side_effect = RateLimited(retry_after=0)
        worker.enqueue("com.first.app")
        worker.process_next()
        adapter.fetch_app_details.reset_mock()
        adapter.fetch_app_details.side_effect = lambda package_id: _details(package_id)

        worker.enqueue("com.second.app")
        clock.advance(59)
        delay = worker.process_next()

        assert delay == pytest.approx(1.0)
        adapter.fetch_app_details.assert_not_called()
        assert worker.get_status("com.second.app").state == FetchState.PENDING
        assert worker.queue.pending_snapshot() == ["com.second.app"]

        clock.advance(1)
        worker.process_next()
        adapter.fetch_app_details.assert_called_once_with("com.second.app")

    def test_deferred_id_cleared_meanwhile_stays_dropped(self, worker, adapter):
        worker.limiter.set_rate_limit(60)
        worker.enqueue("com.a.app")
        real_wait_time = worker.limiter.wait_time

        def clear_then_wait():
            worker.clear_queue()
            return real_wait_time()

        with patch.object(worker.limiter, "wait_time", side_effect=clear_then_wait):
            assert worker.process_next() == pytest.approx(60.0)

        assert worker.queue_size() == 0
        assert worker.get_status("com.a.app") is None
        adapter.fetch_app_details.assert_not_called()

    def test_request_interval_defers_next_fetch(self, worker, adapter, clock):
        worker.enqueue_batch(["com.first.app", "com.second.app"])
        worker.process_next()

        assert worker.process_next() == 2.0
        assert adapter.fetch_app_details.call_count == 1
        assert worker.queue.pending_snapshot() == ["com.second.app"]

        clock.advance(2.0)
        worker.process_next()
        assert adapter.fetch_app_details.call_count == 2


# ── Cache-priority ordering ────────────────────────────────────────


class TestPreferCached:
    def test_cached_ids_jump_the_queue(self, session_factory, clock, adapter):
        cache = CacheStore(ApkMirrorApp, session_factory, ttl_seconds=WEEK, clock=clock)
        cache.upsert("com.cached.app", title="Cached", developer="Dev")
        policy = _policy(request_interval=30.0, rate_limit_backoff=120.0, prefer_cached=True)
        worker = ProviderWorker(
            "apkmirror", adapter, cache, policy, RateLimiter("apkmirror", min_interval=30.0, clock=clock)
        )
        worker.enqueue_batch(["com.uncached.app", "com.cached.app"])

        assert worker.process_next() == 0.05

        assert worker.get_result("com.cached.app").title == "Cached"
        assert worker.queue.pending_snapshot() == ["com.uncached.app"]
        adapter.fetch_app_details.assert_not_called()


# ── Policy from settings ───────────────────────────────────────────


class TestWorkerPolicy:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        play = WorkerPolicy.from_settings("google_play", settings)
        mirror = WorkerPolicy.from_settings("apkmirror", settings)
        assert (play.request_interval, play.rate_limit_backoff, play.prefer_cached) == (2.0, 60.0, False)
        assert (mirror.request_interval, mirror.rate_limit_backoff, mirror.prefer_cached) == (30.0, 120.0, True)
        assert play.cache_hit_delay == 0.05
        assert play.idle_interval == 0.5
        assert play.crash_sleep == 30.0


# ── Thread lifecycle ───────────────────────────────────────────────


class TestThread:
    def test_end_to_end_with_real_thread(self, session_factory, adapter):
        cache = CacheStore(GooglePlayApp, session_factory)
        policy = _policy(
            request_interval=0.01,
            rate_limit_backoff=0.01,
            cache_hit_delay=0.0,
            idle_interval=0.01,
            startup_delay=0.0,
        )
        worker = ProviderWorker("google_play", adapter, cache, policy)
        worker.enqueue_batch(["com.first.app", "com.second.app"])

        assert worker.start_worker() is True
        assert worker.start_worker() is False
        deadline = time.monotonic() + 5
        while worker.completed_count() < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        worker.stop_worker()

        assert worker.join(timeout=2)
        assert worker.get_result("com.first.app").title == "Example"
        assert worker.get_result("com.second.app").title == "Example"

    def test_stop_cuts_sleep_short(self, session_factory, adapter):
        cache = CacheStore(GooglePlayApp, session_factory)
        worker = ProviderWorker("google_play", adapter, cache, _policy(idle_interval=60.0, startup_delay=0.0))
        worker.start_worker()
        time.sleep(0.05)
        worker.stop_worker()
        assert worker.join(timeout=2)
