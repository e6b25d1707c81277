"""Provider worker — one thread draining one provider's fetch queue.

Each iteration handles at most one package id:

1. pick the next id (cached ids first when the policy asks for it)
2. answer from a fresh cache row without touching the network
3. otherwise wait for the rate limiter, call the adapter, write the cache

Every iteration returns how long the loop should sleep before the next one.
The sleep is a wait on the stop event, so ``stop_worker`` cuts it short.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from metafetch.config import Settings, get_settings
from metafetch.core.cache_store import CacheStore, CacheStoreError
from metafetch.core.fetch_queue import FetchQueue, FetchStatus
from metafetch.core.logging import bound_package, get_logger, provider_var
from metafetch.core.rate_limiter import RateLimiter
from metafetch.providers.base import MetadataAdapter, NotFound, ProviderError, RateLimited

logger = get_logger(__name__)

NOT_FOUND = "not found"
NOT_FOUND_CACHED = "not found (cached)"
RATE_LIMIT_REACHED = "rate limit reached"


# ── Policy ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkerPolicy:
    """Pacing for one provider. All durations in seconds."""

    request_interval: float
    rate_limit_backoff: float
    prefer_cached: bool = False
    cache_hit_delay: float = 0.05
    idle_interval: float = 0.5
    crash_sleep: float = 30.0
    startup_delay: float = 0.5

    @classmethod
    def from_settings(cls, provider: str, settings: Settings | None = None) -> WorkerPolicy:
        """Read ``<provider>_request_interval`` etc. from settings."""
        settings = settings or get_settings()
        return cls(
            request_interval=getattr(settings, f"{provider}_request_interval"),
            rate_limit_backoff=getattr(settings, f"{provider}_rate_limit_backoff"),
            prefer_cached=getattr(settings, f"{provider}_prefer_cached", False),
            cache_hit_delay=settings.worker_cache_hit_delay,
            idle_interval=settings.worker_idle_interval,
            crash_sleep=settings.worker_crash_sleep,
            startup_delay=settings.worker_startup_delay,
        )


# ── Worker ──────────────────────────────────────────────────────────


class ProviderWorker:
    """Background fetcher for one metadata provider.

    Usage::

        worker = ProviderWorker("fdroid", FDroidAdapter(), cache, policy)
        worker.start_worker()
        worker.enqueue_batch(["org.fossify.gallery", "org.mozilla.fennec_fdroid"])
        ...
        worker.get_status("org.fossify.gallery")
        worker.stop_worker()
    """

    def __init__(
        self,
        name: str,
        adapter: MetadataAdapter,
        cache: CacheStore,
        policy: WorkerPolicy,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.name = name
        self.adapter = adapter
        self.cache = cache
        self.policy = policy
        self.limiter = limiter or RateLimiter(name, min_interval=policy.request_interval)
        self.queue = FetchQueue(name)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._thread_lock = threading.Lock()

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_worker(self) -> bool:
        """Spawn the worker thread. No-op (returns False) while one is running."""
        with self._thread_lock:
            if self.is_running:
                return False
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run,
                name=f"metafetch-{self.name}",
                daemon=True,
            )
            self._thread.start()
        logger.info("worker_started", worker=self.name)
        return True

    def stop_worker(self) -> None:
        """Ask the loop to exit. An in-flight request is allowed to finish."""
        self._stop.set()
        logger.info("worker_stop_requested", worker=self.name)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread to exit. True once it is gone."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running

    def _run(self) -> None:
        provider_var.set(self.name)
        if self._stop.wait(self.policy.startup_delay):
            return
        while not self._stop.is_set():
            delay = self.process_next()
            if self._stop.wait(delay):
                break
        logger.info("worker_stopped", worker=self.name)

    # ── One iteration ───────────────────────────────────────────

    def process_next(self) -> float:
        """Handle at most one queued id. Returns the sleep before the next iteration."""
        try:
            package_id = self._select_next()
        except Exception:
            logger.exception("worker_select_failed", worker=self.name)
            return self.policy.crash_sleep
        if package_id is None:
            return self.policy.idle_interval

        with bound_package(package_id):
            try:
                return self._process(package_id)
            except Exception as exc:
                logger.exception("worker_item_crashed", worker=self.name)
                self.queue.set_status(package_id, FetchStatus.error(f"worker crashed: {exc}"))
                return self.policy.crash_sleep

    def _select_next(self) -> str | None:
        if self.policy.prefer_cached:
            for candidate in self.queue.pending_snapshot():
                if self._fresh_record(candidate) is not None and self.queue.take(candidate):
                    logger.debug("worker_cache_priority", worker=self.name, package_id=candidate)
                    return candidate
        return self.queue.pop_front()

    def _fresh_record(self, package_id: str) -> Any:
        try:
            return self.cache.get_fresh(package_id)
        except CacheStoreError as exc:
            logger.warning("cache_read_failed", worker=self.name, package_id=package_id, error=exc.detail)
            return None

    def _process(self, package_id: str) -> float:
        record = self._fresh_record(package_id)
        if record is not None:
            if record.is_not_found:
                self.queue.set_status(package_id, FetchStatus.error(NOT_FOUND_CACHED))
            else:
                self.queue.set_status(package_id, FetchStatus.success(record))
            logger.debug("cache_hit", worker=self.name, negative=record.is_not_found)
            return self.policy.cache_hit_delay

        wait = self.limiter.wait_time()
        if wait > 0:
            requeued = self.queue.push_front(package_id)
            logger.debug("fetch_deferred", worker=self.name, wait=round(wait, 2), requeued=requeued)
            return wait

        self.queue.set_status(package_id, FetchStatus.fetching())
        self.limiter.record_request()
        try:
            details = self.adapter.fetch_app_details(package_id)
        except NotFound:
            self._save_not_found(package_id)
        except RateLimited as exc:
            backoff = max(self.policy.rate_limit_backoff, exc.retry_after)
            self.limiter.set_rate_limit(backoff)
            self.queue.set_status(package_id, FetchStatus.error(RATE_LIMIT_REACHED))
            return backoff
        except ProviderError as exc:
            logger.warning("fetch_failed", worker=self.name, error=str(exc))
            self.queue.set_status(package_id, FetchStatus.error(f"fetch error: {exc}"))
        else:
            try:
                row = self.cache.upsert(package_id, **details.cache_fields())
            except CacheStoreError as exc:
                self.queue.set_status(package_id, FetchStatus.error(f"database save error: {exc.detail}"))
            else:
                self.queue.set_status(package_id, FetchStatus.success(row))
                logger.info("fetch_succeeded", worker=self.name, title=row.title)
        return self.policy.request_interval

    def _save_not_found(self, package_id: str) -> None:
        try:
            self.cache.mark_not_found(package_id)
        except CacheStoreError as exc:
            logger.warning("not_found_save_failed", worker=self.name, error=exc.detail)
            self.queue.set_status(package_id, FetchStatus.error(f"database save error: {exc.detail}"))
            return
        self.queue.set_status(package_id, FetchStatus.error(NOT_FOUND))
        logger.info("fetch_not_found", worker=self.name)

    # ── GUI-facing delegation ───────────────────────────────────

    def enqueue(self, package_id: str) -> bool:
        return self.queue.enqueue(package_id)

    def enqueue_batch(self, package_ids: Iterable[str]) -> int:
        return self.queue.enqueue_batch(package_ids)

    def get_status(self, package_id: str) -> FetchStatus | None:
        return self.queue.get_status(package_id)

    def get_result(self, package_id: str) -> Any:
        return self.queue.get_result(package_id)

    def queue_size(self) -> int:
        return self.queue.queue_size()

    def completed_count(self) -> int:
        return self.queue.completed_count()

    def clear_queue(self) -> int:
        return self.queue.clear_queue()

    def clear_results(self) -> None:
        self.queue.clear_results()

    def snapshot(self) -> dict[str, FetchStatus]:
        return self.queue.snapshot()
