"""Rate limiter — per-provider request pacing and throttle cooldowns.

Provides:
- Minimum spacing between consecutive requests
- Optional sliding windows (e.g. 4/min for VirusTotal, 100/min + 1500/h for
  Hybrid Analysis)
- A cooldown armed after the provider answers "too many requests"
- A separate upload cooldown (Hybrid Analysis quota exhaustion lasts a day)

The limiter never sleeps itself. Callers ask ``wait_time()`` and decide how to
wait, so workers can stay responsive to their stop flag.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from metafetch.core.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


# ── Sliding window ──────────────────────────────────────────────────


@dataclass
class SlidingWindow:
    """At most ``max_requests`` inside any ``window_seconds`` span."""

    max_requests: int
    window_seconds: float
    timestamps: deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        while self.timestamps and now - self.timestamps[0] >= self.window_seconds:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        self.prune(now)
        if len(self.timestamps) < self.max_requests:
            return 0.0
        return max(0.0, self.timestamps[0] + self.window_seconds - now)

    @property
    def available(self) -> int:
        return max(0, self.max_requests - len(self.timestamps))


# ── Limiter ─────────────────────────────────────────────────────────


@dataclass
class RateLimiter:
    """Thread-safe pacing state for one provider.

    Usage::

        limiter = RateLimiter("virustotal", min_interval=5.0,
                              windows=[SlidingWindow(4, 60.0)])

        wait = limiter.wait_time()
        if wait == 0:
            limiter.record_request()
            ...  # call the API
        # on HTTP 429
        limiter.set_rate_limit(retry_after)
    """

    name: str
    min_interval: float = 0.0
    windows: list[SlidingWindow] = field(default_factory=list)
    clock: Clock = time.monotonic
    last_request: float | None = None
    rate_limit_until: float | None = None
    upload_rate_limit_until: float | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # ── Request pacing ──────────────────────────────────────────

    def wait_time(self) -> float:
        """Seconds until the next request may be sent (0 when it may go now)."""
        with self._lock:
            now = self.clock()
            waits = [0.0]
            if self.rate_limit_until is not None:
                waits.append(self.rate_limit_until - now)
            if self.last_request is not None and self.min_interval > 0:
                waits.append(self.last_request + self.min_interval - now)
            waits.extend(window.wait_time(now) for window in self.windows)
            return max(0.0, *waits)

    def can_proceed(self) -> bool:
        return self.wait_time() <= 0

    def record_request(self) -> None:
        with self._lock:
            now = self.clock()
            self.last_request = now
            for window in self.windows:
                window.prune(now)
                window.timestamps.append(now)

    def available_requests(self) -> int | None:
        """Requests left in the tightest window, or None without windows."""
        if not self.windows:
            return None
        with self._lock:
            now = self.clock()
            for window in self.windows:
                window.prune(now)
            return min(window.available for window in self.windows)

    # ── Cooldowns ───────────────────────────────────────────────

    def set_rate_limit(self, seconds: float) -> None:
        """Arm the throttle cooldown. Never shortens an existing one.

        The window history is dropped: once the provider has throttled us, the
        cooldown alone governs when the next request may go.
        """
        with self._lock:
            until = self.clock() + max(0.0, seconds)
            if self.rate_limit_until is None or until > self.rate_limit_until:
                self.rate_limit_until = until
            for window in self.windows:
                window.timestamps.clear()
        logger.warning("rate_limit_armed", limiter=self.name, seconds=round(seconds, 1))

    def clear_rate_limit(self) -> None:
        with self._lock:
            self.rate_limit_until = None

    def is_rate_limited(self) -> bool:
        with self._lock:
            return self.rate_limit_until is not None and self.clock() < self.rate_limit_until

    def set_upload_rate_limit(self, seconds: float) -> None:
        with self._lock:
            until = self.clock() + max(0.0, seconds)
            if self.upload_rate_limit_until is None or until > self.upload_rate_limit_until:
                self.upload_rate_limit_until = until
        logger.warning("upload_rate_limit_armed", limiter=self.name, seconds=round(seconds, 1))

    def upload_wait_time(self) -> float:
        """Seconds until an upload may be attempted, on top of ``wait_time``."""
        with self._lock:
            if self.upload_rate_limit_until is None:
                return 0.0
            return max(0.0, self.upload_rate_limit_until - self.clock())

    def can_upload(self) -> bool:
        return self.upload_wait_time() <= 0

    # ── Introspection ───────────────────────────────────────────

    def snapshot(self) -> dict:
        """Return a serializable snapshot of the limiter state."""
        now = self.clock()
        return {
            "name": self.name,
            "min_interval": self.min_interval,
            "wait_time": self.wait_time(),
            "rate_limited_for": max(0.0, (self.rate_limit_until or now) - now),
            "upload_limited_for": self.upload_wait_time(),
            "available_requests": self.available_requests(),
        }
