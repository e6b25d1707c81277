"""APKMirror upload queue — contribute device APKs that APKMirror lacks.

One background thread, one APK at a time:

1. ``enqueue`` drops items whose device version is not newer than APKMirror's
2. the worker pulls the APK, hashes it (MD5) and asks APKMirror if it is new
3. new APKs are uploaded, then the worker waits ``upload_interval``

An upload answered with "Too many APKs ... 24 hours" pauses the queue: the
item goes back to the front and every pending item reads RATE_LIMITED until
the cooldown runs out.
"""

from __future__ import annotations

import hashlib
import re
import threading
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from metafetch.config import Settings, get_settings
from metafetch.core.logging import bound_package, get_logger, provider_var
from metafetch.core.rate_limiter import RateLimiter
from metafetch.core.scanner import LocalFileSource
from metafetch.providers.base import ProviderError
from metafetch.schemas.apkmirror import ApkMirrorUploadResult

logger = get_logger(__name__)

ANONYMOUS_UPLOADER = "Anonymous"
EMAIL_NOT_CONFIGURED = "Email not configured"

_VERSION_SPLIT_RE = re.compile(r"[.\-_ ]")
_LEADING_DIGITS_RE = re.compile(r"\d+")


# ── Versions ────────────────────────────────────────────────────────


def parse_version(version: str) -> list[int]:
    """Leading digits of each ``.``/``-``/``_``/space separated part.

    ``"1.2.3-beta2"`` gives ``[1, 2, 3]``; parts without leading digits are dropped.
    """
    parts = []
    for part in _VERSION_SPLIT_RE.split(version):
        match = _LEADING_DIGITS_RE.match(part)
        if match:
            parts.append(int(match.group()))
    return parts


def is_version_newer(device_version: str, apkmirror_version: str | None) -> bool:
    """True if the device build is newer, or APKMirror has no version for the app."""
    if not apkmirror_version:
        return True
    device = parse_version(device_version)
    mirror = parse_version(apkmirror_version)
    for d, m in zip(device, mirror):
        if d != m:
            return d > m
    return len(device) > len(mirror)


def md5_file(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.md5()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def find_apk(directory: Path) -> Path | None:
    """``base.apk`` if present, else the first ``*.apk`` file by name."""
    candidates = sorted(p for p in directory.glob("*.apk") if p.is_file())
    for candidate in candidates:
        if candidate.name == "base.apk":
            return candidate
    return candidates[0] if candidates else None


# ── Items and statuses ──────────────────────────────────────────────


class UploadState(StrEnum):
    PENDING = "pending"
    PULLING_APK = "pulling apk"
    COMPUTING_HASH = "computing hash"
    CHECKING_UPLOADABLE = "checking uploadable"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ALREADY_EXISTS = "already exists"
    VERSION_NOT_NEWER = "version not newer"
    ERROR = "error"
    RATE_LIMITED = "rate limited"


_TERMINAL_STATES = frozenset(
    {UploadState.SUCCESS, UploadState.ALREADY_EXISTS, UploadState.VERSION_NOT_NEWER, UploadState.ERROR}
)


@dataclass(frozen=True)
class UploadStatus:
    """``message`` carries the server reply on success and the reason on error."""

    state: UploadState
    message: str | None = None

    @classmethod
    def error(cls, message: str) -> UploadStatus:
        return cls(UploadState.ERROR, message)

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL_STATES


@dataclass(frozen=True)
class UploadItem:
    package_id: str
    device_version_name: str
    device_version_code: int
    apkmirror_version: str | None
    apk_path: str  # an .apk file, or the install directory holding the split APKs


class UploadAdapter(Protocol):
    email: str

    def check_uploadable(self, md5: str) -> bool: ...

    def upload(self, path: str | Path, uploader_name: str) -> ApkMirrorUploadResult: ...


class _ItemFailed(Exception):
    """One step of an upload failed; the message becomes the Error status."""


# ── Queue ───────────────────────────────────────────────────────────


class ApkMirrorUploadQueue:
    """Background uploader for APKs missing from APKMirror.

    Usage::

        uploads = ApkMirrorUploadQueue(ApkMirrorAdapter(email="me@example.com"))
        uploads.start_worker()
        uploads.enqueue(UploadItem("com.example.app", "2.1.0", 210, "2.0.3", "/data/app/com.example.app-1"))
        ...
        uploads.get_status("com.example.app")
    """

    name = "apkmirror_upload"

    def __init__(
        self,
        adapter: UploadAdapter,
        limiter: RateLimiter | None = None,
        *,
        uploader_name: str = "",
        file_source: LocalFileSource | None = None,
        upload_interval: float = 10.0,
        recheck_interval: float = 60.0,
        cooldown: float = 86_400.0,
        idle_interval: float = 0.5,
    ) -> None:
        self.adapter = adapter
        self.limiter = limiter or RateLimiter(self.name)
        self.uploader_name = uploader_name
        self.file_source = file_source or LocalFileSource()
        self.upload_interval = upload_interval
        self.recheck_interval = recheck_interval
        self.cooldown = cooldown
        self.idle_interval = idle_interval

        self._lock = threading.Lock()
        self._queue: deque[UploadItem] = deque()
        self._results: dict[str, UploadStatus] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        adapter: UploadAdapter,
        settings: Settings | None = None,
        *,
        limiter: RateLimiter | None = None,
        file_source: LocalFileSource | None = None,
    ) -> ApkMirrorUploadQueue:
        settings = settings or get_settings()
        return cls(
            adapter,
            limiter,
            uploader_name=settings.apkmirror_uploader_name,
            file_source=file_source,
            upload_interval=settings.apkmirror_upload_interval,
            recheck_interval=settings.apkmirror_upload_recheck_interval,
            cooldown=settings.apkmirror_upload_cooldown,
            idle_interval=settings.worker_idle_interval,
        )

    # ── GUI-facing ──────────────────────────────────────────────

    def enqueue(self, item: UploadItem) -> bool:
        """Queue ``item`` unless APKMirror is current or the id is already known."""
        if not is_version_newer(item.device_version_name, item.apkmirror_version):
            with self._lock:
                self._results[item.package_id] = UploadStatus(UploadState.VERSION_NOT_NEWER)
            logger.info(
                "apkmirror_upload_version_not_newer",
                package_id=item.package_id,
                device_version=item.device_version_name,
                apkmirror_version=item.apkmirror_version,
            )
            return False
        with self._lock:
            if item.package_id in self._results:
                return False
            self._queue.append(item)
            self._results[item.package_id] = UploadStatus(UploadState.PENDING)
            return True

    def get_status(self, package_id: str) -> UploadStatus | None:
        with self._lock:
            return self._results.get(package_id)

    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    def success_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._results.values() if s.state == UploadState.SUCCESS)

    def clear_results(self) -> None:
        """Forget every status except those of items still queued."""
        with self._lock:
            queued = {item.package_id for item in self._queue}
            self._results = {pid: s for pid, s in self._results.items() if pid in queued}

    def is_rate_limited(self) -> bool:
        return not self.limiter.can_upload()

    def rate_limit_remaining_secs(self) -> int | None:
        """Whole seconds left on the upload cooldown, None when not limited."""
        wait = self.limiter.upload_wait_time()
        return int(wait) if wait > 0 else None

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_worker(self) -> bool:
        with self._lock:
            if self.is_running:
                logger.warning("apkmirror_upload_worker_already_running")
                return False
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="metafetch-apkmirror-upload", daemon=True)
            self._thread.start()
        logger.info("worker_started", worker=self.name)
        return True

    def stop_worker(self) -> None:
        self._stop.set()
        logger.info("worker_stop_requested", worker=self.name)

    def join(self, timeout: float | None = None) -> bool:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running

    def _run(self) -> None:
        provider_var.set(self.name)
        while not self._stop.is_set():
            delay = self.process_next()
            if self._stop.wait(delay):
                break
        logger.info("worker_stopped", worker=self.name)

    # ── One iteration ───────────────────────────────────────────

    def process_next(self) -> float:
        """Handle at most one queued item. Returns the sleep before the next iteration."""
        wait = self.limiter.upload_wait_time()
        if wait > 0:
            logger.debug("apkmirror_upload_paused", remaining=int(wait))
            return min(wait, self.recheck_interval)

        with self._lock:
            if not self._queue:
                return self.idle_interval
            item = self._queue.popleft()

        with bound_package(item.package_id):
            if not self.adapter.email:
                logger.warning("apkmirror_upload_email_missing")
                self._set_status(item.package_id, UploadStatus.error(EMAIL_NOT_CONFIGURED))
                return 0.0
            try:
                status = self._upload(item)
            except _ItemFailed as exc:
                logger.error("apkmirror_upload_failed", error=str(exc))
                status = UploadStatus.error(str(exc))
            except Exception as exc:
                logger.exception("apkmirror_upload_crashed")
                self._set_status(item.package_id, UploadStatus.error(f"upload crashed: {exc}"))
                return self.recheck_interval

            if status.state == UploadState.RATE_LIMITED:
                self._pause(item)
                return self.recheck_interval
            self._set_status(item.package_id, status)
            return self.upload_interval

    def _upload(self, item: UploadItem) -> UploadStatus:
        source = Path(item.apk_path)
        if source.suffix != ".apk":
            found = find_apk(source)
            if found is None:
                raise _ItemFailed(f"No APK files found in directory: {item.apk_path}")
            source = found
        logger.info("apkmirror_upload_processing", apk=str(source))

        self._set_status(item.package_id, UploadStatus(UploadState.PULLING_APK))
        try:
            local = self.file_source.fetch(item.package_id, str(source))
        except OSError as exc:
            raise _ItemFailed(f"Failed to pull APK: {exc}") from exc
        try:
            return self._upload_local(item, local)
        finally:
            self.file_source.release(local)

    def _upload_local(self, item: UploadItem, local: Path) -> UploadStatus:
        if local.is_dir():
            inner = find_apk(local)
            if inner is None:
                raise _ItemFailed(f"Pulled path is a directory but no APK found inside: {local}")
            local = inner
        elif not local.is_file():
            raise _ItemFailed(f"Pulled file does not exist or is inaccessible: {local}")

        self._set_status(item.package_id, UploadStatus(UploadState.COMPUTING_HASH))
        try:
            md5 = md5_file(local)
        except OSError as exc:
            raise _ItemFailed(f"Failed to compute MD5 hash: {exc}") from exc

        self._set_status(item.package_id, UploadStatus(UploadState.CHECKING_UPLOADABLE))
        try:
            uploadable = self.adapter.check_uploadable(md5)
        except ProviderError as exc:
            raise _ItemFailed(f"Failed to check uploadability: {exc}") from exc
        if not uploadable:
            logger.info("apkmirror_upload_already_known", md5=md5)
            return UploadStatus(UploadState.ALREADY_EXISTS)

        self._set_status(item.package_id, UploadStatus(UploadState.UPLOADING))
        try:
            result = self.adapter.upload(local, self.uploader_name or ANONYMOUS_UPLOADER)
        except ProviderError as exc:
            raise _ItemFailed(f"Upload error: {exc}") from exc

        if result.success:
            logger.info("apkmirror_upload_succeeded")
            return UploadStatus(UploadState.SUCCESS, result.message)
        if result.rate_limited:
            return UploadStatus(UploadState.RATE_LIMITED)
        if result.already_exists:
            return UploadStatus(UploadState.ALREADY_EXISTS)
        raise _ItemFailed(f"Upload failed: {result.message}")

    def _pause(self, item: UploadItem) -> None:
        """Arm the cooldown and put ``item`` back at the head of the queue."""
        self.limiter.set_upload_rate_limit(self.cooldown)
        with self._lock:
            self._queue.appendleft(item)
            for queued in self._queue:
                status = self._results.get(queued.package_id)
                if status is None or status.state in (UploadState.PENDING, UploadState.UPLOADING):
                    self._results[queued.package_id] = UploadStatus(UploadState.RATE_LIMITED)
        logger.warning("apkmirror_upload_rate_limited", cooldown=self.cooldown, queued=self.queue_size())

    def _set_status(self, package_id: str, status: UploadStatus) -> None:
        with self._lock:
            self._results[package_id] = status
