"""Scanner aggregator — per-package malware scan status built from per-file results.

A package is a handful of files (base APK, splits, native libraries). Each
file is looked up by sha256 in the local results table first, then at the
provider, and optionally uploaded when the provider has never seen it. The
package status moves through ``Scanning{scanned, total, operation}`` as the
files are processed, so the GUI can show fractional progress.

Provider specifics (how a report becomes a row or a display result) live in
the ``Scanner`` subclasses under ``metafetch.services``.
"""

from __future__ import annotations

import hashlib
import math
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from metafetch.config import Settings, get_settings
from metafetch.core.cache_store import CacheStoreError, ScanResultStore
from metafetch.core.fetch_queue import INVALID_PACKAGE_ID, is_valid_package_id
from metafetch.core.logging import bound_package, get_logger, provider_var
from metafetch.core.rate_limiter import RateLimiter
from metafetch.core.upsert_queue import UpsertQueue, UpsertQueueNotInitialized, UpsertTask
from metafetch.providers.base import AnalysisPending, NotFound, ProviderError, RateLimited, ScannerAdapter

logger = get_logger(__name__)

SHA256_HEX_LENGTH = 64
UPLOADABLE_SUFFIXES = (".apk", ".so")

# (device path, sha256); a None sha256 means "hash it locally first"
FileEntry = tuple[str, str | None]


# ── Status ──────────────────────────────────────────────────────────


class ScanState(StrEnum):
    PENDING = "pending"
    SCANNING = "scanning"
    COMPLETED = "completed"
    ERROR = "error"


class ScanOperation(StrEnum):
    """Step a package is currently at while ``Scanning``."""

    CHECKING_CACHE = "checking cache"
    HASHING = "hashing"
    CHECKING_API = "checking api"
    UPLOADING = "uploading"
    POLLING = "polling"


@dataclass
class PackageScanResult:
    package_name: str
    file_results: list[Any] = field(default_factory=list)
    files_attempted: int = 0
    files_skipped_invalid_hash: int = 0


@dataclass(frozen=True)
class ScanStatus:
    state: ScanState
    scanned: int = 0
    total: int = 0
    operation: str | None = None
    result: PackageScanResult | None = None
    message: str | None = None

    @classmethod
    def pending(cls) -> ScanStatus:
        return cls(ScanState.PENDING)

    @classmethod
    def scanning(cls, scanned: int, total: int, operation: str) -> ScanStatus:
        return cls(ScanState.SCANNING, scanned=scanned, total=total, operation=operation)

    @classmethod
    def completed(cls, result: PackageScanResult) -> ScanStatus:
        return cls(ScanState.COMPLETED, result=result)

    @classmethod
    def error(cls, message: str) -> ScanStatus:
        return cls(ScanState.ERROR, message=message)


# ── Policy and collaborators ────────────────────────────────────────


@dataclass(frozen=True)
class ScanPolicy:
    """Per-file time budget and polling cadence, in seconds."""

    file_timeout: float = 60.0
    analysis_timeout: float = 60.0
    poll_interval: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ScanPolicy:
        settings = settings or get_settings()
        return cls(
            file_timeout=settings.scan_file_timeout_seconds,
            analysis_timeout=settings.scan_file_timeout_seconds,
            poll_interval=settings.scan_poll_interval_seconds,
        )


class ScanTimeout(Exception):
    """A file did not finish inside its time budget."""


class ScanCancelled(Exception):
    """The batch was cancelled while a file was waiting."""


class LocalFileSource:
    """Files are already on this machine; paths are used as-is.

    Replace with a source that pulls from the device (and deletes the copy in
    ``release``) when scanning over ADB.
    """

    def fetch(self, package_name: str, file_path: str) -> Path:
        return Path(file_path)

    def release(self, local_path: Path) -> None:
        return None


def sha256_file(path: Path, chunk_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


# ── Scanner ─────────────────────────────────────────────────────────


class Scanner:
    """Generic scan driver. Subclasses turn provider reports into results."""

    name: str = ""

    def __init__(
        self,
        adapter: ScannerAdapter,
        results_store: ScanResultStore,
        upsert_queue: UpsertQueue,
        limiter: RateLimiter,
        policy: ScanPolicy | None = None,
        *,
        file_source: LocalFileSource | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.adapter = adapter
        self.results_store = results_store
        self.upsert_queue = upsert_queue
        self.limiter = limiter
        self.policy = policy or ScanPolicy()
        self.file_source = file_source or LocalFileSource()
        self._clock = clock or limiter.clock or time.monotonic
        self._sleep_fn = sleep

        self._lock = threading.Lock()
        self._states: dict[str, ScanStatus] = {}
        # cancel flag of the current batch; only the batch thread sees it
        self._batch_cancel = threading.Event()
        self._local = threading.local()
        self._batch_thread: threading.Thread | None = None
        self._batch_pending: list[str] = []
        self._batch_done = 0
        self._batch_total = 0

    # ── Provider hooks ──────────────────────────────────────────

    def result_from_row(self, row: Any) -> Any:
        raise NotImplementedError

    def result_from_report(self, file_path: str, sha256: str, report: Any) -> Any:
        raise NotImplementedError

    def not_found_report(self, sha256: str) -> Any:
        raise NotImplementedError

    def error_result(self, file_path: str, sha256: str, message: str) -> Any:
        raise NotImplementedError

    def skipped_result(self, file_path: str, sha256: str) -> Any:
        """Result for a file that is unknown upstream and cannot be uploaded."""
        return self.result_from_report(file_path, sha256, self.not_found_report(sha256))

    # ── State ───────────────────────────────────────────────────

    def _set_status(self, package_name: str, status: ScanStatus) -> None:
        with self._lock:
            self._states[package_name] = status

    def get_status(self, package_name: str) -> ScanStatus | None:
        with self._lock:
            return self._states.get(package_name)

    def get_state(self) -> dict[str, ScanStatus]:
        """Snapshot of every package status for GUI polling."""
        with self._lock:
            return dict(self._states)

    def init_scanner_state(self, package_names: Iterable[str]) -> None:
        """Seed statuses from stored results: Completed if any row exists, else Pending."""
        for package_name in package_names:
            try:
                rows = self.results_store.get_by_package(package_name)
            except CacheStoreError as exc:
                self._set_status(package_name, ScanStatus.error(f"database error: {exc.detail}"))
                continue
            if rows:
                result = PackageScanResult(
                    package_name=package_name,
                    file_results=[self.result_from_row(row) for row in rows],
                    files_attempted=len(rows),
                )
                self._set_status(package_name, ScanStatus.completed(result))
            else:
                self._set_status(package_name, ScanStatus.pending())

    # ── Waiting ─────────────────────────────────────────────────

    def _sleep(self, seconds: float) -> None:
        """Sleep, cut short by a batch cancel. Direct scans are never cancelled."""
        cancel: threading.Event | None = getattr(self._local, "cancel", None)
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
            cancelled = cancel is not None and cancel.is_set()
        elif cancel is not None:
            cancelled = cancel.wait(seconds)
        else:
            time.sleep(seconds)
            cancelled = False
        if cancelled:
            raise ScanCancelled()

    def _wait_for_limiter(
        self,
        package_name: str,
        scanned: int,
        total: int,
        deadline: float,
        *,
        upload: bool = False,
    ) -> None:
        while True:
            wait = self.limiter.wait_time()
            if upload:
                wait = max(wait, self.limiter.upload_wait_time())
            if wait <= 0:
                return
            if self._clock() + wait > deadline:
                raise ScanTimeout(f"waited too long for rate limit ({wait:.0f}s)")
            self._set_status(
                package_name,
                ScanStatus.scanning(scanned, total, f"rate limit ({math.ceil(wait)}s)"),
            )
            self._sleep(min(wait, 1.0))

    def _call(
        self,
        fn: Callable[[], Any],
        package_name: str,
        scanned: int,
        total: int,
        deadline: float,
        *,
        upload: bool = False,
    ) -> Any:
        """Call the adapter once the limiter allows it; retry after a throttle."""
        while True:
            self._wait_for_limiter(package_name, scanned, total, deadline, upload=upload)
            self.limiter.record_request()
            try:
                return fn()
            except RateLimited as exc:
                if exc.upload:
                    self.limiter.set_upload_rate_limit(exc.retry_after)
                    raise
                self.limiter.set_rate_limit(exc.retry_after)

    # ── Per package ─────────────────────────────────────────────

    def analyze_package(
        self,
        package_name: str,
        files: Sequence[FileEntry],
        allow_upload: bool = False,
    ) -> ScanStatus:
        """Scan every file of one package and store the final status."""
        if not is_valid_package_id(package_name):
            status = ScanStatus.error(INVALID_PACKAGE_ID)
            self._set_status(package_name, status)
            return status

        with bound_package(package_name):
            result = PackageScanResult(package_name=package_name)
            total = len(files)
            last_error: str | None = None
            self._set_status(package_name, ScanStatus.scanning(0, total, ScanOperation.CHECKING_CACHE))

            for idx, (file_path, sha256) in enumerate(files):
                scanned = idx + 1
                if sha256 is None:
                    self._set_status(package_name, ScanStatus.scanning(scanned, total, ScanOperation.HASHING))
                    sha256 = self._hash_file(package_name, file_path)
                if sha256 is None or len(sha256) != SHA256_HEX_LENGTH:
                    result.files_skipped_invalid_hash += 1
                    logger.debug("scan_file_skipped_invalid_hash", scanner=self.name, file_path=file_path)
                    continue

                result.files_attempted += 1
                try:
                    file_result = self._scan_file(package_name, file_path, sha256, scanned, total, allow_upload)
                except ScanCancelled:
                    self._set_status(package_name, ScanStatus.pending())
                    logger.info("scan_cancelled", scanner=self.name)
                    raise
                except (ProviderError, ScanTimeout, OSError) as exc:
                    last_error = str(exc)
                    logger.warning("scan_file_failed", scanner=self.name, file_path=file_path, error=last_error)
                    file_result = self.error_result(file_path, sha256, last_error)
                result.file_results.append(file_result)

            succeeded = [r for r in result.file_results if not getattr(r, "error", None)]
            if succeeded or last_error is None:
                status = ScanStatus.completed(result)
            else:
                status = ScanStatus.error(last_error)
            self._set_status(package_name, status)
            logger.info(
                "scan_package_finished",
                scanner=self.name,
                state=status.state,
                files_attempted=result.files_attempted,
                skipped=result.files_skipped_invalid_hash,
            )
            return status

    def _hash_file(self, package_name: str, file_path: str) -> str | None:
        try:
            local = self.file_source.fetch(package_name, file_path)
        except OSError as exc:
            logger.warning("scan_file_fetch_failed", scanner=self.name, file_path=file_path, error=str(exc))
            return None
        try:
            return sha256_file(local)
        except OSError as exc:
            logger.warning("scan_hash_failed", scanner=self.name, file_path=file_path, error=str(exc))
            return None
        finally:
            self.file_source.release(local)

    def _scan_file(
        self,
        package_name: str,
        file_path: str,
        sha256: str,
        scanned: int,
        total: int,
        allow_upload: bool,
    ) -> Any:
        self._set_status(package_name, ScanStatus.scanning(scanned, total, ScanOperation.CHECKING_CACHE))
        try:
            row = self.results_store.get_by_sha256(sha256)
        except CacheStoreError as exc:
            logger.warning("scan_cache_read_failed", scanner=self.name, error=exc.detail)
            row = None
        if row is not None:
            return self.result_from_row(row)

        deadline = self._clock() + self.policy.file_timeout
        self._set_status(package_name, ScanStatus.scanning(scanned, total, ScanOperation.CHECKING_API))
        try:
            report = self._call(
                lambda: self.adapter.lookup(sha256), package_name, scanned, total, deadline
            )
        except NotFound:
            if not allow_upload:
                report = self.not_found_report(sha256)
            elif not file_path.endswith(UPLOADABLE_SUFFIXES):
                return self.skipped_result(file_path, sha256)
            else:
                report = self._upload_and_poll(package_name, file_path, scanned, total)

        self._queue_upsert(UpsertTask(package_name, file_path, sha256, report))
        return self.result_from_report(file_path, sha256, report)

    def _upload_and_poll(self, package_name: str, file_path: str, scanned: int, total: int) -> Any:
        deadline = self._clock() + self.policy.file_timeout
        self._set_status(package_name, ScanStatus.scanning(scanned, total, ScanOperation.UPLOADING))
        local = self.file_source.fetch(package_name, file_path)
        try:
            handle = self._call(
                lambda: self.adapter.submit(str(local)),
                package_name,
                scanned,
                total,
                deadline,
                upload=True,
            )
        finally:
            self.file_source.release(local)
        logger.info("scan_file_uploaded", scanner=self.name, file_path=file_path, handle=handle)

        poll_deadline = self._clock() + self.policy.analysis_timeout
        while True:
            self._set_status(package_name, ScanStatus.scanning(scanned, total, ScanOperation.POLLING))
            if self._clock() + self.policy.poll_interval > poll_deadline:
                raise ScanTimeout(f"analysis {handle} not finished in {self.policy.analysis_timeout:.0f}s")
            self._sleep(self.policy.poll_interval)
            try:
                return self._call(
                    lambda: self.adapter.poll(handle), package_name, scanned, total, poll_deadline
                )
            except AnalysisPending:
                continue

    def _queue_upsert(self, task: UpsertTask) -> None:
        try:
            self.upsert_queue.queue_upsert(task)
        except UpsertQueueNotInitialized:
            logger.warning("upsert_queue_not_running", scanner=self.name)
            self.upsert_queue.upsert_result(task)

    # ── Batch ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._batch_thread is not None and self._batch_thread.is_alive()

    @property
    def progress(self) -> float:
        """Fraction of the current batch that is done (1.0 when idle)."""
        with self._lock:
            if self._batch_total == 0:
                return 1.0
            return self._batch_done / self._batch_total

    def run_batch(self, packages: Mapping[str, Sequence[FileEntry]], allow_upload: bool = False) -> bool:
        """Scan ``packages`` on a background thread. False if a batch is already running."""
        with self._lock:
            if self._batch_thread is not None and self._batch_thread.is_alive():
                return False
            todo = [
                name
                for name in packages
                if self._states.get(name, ScanStatus.pending()).state != ScanState.COMPLETED
            ]
            self._batch_pending = list(todo)
            self._batch_done = 0
            self._batch_total = len(todo)
            cancel = threading.Event()
            self._batch_cancel = cancel
            self._batch_thread = threading.Thread(
                target=self._run_batch,
                args=(dict(packages), allow_upload, cancel),
                name=f"metafetch-scan-{self.name}",
                daemon=True,
            )
            self._batch_thread.start()
        logger.info("scan_batch_started", scanner=self.name, packages=len(todo), allow_upload=allow_upload)
        return True

    def _run_batch(
        self,
        packages: dict[str, Sequence[FileEntry]],
        allow_upload: bool,
        cancel: threading.Event,
    ) -> None:
        provider_var.set(self.name)
        self._local.cancel = cancel
        while True:
            with self._lock:
                if cancel.is_set() or not self._batch_pending:
                    break
                package_name = self._batch_pending.pop(0)
            try:
                self.analyze_package(package_name, packages[package_name], allow_upload)
            except ScanCancelled:
                break
            except Exception as exc:
                logger.exception("scan_package_crashed", scanner=self.name, package_id=package_name)
                self._set_status(package_name, ScanStatus.error(f"scanner crashed: {exc}"))
            with self._lock:
                self._batch_done += 1
        logger.info("scan_batch_finished", scanner=self.name, cancelled=cancel.is_set())

    def cancel(self) -> None:
        """Stop the batch after the current package (or its current wait)."""
        self._batch_cancel.set()
        logger.info("scan_batch_cancel_requested", scanner=self.name)

    def clear_queue(self) -> int:
        """Cancel the batch and drop packages it has not started yet."""
        self.cancel()
        with self._lock:
            dropped = len(self._batch_pending)
            self._batch_pending.clear()
        return dropped

    def join(self, timeout: float | None = None) -> bool:
        thread = self._batch_thread
        if thread is not None:
            thread.join(timeout)
        return not self.is_running
