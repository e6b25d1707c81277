"""Services container — builds every worker and scanner once at startup.

The GUI receives a ``Services`` instance instead of reaching for module
globals. Nothing here starts a thread until ``start()`` is called.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from metafetch.config import Settings, get_settings
from metafetch.core.cache_store import CacheStore, ScanResultStore
from metafetch.core.logging import get_logger
from metafetch.core.rate_limiter import RateLimiter, SlidingWindow
from metafetch.core.scanner import LocalFileSource, ScanPolicy, Scanner, ScanStatus
from metafetch.core.upsert_queue import UpsertQueue
from metafetch.core.worker import ProviderWorker, WorkerPolicy
from metafetch.database import build_engine, build_session_factory, init_db
from metafetch.models import ApkMirrorApp, FDroidApp, GooglePlayApp, HybridAnalysisResult, VirusTotalResult
from metafetch.providers.apkmirror import ApkMirrorAdapter
from metafetch.providers.fdroid import FDroidAdapter
from metafetch.providers.google_play import GooglePlayAdapter
from metafetch.providers.hybridanalysis import HybridAnalysisAdapter
from metafetch.providers.virustotal import VirusTotalAdapter
from metafetch.services.apkmirror_uploads import ApkMirrorUploadQueue
from metafetch.services.hybridanalysis_scanner import HybridAnalysisScanner
from metafetch.services.virustotal_scanner import VirusTotalScanner

logger = get_logger(__name__)

METADATA_PROVIDERS = ("google_play", "fdroid", "apkmirror")


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    workers: dict[str, ProviderWorker] = field(default_factory=dict)
    virustotal: VirusTotalScanner | None = None
    hybridanalysis: HybridAnalysisScanner | None = None
    apkmirror_uploads: ApkMirrorUploadQueue | None = None
    upsert_queues: dict[str, UpsertQueue] = field(default_factory=dict)

    @property
    def google_play(self) -> ProviderWorker:
        return self.workers["google_play"]

    @property
    def fdroid(self) -> ProviderWorker:
        return self.workers["fdroid"]

    @property
    def apkmirror(self) -> ProviderWorker:
        return self.workers["apkmirror"]

    @property
    def scanners(self) -> list[Scanner]:
        return [s for s in (self.virustotal, self.hybridanalysis) if s is not None]

    def start(self) -> None:
        """Start every upsert consumer, metadata worker and the upload worker."""
        for upsert_queue in self.upsert_queues.values():
            upsert_queue.init_upsert_queue()
        for worker in self.workers.values():
            worker.start_worker()
        if self.apkmirror_uploads is not None:
            self.apkmirror_uploads.start_worker()
        logger.info("services_started", workers=sorted(self.workers))

    def stop(self, timeout: float = 5.0) -> None:
        """Stop workers and scans, then drain the upsert queues."""
        for worker in self.workers.values():
            worker.stop_worker()
        if self.apkmirror_uploads is not None:
            self.apkmirror_uploads.stop_worker()
        for scanner in self.scanners:
            scanner.cancel()
        for worker in self.workers.values():
            worker.join(timeout)
        if self.apkmirror_uploads is not None:
            self.apkmirror_uploads.join(timeout)
        for scanner in self.scanners:
            scanner.join(timeout)
        for upsert_queue in self.upsert_queues.values():
            upsert_queue.shutdown(timeout)
        logger.info("services_stopped")

    def get_vt_scanner_state(self) -> dict[str, ScanStatus]:
        return self.virustotal.get_state() if self.virustotal else {}

    def get_ha_scanner_state(self) -> dict[str, ScanStatus]:
        return self.hybridanalysis.get_state() if self.hybridanalysis else {}


def build_limiters(settings: Settings) -> dict[str, RateLimiter]:
    """One limiter per provider, configured from settings."""
    limiters = {
        name: RateLimiter(name, min_interval=getattr(settings, f"{name}_request_interval"))
        for name in METADATA_PROVIDERS
    }
    limiters["virustotal"] = RateLimiter(
        "virustotal",
        min_interval=settings.virustotal_min_interval,
        windows=[SlidingWindow(settings.virustotal_max_requests_per_minute, 60.0)],
    )
    limiters["apkmirror_upload"] = RateLimiter("apkmirror_upload")
    limiters["hybridanalysis"] = RateLimiter(
        "hybridanalysis",
        min_interval=settings.hybridanalysis_min_interval,
        windows=[
            SlidingWindow(settings.hybridanalysis_max_per_minute, 60.0),
            SlidingWindow(settings.hybridanalysis_max_per_hour, 3600.0),
        ],
    )
    return limiters


def build_services(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    transport: httpx.BaseTransport | None = None,
    file_source: LocalFileSource | None = None,
) -> Services:
    """Wire the database, adapters, caches, workers and scanners together."""
    settings = settings or get_settings()
    engine = engine or build_engine(settings.database_url, busy_timeout_ms=settings.db_busy_timeout_ms)
    init_db(engine)
    session_factory = build_session_factory(engine)
    limiters = build_limiters(settings)
    http = {"timeout": settings.http_timeout_seconds, "user_agent": settings.user_agent, "transport": transport}

    adapters = {
        "google_play": GooglePlayAdapter(**http),
        "fdroid": FDroidAdapter(**http),
        "apkmirror": ApkMirrorAdapter(email=settings.apkmirror_email, **http),
    }
    models = {"google_play": GooglePlayApp, "fdroid": FDroidApp, "apkmirror": ApkMirrorApp}

    services = Services(settings=settings, engine=engine, session_factory=session_factory)
    for name in METADATA_PROVIDERS:
        services.workers[name] = ProviderWorker(
            name,
            adapters[name],
            CacheStore(models[name], session_factory, ttl_seconds=settings.cache_ttl_seconds),
            WorkerPolicy.from_settings(name, settings),
            limiters[name],
        )

    services.apkmirror_uploads = ApkMirrorUploadQueue.from_settings(
        adapters["apkmirror"], settings, limiter=limiters["apkmirror_upload"], file_source=file_source
    )

    scan_policy = ScanPolicy.from_settings(settings)

    vt_queue = UpsertQueue("virustotal", ScanResultStore(VirusTotalResult, session_factory))
    vt_adapter = VirusTotalAdapter(
        settings.virustotal_api_key,
        retry_after_default=settings.virustotal_rate_limit_backoff,
        **http,
    )
    services.upsert_queues["virustotal"] = vt_queue
    services.virustotal = VirusTotalScanner(
        vt_adapter, vt_queue.store, vt_queue, limiters["virustotal"], scan_policy, file_source=file_source
    )

    ha_queue = UpsertQueue("hybridanalysis", ScanResultStore(HybridAnalysisResult, session_factory))
    ha_adapter = HybridAnalysisAdapter(
        settings.hybridanalysis_api_key,
        retry_after_default=settings.hybridanalysis_rate_limit_backoff,
        **http,
    )
    services.upsert_queues["hybridanalysis"] = ha_queue
    services.hybridanalysis = HybridAnalysisScanner(
        ha_adapter, ha_queue.store, ha_queue, limiters["hybridanalysis"], scan_policy, file_source=file_source
    )

    logger.info("services_built", database=engine.dialect.name)
    return services
