"""Cache maintenance — purge garbage rows and flush whole provider tables."""

from __future__ import annotations

from metafetch.core.logging import get_logger
from metafetch.schemas.hybridanalysis import NOT_FOUND_STATE
from metafetch.services.container import Services

logger = get_logger(__name__)


def invalidate_cache(services: Services) -> dict[str, int]:
    """Delete rows that should be fetched again.

    - APKMirror placeholder rows whose title is just the package id
    - negative rows past the TTL in every metadata table
    - Hybrid Analysis rows in the terminal ``not_found`` state
    """
    deleted: dict[str, int] = {}

    apkmirror = services.apkmirror.cache
    deleted["apkmirror_placeholders"] = apkmirror.delete_where(
        apkmirror.model.title == apkmirror.model.package_id
    )
    for name, worker in services.workers.items():
        deleted[f"{name}_not_found"] = worker.cache.purge_negative()

    if services.hybridanalysis is not None:
        store = services.hybridanalysis.results_store
        deleted["hybridanalysis_not_found"] = store.delete_where(store.model.state == NOT_FOUND_STATE)

    logger.info("cache_invalidated", **deleted)
    return deleted


def flush_google_play(services: Services) -> int:
    return services.google_play.cache.flush()


def flush_fdroid(services: Services) -> int:
    return services.fdroid.cache.flush()


def flush_apkmirror(services: Services) -> int:
    return services.apkmirror.cache.flush()


def flush_virustotal(services: Services) -> int:
    return services.upsert_queues["virustotal"].store.flush()


def flush_hybridanalysis(services: Services) -> int:
    return services.upsert_queues["hybridanalysis"].store.flush()
