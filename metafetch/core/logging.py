"""Logging for metafetch workers and scanners, built on structlog.

Every fetch worker, scan batch and upsert queue runs on its own thread, so
log lines carry the thread name plus the provider and package being worked
on. Credentials handed to adapters (API keys, the APKMirror email) are
masked before rendering. JSON in production, console output with ``debug``.
"""

import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

from metafetch.config import Settings, get_settings

# ── Context variables (bound per worker thread / per package) ────────

provider_var: ContextVar[str | None] = ContextVar("provider", default=None)
package_id_var: ContextVar[str | None] = ContextVar("package_id", default=None)

REDACTED = "***"
# substrings of event keys whose values never reach the output
_SECRET_KEY_PARTS = ("api_key", "apikey", "password", "secret", "token", "cookie", "email")


def _inject_context_vars(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Add provider and package_id unless the call site passed its own."""
    for var, key in [
        (provider_var, "provider"),
        (package_id_var, "package_id"),
    ]:
        val = var.get(None)
        if val is not None:
            event_dict.setdefault(key, val)
    return event_dict


def _add_thread_name(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("thread", threading.current_thread().name)
    return event_dict


def _redact_secrets(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Mask values of credential-looking keys, including inside header dicts."""
    for key, value in list(event_dict.items()):
        if _is_secret_key(key):
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {k: REDACTED if _is_secret_key(k) else v for k, v in value.items()}
    return event_dict


def _is_secret_key(key: object) -> bool:
    if not isinstance(key, str):
        return False
    lowered = key.lower().replace("-", "_")
    return any(part in lowered for part in _SECRET_KEY_PARTS)


@contextmanager
def bound_package(package_id: str) -> Iterator[None]:
    """Bind package_id for every log line emitted inside the block."""
    token = package_id_var.set(package_id)
    try:
        yield
    finally:
        package_id_var.reset(token)


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger. Call once per process."""
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        _add_thread_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_secrets,
    ]

    if settings.debug:
        renderers: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer()]
    else:
        # worker crashes are logged with exc_info; JSON needs them as text
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *renderers,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # httpx logs every request URL at INFO
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "alembic.runtime.migration"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
