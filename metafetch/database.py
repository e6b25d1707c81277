"""Database setup — SQLAlchemy engine, session factory and declarative base.

Workers and scanners run on plain OS threads, so this is the synchronous
SQLAlchemy API: every call site opens a short-lived ``Session`` from the
factory and commits before returning.
"""

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from metafetch.config import get_settings
from metafetch.core.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for every cache table."""


def _install_sqlite_pragmas(engine: Engine, busy_timeout_ms: int) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.execute("PRAGMA synchronous=NORMAL")
        finally:
            cursor.close()


def build_engine(url: str | None = None, *, busy_timeout_ms: int | None = None) -> Engine:
    """Create the engine. SQLite connections get WAL mode and a busy timeout."""
    settings = get_settings()
    url = url or settings.database_url
    if busy_timeout_ms is None:
        busy_timeout_ms = settings.db_busy_timeout_ms

    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    if is_sqlite:
        _install_sqlite_pragmas(engine, busy_timeout_ms)

    logger.debug("db_engine_created", dialect=engine.dialect.name)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory whose rows stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def migration_config() -> Config:
    """Alembic config pointing at the bundled migrations, independent of the cwd."""
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    return cfg


def init_db(engine: Engine, revision: str = "head") -> None:
    """Bring the schema up to ``revision`` by running the Alembic migrations."""
    cfg = migration_config()
    with engine.begin() as connection:
        cfg.attributes["connection"] = connection
        command.upgrade(cfg, revision)
    logger.info("db_initialized", revision=revision)
