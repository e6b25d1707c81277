"""Alembic environment for the metafetch cache database.

``init_db`` hands its open connection over through ``config.attributes`` so
migrations run on the same engine (and SQLite pragmas) as the workers. The
``alembic`` CLI falls back to ``sqlalchemy.url`` from alembic.ini, or to
``DATABASE_URL`` from the settings.
"""

from alembic import context
from sqlalchemy import Connection

import metafetch.models  # noqa: F401  (registers tables)
from metafetch.config import get_settings
from metafetch.database import Base, build_engine

config = context.config
target_metadata = Base.metadata


def _run(connection: Connection) -> None:
    # SQLite cannot ALTER most constraints in place
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url") or get_settings().database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")
    if connection is not None:
        _run(connection)
        return

    engine = build_engine(config.get_main_option("sqlalchemy.url") or None)
    try:
        with engine.begin() as conn:
            _run(conn)
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
