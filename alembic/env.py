"""Migrations for the distributor's ledger schema.

The target database is resolved exactly as the service resolves it: the
``DATABASE_URL`` setting (environment or ``.env``) read through
``reward_distributor.config``. ``alembic -x url=... upgrade head`` points a
single run somewhere else.
"""

from __future__ import annotations

import asyncio
import logging

from alembic import context
from sqlalchemy import Connection, pool

from reward_distributor.config import get_settings
from reward_distributor.storage.database import create_async_db_engine
from reward_distributor.storage.models import Base

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def database_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("url")
    return override or get_settings().database.url


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    # SQLite cannot ALTER most constraints in place.
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_db_engine(database_url(), poolclass=pool.NullPool)
    logger.info("Migrating %s", engine.url.render_as_string(hide_password=True))
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.config.attributes.get("connection") is not None:
    _migrate(context.config.attributes["connection"])
elif context.is_offline_mode():
    run_migrations_offline()
else:
    logging.basicConfig(level=get_settings().get_logging_level(), format="%(levelname)s %(name)s: %(message)s")
    asyncio.run(run_migrations_online())
