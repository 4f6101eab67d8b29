"""Tests for the Alembic migrations."""

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import Connection, inspect

from reward_distributor.storage.database import DatabaseManager, create_async_db_engine
from reward_distributor.storage.models import Base
from reward_distributor.storage.repos import PrepDTO, PrepRepository

ROOT = Path(__file__).resolve().parents[2]


def run_alembic(connection: Connection, action: str, revision: str) -> set[str]:
    config = Config(str(ROOT / "alembic.ini"))
    config.attributes["connection"] = connection
    getattr(command, action)(config, revision)
    return set(inspect(connection).get_table_names())


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"


@pytest.mark.asyncio
async def test_upgrade_creates_model_tables(database_url: str) -> None:
    engine = create_async_db_engine(database_url)
    async with engine.begin() as conn:
        tables = await conn.run_sync(run_alembic, "upgrade", "head")
    await engine.dispose()

    assert set(Base.metadata.tables) <= tables
    assert "alembic_version" in tables

    db = DatabaseManager(database_url)
    async with db.get_async_session() as session:
        created = await PrepRepository(session).create(
            PrepDTO(cycle_id=1_800_000_000_000, status="ok", step="complete", acquired_reward_raw=95_000_000)
        )
    async with db.get_async_session() as session:
        stored = await PrepRepository(session).get(1_800_000_000_000)
    await db.dispose_async()

    assert created
    assert stored is not None
    assert stored.acquired_reward_raw == 95_000_000


@pytest.mark.asyncio
async def test_downgrade_drops_everything(database_url: str) -> None:
    engine = create_async_db_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(run_alembic, "upgrade", "head")
    async with engine.begin() as conn:
        tables = await conn.run_sync(run_alembic, "downgrade", "base")
    await engine.dispose()

    assert tables == {"alembic_version"}
