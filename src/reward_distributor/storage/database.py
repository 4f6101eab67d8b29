"""Database connection and session management.

This module provides the async engine, session factory, and transactional
session context used by every repository.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reward_distributor.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        logger.warning(
            "Database URL uses sync dialect 'postgresql://'; using async driver 'postgresql+asyncpg://'."
        )
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine.

    Args:
        database_url: Database connection URL (e.g., postgresql+asyncpg://...).
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.
    """
    return create_async_engine(_normalize_async_database_url(database_url), **kwargs)


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an asynchronous session factory.

    Args:
        engine: SQLAlchemy AsyncEngine instance.

    Returns:
        Async session factory.
    """
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Initialize the database schema asynchronously.

    Creates all tables defined in the models.

    Args:
        engine: SQLAlchemy AsyncEngine instance.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized (async)")


class DatabaseManager:
    """Manages database connections and sessions.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///./rewards.db")
        await db.init_schema_async()

        async with db.get_async_session() as session:
            prep = await PrepRepository(session).get(cycle_id)
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    def _get_async_engine(self) -> AsyncEngine:
        """Get or create the asynchronous engine."""
        if self._async_engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo}
            if not _is_sqlite(self.database_url):
                kwargs["pool_size"] = self._pool_size
                kwargs["max_overflow"] = self._max_overflow
                kwargs["pool_pre_ping"] = True
            self._async_engine = create_async_db_engine(self.database_url, **kwargs)
        return self._async_engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous session as a context manager.

        Commits when the block exits normally and rolls back on error.

        Yields:
            SQLAlchemy AsyncSession instance.
        """
        if self._async_session_factory is None:
            self._async_session_factory = create_async_session_factory(self._get_async_engine())

        session = self._async_session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Initialize database schema asynchronously."""
        await init_async_db(self._get_async_engine())

    async def dispose_async(self) -> None:
        """Dispose of all async database connections."""
        if self._async_engine is not None:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
        logger.info("Async database connections disposed")
