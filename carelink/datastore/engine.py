"""
Database engine configuration and management
Async SQLAlchemy engine over SQLite (aiosqlite)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from carelink.datastore.models import Base


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    async def init(self) -> None:
        """Create the engine and the table structure"""
        if self._engine is not None:
            return

        kwargs = {}
        if ":memory:" in self.url:
            # One shared connection, otherwise every session sees an empty DB
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}

        self._engine = create_async_engine(
            self.url,
            echo=self.echo,
            **kwargs,
        )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.debug(f"Database initialized: {self.url}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits on success and rolls back on error"""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Dispose of the engine"""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
