"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Async engine and session factory.

- Builds an AsyncEngine from DATABASE_URL (dotenv aware)
- Hands out AsyncSession objects via a context manager
- Creates the schema for local runs and tests
- Health check

Schema migrations are out of scope; create_all() is used for
SQLite development databases and tests.

============================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storage.models.base import Base


logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./copytrade.db"


def get_database_url() -> str:
    """Get database URL from environment."""
    load_dotenv()
    url = os.getenv("DATABASE_URL")
    if not url:
        logger.warning(f"DATABASE_URL not set, using default: {DEFAULT_DATABASE_URL}")
        return DEFAULT_DATABASE_URL
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


class Database:
    """
    Owns one AsyncEngine and its session factory.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False, pool_size: int = 10):
        self._url = url or get_database_url()
        self._echo = echo
        self._pool_size = pool_size
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> None:
        if self._engine is not None:
            return
        kwargs = {"echo": self._echo, "pool_pre_ping": True}
        if ":memory:" in self._url:
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        elif not self._url.startswith("sqlite"):
            kwargs["pool_size"] = self._pool_size
        self._engine = create_async_engine(self._url, **kwargs)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info(f"Database engine created for {self._url.split('@')[-1]}")

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database engine disposed")

    def get_engine(self) -> AsyncEngine:
        self.connect()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        self.connect()
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session that rolls back on error. Callers commit explicitly."""
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create missing tables for every model registered on Base."""
        async with self.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> bool:
        try:
            async with self.get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
