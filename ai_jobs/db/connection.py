"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from ai_jobs.config import get_settings
from ai_jobs.db.models import Base
from ai_jobs.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class Database:
    """
    Owns one async engine and its session factory.

    PostgreSQL URLs get a sized connection pool; SQLite URLs (tests, local
    development) run with NullPool.
    """

    def __init__(self, database_url: str | None = None, echo: bool | None = None):
        settings = get_settings()
        self.database_url = database_url or settings.database_url
        if echo is None:
            echo = settings.log_level == "DEBUG"

        if self.database_url.startswith("sqlite"):
            self.engine: AsyncEngine = create_async_engine(
                self.database_url,
                poolclass=NullPool,
                echo=echo,
            )
        else:
            self.engine = create_async_engine(
                self.database_url,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                echo=echo,
                pool_pre_ping=True,
            )
        self.sessionmaker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def connect(self) -> None:
        """
        Verify the database is reachable.

        Raises:
            StoreUnavailable: If a connection cannot be established.
        """
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailable("registry", str(e)) from e
        logger.info("Database connection initialized")

    async def create_all(self) -> None:
        """Create missing tables. Production schemas are managed by alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """Check connectivity without raising."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, OSError):
            return False
        return True

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a transactional session.

        Commits on clean exit, rolls back and re-raises otherwise.
        """
        async with self.sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
