"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from pathlib import Path
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .exceptions import DatabaseError
from .logging import get_logger

logger = get_logger(__name__)


class Database:
    """Owns the async engine and session factory for one database URL."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        """Create the engine and session maker."""
        logger.info("Initializing database connection", url=self._safe_url())

        url = make_url(self.database_url)
        engine_kwargs = {"echo": self.echo}
        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True, pool_recycle=3600)

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        logger.info("Database connection initialized")

    async def close(self) -> None:
        """Dispose of the engine."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with commit/rollback handling.

        Usage:
            async with database.session() as session:
                ...
        """
        if not self.session_maker:
            raise DatabaseError("Database not initialized. Call init() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create all keeper tables."""
        from miko_keeper.models.base import Base

        if not self.engine:
            raise DatabaseError("Database not initialized")

        logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def _safe_url(self) -> str:
        return make_url(self.database_url).render_as_string(hide_password=True)
