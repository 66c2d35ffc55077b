"""
Async SQLAlchemy engine for the element view and the suggestion ledger

One DatabaseSessionManager per orchestrator. The engine is created on the
first session (unless DB_LAZY_INIT is off, in which case init() must be
awaited at startup) and disposed by close(). A closed manager can be
initialized again.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from packages.common.config import Settings, get_settings

logger = structlog.get_logger()


def to_async_url(database_url: str) -> str:
    """postgresql:// → postgresql+asyncpg://; URLs that already name a driver pass through"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseSessionManager:
    """
    Owns the engine and hands out commit-on-success sessions.

    Usage:
        manager = DatabaseSessionManager(settings)
        source = SqlElementSource(manager.session)
        ...
        await manager.close()
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None
        self._init_lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def initialized(self) -> bool:
        return self._sessionmaker is not None

    async def init(self, database_url: Optional[str] = None) -> None:
        """Create the engine. Concurrent first callers share one engine."""
        if self.initialized:
            return

        async with self._init_lock:
            if self.initialized:
                return

            settings = self.settings
            url = to_async_url(database_url or settings.database_url)
            self._engine = create_async_engine(
                url,
                echo=settings.sql_echo,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_recycle=settings.db_pool_recycle_seconds,
                pool_pre_ping=True,
            )
            self._sessionmaker = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

            logger.info("database_engine_created",
                        url=make_url(url).render_as_string(hide_password=True),
                        pool_size=settings.db_pool_size,
                        max_overflow=settings.db_max_overflow)

    async def close(self) -> None:
        """Dispose the connection pool. Safe to call when never initialized."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("database_engine_disposed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session that commits when the block succeeds and rolls back when it raises.

        Raises:
            RuntimeError: Not initialized and DB_LAZY_INIT is off
        """
        if not self.initialized:
            if not self.settings.db_lazy_init:
                raise RuntimeError(
                    "Database lazy init disabled and session manager not initialized. "
                    "Await DatabaseSessionManager.init() at startup."
                )
            await self.init()

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
