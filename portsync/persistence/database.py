"""
Async database engine and session management.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portsync.config.settings import DatabaseSettings, get_database_settings
from portsync.logging import get_logger
from portsync.persistence.models import Base

logger = get_logger(__name__)


class DatabaseManager:
    """Owns the async engine and session factory for the snapshot store."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        settings: DatabaseSettings = get_database_settings()
        self.url = url or settings.url
        self._ensure_sqlite_directory(self.url)

        self._engine = create_async_engine(
            self.url,
            echo=settings.echo if echo is None else echo,
            pool_pre_ping=True,
        )
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.debug(f"Database engine created for {make_url(self.url).render_as_string(hide_password=True)}")

    @staticmethod
    def _ensure_sqlite_directory(url: str) -> None:
        parsed = make_url(url)
        if parsed.get_backend_name() != "sqlite" or not parsed.database:
            return
        if parsed.database == ":memory:":
            return
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Snapshot store schema ready")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Usage:
            async with db.get_session() as session:
                result = await session.execute(query)
        """
        async with self._session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self._engine.dispose()
        logger.debug("Database engine closed")
