import contextlib
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from artscout.main.config import Settings
from artscout.main.exceptions import NotReadyException
from artscout.main.logging import get_logger

logger = get_logger(__name__)


class DatabaseSessionManager:
    """Engine and sessions for the execution history and job metrics tables.

    The database is optional: a worker without Postgres settings never
    initializes the manager and keeps history and metrics out of storage.
    """

    def __init__(self):
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def initialized(self) -> bool:
        return self._sessionmaker is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise NotReadyException("Database session manager is not initialized")
        return self._engine

    def init(self, url: str, pool_size: int = 10, max_overflow: int = 5):
        if self._engine is not None:
            logger.debug("Database already initialized, skipping reinitialization")
            return

        self._engine = create_async_engine(
            url, pool_size=pool_size, max_overflow=max_overflow
        )
        self._sessionmaker = async_sessionmaker(
            autocommit=False,
            bind=self._engine,
            autobegin=False,
        )
        logger.debug(
            "Database engine created",
            extra={"pool_size": pool_size, "max_overflow": max_overflow},
        )

    def init_from_settings(self, settings: Settings) -> bool:
        """Initialize from the Postgres settings; False when none are configured."""
        if not settings.database_url:
            return False
        self.init(
            settings.database_url,
            pool_size=settings.postgres_pool_size,
            max_overflow=settings.postgres_max_overflow,
        )
        return True

    async def close(self):
        if self._engine is None:
            logger.debug("DatabaseSessionManager already closed or not initialized")
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.debug("DatabaseSessionManager closed")

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise NotReadyException("Database session manager is not initialized")

        session = self._sessionmaker()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """A session inside one transaction, committed when the block exits."""
        async with self.session() as session, session.begin():
            yield session


sessionmanager = DatabaseSessionManager()
