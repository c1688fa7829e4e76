"""
Database initialization and connection management.

One Database object per process, created by the service container: it owns
the async engine and session factory and creates the schema on startup.
"""

from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hybrid_srs.common.logger import app_logger
from hybrid_srs.database.base import Base
import hybrid_srs.database.models  # noqa: F401  registers tables on Base.metadata

logger = app_logger.getChild("database.init_db")


def _engine_options(database_url: str, echo: bool) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # one shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    return options


class Database:
    """Async engine plus session factory."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database engine not initialized. Call initialize() first.")
        return self._engine

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError("Database engine not initialized. Call initialize() first.")
        return self._sessionmaker()

    async def initialize(self, create_schema: bool = True) -> AsyncEngine:
        """
        Create the engine, verify connectivity and create missing tables.

        Args:
            create_schema: Whether to run ``create_all`` on startup

        Returns:
            AsyncEngine instance
        """
        if self._engine is not None:
            return self._engine

        logger.info(f"Initializing database with URL: {self.database_url.split('://')[0]}://...")
        self._engine = create_async_engine(self.database_url, **_engine_options(self.database_url, self.echo))
        self._sessionmaker = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

        try:
            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                if create_schema:
                    await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            await self.close()
            raise

        logger.info("Database engine initialized successfully")
        return self._engine

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database engine closed")
