"""
PostgreSQL async connection management using SQLAlchemy 2.0.

Engines are kept per event loop: the request loop and the background usage
queue's loop each get their own pool, since asyncpg connections cannot cross
loops.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

load_dotenv()

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Database configuration from environment variables."""

    def __init__(self):
        # Set to false to skip all DB operations (sessions yield None)
        self.enabled = os.getenv("DATABASE_ENABLED", "true").lower() == "true"

        self.db_name = os.getenv("DATABASE_NAME", "tierguard")
        self.db_user = os.getenv("DATABASE_USER", "postgres")
        self.db_password = os.getenv("DATABASE_PASSWORD", "")
        self.db_host = os.getenv("DATABASE_HOST", "localhost")
        self.db_port = int(os.getenv("DATABASE_PORT", "5432"))

        # Connection pool settings
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))  # 30 min

        self.database_url = os.getenv(
            "DATABASE_URL",
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

        self.echo_sql = os.getenv("DB_ECHO", "false").lower() == "true"

    @property
    def safe_url(self) -> str:
        """Database URL with the password masked, for logging."""
        url = self.database_url
        if "@" not in url:
            return url
        head, tail = url.rsplit("@", 1)
        scheme, _, credentials = head.partition("://")
        user = credentials.split(":", 1)[0]
        return f"{scheme}://{user}:****@{tail}"


class DatabaseManager:
    """
    Manages async PostgreSQL engines, one per running event loop.

    Singleton: every module shares the same manager through the module-level
    ``db`` instance.
    """

    _instance: Optional["DatabaseManager"] = None
    _initialized: bool = False

    # Per-loop resources: maps loop_id -> resource
    _engines: Dict[int, AsyncEngine] = {}
    _session_factories: Dict[int, async_sessionmaker] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.config = DatabaseConfig()
        self._initialized = True

    def _get_loop_id(self) -> int:
        """Id of the running event loop, or 0 when called outside one."""
        try:
            return id(asyncio.get_running_loop())
        except RuntimeError:
            return 0

    def _setup_engine_for_loop(self, loop_id: int) -> None:
        """Create engine and session factory for the given loop."""
        if not self.config.enabled or loop_id in self._engines:
            return

        logger.info(f"Creating database engine: {self.config.safe_url}")
        engine = create_async_engine(
            self.config.database_url,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self.config.pool_size,
            max_overflow=self.config.max_overflow,
            pool_timeout=self.config.pool_timeout,
            pool_recycle=self.config.pool_recycle,
            echo=self.config.echo_sql,
        )
        self._engines[loop_id] = engine
        self._session_factories[loop_id] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info(
            f"Database engine initialized for loop {loop_id}: "
            f"pool_size={self.config.pool_size}"
        )

    async def get_engine_async(self) -> Optional[AsyncEngine]:
        """Get the engine for the current loop, creating it if necessary."""
        if not self.config.enabled:
            return None
        loop_id = self._get_loop_id()
        self._setup_engine_for_loop(loop_id)
        return self._engines.get(loop_id)

    async def test_connection(self, timeout: float = 15.0) -> bool:
        """
        Test database connectivity with timeout.

        Args:
            timeout: Maximum time to wait for connection test (seconds)

        Returns:
            True if connection successful (or database disabled), False otherwise
        """
        if not self.config.enabled:
            logger.info("Database disabled - skipping connection test")
            return True

        engine = await self.get_engine_async()
        if not engine:
            logger.warning("No database engine available")
            return False

        try:
            async with asyncio.timeout(timeout):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
        except asyncio.TimeoutError:
            logger.error(f"Database connection test timed out after {timeout}s")
            return False
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[Optional[AsyncSession], None]:
        """
        Get an async session with automatic commit/rollback.

        Yields None if the database is disabled.

        Usage:
            async with db.session() as session:
                if session:
                    result = await session.execute(...)
        """
        if not self.config.enabled:
            yield None
            return

        loop_id = self._get_loop_id()
        self._setup_engine_for_loop(loop_id)

        session = self._session_factories[loop_id]()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def close(self) -> None:
        """Dispose the engine for the CURRENT event loop only."""
        loop_id = self._get_loop_id()

        engine = self._engines.pop(loop_id, None)
        self._session_factories.pop(loop_id, None)
        if engine is not None:
            try:
                await engine.dispose()
            except Exception as e:
                logger.debug(f"Error disposing engine for loop {loop_id}: {e}")
            logger.info(f"Database connections closed for loop {loop_id}")

    def get_pool_stats(self) -> Dict[str, Any]:
        """Connection pool statistics per event loop, for monitoring."""
        stats: Dict[str, Any] = {"pools_count": len(self._engines), "pools": {}}

        for loop_id, engine in self._engines.items():
            try:
                pool = engine.pool
                stats["pools"][str(loop_id)] = {
                    "size": pool.size(),
                    "checked_out": pool.checkedout(),
                    "overflow": pool.overflow(),
                    "checked_in": pool.checkedin(),
                }
            except Exception as e:
                stats["pools"][str(loop_id)] = {"error": str(e)}

        return stats


# Global database manager instance
db = DatabaseManager()


async def get_session() -> AsyncGenerator[Optional[AsyncSession], None]:
    """
    FastAPI dependency yielding a session.

    Usage:
        @app.get("/usage")
        async def usage(session: AsyncSession = Depends(get_session)):
            ...
    """
    async with db.session() as session:
        yield session
