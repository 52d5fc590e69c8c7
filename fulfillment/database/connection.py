"""
Database Connection Management

Async connection pool with SQLAlchemy 2.0, owned by an explicitly
constructed `Database` object that callers pass to each component.
Implements transactional sessions, health checks, and graceful shutdown.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import NullPool

from fulfillment.config.logging import get_logger
from fulfillment.config.settings import DatabaseSettings
from fulfillment.database.models import Base
from fulfillment.errors import ConcurrentModificationError

logger = get_logger(__name__)

# SQLSTATEs for serialization failure, deadlock, lock not available
_PG_CONFLICT_CODES = {"40001", "40P01", "55P03"}


def is_lock_conflict(exc: DBAPIError) -> bool:
    """True when the driver reports a lock conflict rather than a real fault"""
    code = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if code in _PG_CONFLICT_CODES:
        return True
    return isinstance(exc, OperationalError) and "database is locked" in str(exc.orig)


class Database:
    """
    Owner of the async engine and session factory.

    Example:
        database = Database.from_settings(get_settings().database)
        await database.connect()
        async with database.transaction() as session:
            ...
        await database.dispose()
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 20,
        max_overflow: int = 10,
        pool_timeout: int = 30,
    ):
        self.url = url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        return cls(
            settings.async_url,
            echo=settings.echo,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def connect(self) -> AsyncEngine:
        """
        Create the engine and verify connectivity.

        Returns:
            AsyncEngine: The initialized database engine
        """
        if self._engine is not None:
            logger.warning("Database already initialized")
            return self._engine

        engine_config = {
            "echo": self.echo,
            "pool_pre_ping": True,
        }

        if self.is_sqlite:
            # One connection per session so concurrent writers contend on the file lock
            engine_config.update({
                "poolclass": NullPool,
                "connect_args": {"timeout": 15},
            })
        else:
            engine_config.update({
                "pool_size": self.pool_size,
                "max_overflow": self.max_overflow,
                "pool_timeout": self.pool_timeout,
            })

        self._engine = create_async_engine(self.url, **engine_config)

        if self.is_sqlite:
            @event.listens_for(self._engine.sync_engine, "connect")
            def _enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection established", dialect=self._engine.dialect.name)
        except Exception as e:
            logger.error("Failed to connect to database", error=str(e))
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            raise

        return self._engine

    async def dispose(self) -> None:
        """Gracefully close all pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection pool closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    @property
    def engine(self) -> AsyncEngine:
        """
        Get the database engine.

        Raises:
            RuntimeError: If database is not connected
        """
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._engine

    async def create_all(self) -> None:
        """Create all tables (tests and local development)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Read-only style session; nothing is committed."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        session = self._session_factory()
        try:
            yield session
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session bound to one transaction.

        Commits when the block exits cleanly and rolls back on any exception,
        task cancellation included. Lost-update and lock-timeout failures
        surface as ConcurrentModificationError.

        Example:
            async with database.transaction() as session:
                session.add(order)
        """
        if self._session_factory is None:
            logger.error("Database not initialized when transaction() called")
            raise RuntimeError("Database not initialized. Call connect() first.")

        session = self._session_factory()
        try:
            async with session.begin():
                yield session
        except StaleDataError as e:
            logger.warning("Optimistic lock conflict, rolled back", error=str(e))
            raise ConcurrentModificationError(str(e)) from e
        except DBAPIError as e:
            if is_lock_conflict(e):
                logger.warning("Lock conflict, rolled back", error=str(e.orig))
                raise ConcurrentModificationError(str(e.orig)) from e
            logger.error("Database transaction error, rolled back", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            await asyncio.shield(session.close())

    async def health(self) -> dict:
        """
        Check database health status.

        Returns:
            dict: Health status with latency information
        """
        try:
            start = time.perf_counter()
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
            latency_ms = (time.perf_counter() - start) * 1000

            return {
                "status": "healthy",
                "latency_ms": round(latency_ms, 2),
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e),
            }
