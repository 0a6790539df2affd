"""Async database session management for SQLAlchemy 2.0+.

This module provides async database operations using PostgreSQL with asyncpg,
or file-backed SQLite with aiosqlite for local runs and tests.
"""

from functools import lru_cache

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from coupons.app.core.config import settings
from coupons.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _enable_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    With pysqlite's deferred BEGIN, two sessions that both read and then
    write deadlock on the lock upgrade and one fails with "database is
    locked". BEGIN IMMEDIATE makes them queue on the busy timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_async_engine(url: str) -> AsyncEngine:
    """Create an async engine for ``url`` with pool settings for its dialect.

    Args:
        url: SQLAlchemy database URL (postgresql+asyncpg or sqlite+aiosqlite)

    Returns:
        AsyncEngine instance
    """
    if "sqlite" in url.lower():
        pool_args = {}
        if ":memory:" not in url:
            pool_args = {
                "pool_size": settings.db_sqlite_pool_size,
                "max_overflow": settings.db_sqlite_max_overflow,
            }
        engine = create_async_engine(url, echo=False, **pool_args)
        _enable_immediate_transactions(engine)
        logger.info(f"Created SQLite async engine ({url})")
        return engine

    engine = create_async_engine(
        url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        connect_args={"command_timeout": settings.db_command_timeout},
    )
    logger.info(
        f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
        f"max_overflow={settings.db_max_overflow}, "
        f"pool_timeout={settings.db_pool_timeout}s)"
    )
    return engine


@lru_cache(maxsize=1)
def get_async_engine() -> AsyncEngine:
    """Get or create the application-wide async engine."""
    return build_async_engine(settings.database_url)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session maker used by every store call: no autoflush, no expiry."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session maker bound to the application engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = build_session_maker(get_async_engine())
    return _AsyncSessionLocal


async def get_pool_status() -> dict:
    """Get current connection pool status for monitoring."""
    pool = get_async_engine().pool
    status = {"class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        reader = getattr(pool, name, None)
        if callable(reader):
            status[name] = reader()
    return status


async def close_async_engine() -> None:
    """Close the async engine.

    Call this on application shutdown to release database connections.
    """
    global _AsyncSessionLocal

    engine = get_async_engine()
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch: the connections are already gone.
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    get_async_engine.cache_clear()
    _AsyncSessionLocal = None

