"""Database initialization utilities."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from coupons.app.core.logging import get_logger
from coupons.app.db.async_session import get_async_engine
from coupons.app.db.base import Base
from coupons.app.db.models import USAGE_VIEW_NAME

logger = get_logger(__name__)

_USAGE_VIEW_SELECT = """
SELECT
    c.id AS coupon_id,
    c.code AS code,
    c.policy AS policy,
    c.status AS status,
    c.max_total_uses AS max_total_uses,
    c.current_total_uses AS current_total_uses,
    COUNT(r.id) AS actual_usage_count
FROM coupons c
LEFT JOIN coupon_redemptions r ON r.coupon_id = c.id
GROUP BY c.id, c.code, c.policy, c.status, c.max_total_uses, c.current_total_uses
"""


async def ensure_usage_view(engine: AsyncEngine | None = None) -> None:
    """Create the per-coupon declared-vs-actual usage view.

    `create_all()` only knows about tables, so the reconciliation view is
    created here with dialect-specific DDL.
    """
    if engine is None:
        engine = get_async_engine()

    dialect = engine.dialect.name

    async with engine.begin() as conn:
        if dialect == "postgresql":
            await conn.execute(
                text(f"CREATE OR REPLACE VIEW {USAGE_VIEW_NAME} AS {_USAGE_VIEW_SELECT}")
            )
            return

        if dialect == "sqlite":
            await conn.execute(
                text(f"CREATE VIEW IF NOT EXISTS {USAGE_VIEW_NAME} AS {_USAGE_VIEW_SELECT}")
            )
            return

        logger.warning(f"Usage view not created: unsupported dialect {dialect}")


async def drop_all_tables(engine: AsyncEngine | None = None) -> None:
    """Drop the usage view and all database tables.

    WARNING: This will delete all data. Use only in development.
    """
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.execute(text(f"DROP VIEW IF EXISTS {USAGE_VIEW_NAME}"))
        await conn.run_sync(Base.metadata.drop_all)


async def create_all_tables(engine: AsyncEngine | None = None) -> None:
    """Create all database tables and the usage view."""
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await ensure_usage_view(engine)


async def init_database(drop_first: bool = False, engine: AsyncEngine | None = None) -> None:
    """Initialize database with all tables.

    Args:
        drop_first: If True, drop existing tables before creating.
        engine: Engine to initialize; defaults to the application engine.
    """
    if drop_first:
        await drop_all_tables(engine)
    await create_all_tables(engine)


async def verify_connection(engine: AsyncEngine | None = None) -> bool:
    """Verify database connection is working.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        if engine is None:
            engine = get_async_engine()
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
