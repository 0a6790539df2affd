"""Validation log CRUD operations."""

from typing import List

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coupons.app.db.models import ValidationLog


async def save_validation_logs_bulk(
    session: AsyncSession,
    logs: List[ValidationLog],
    auto_commit: bool = True,
) -> int:
    """Save multiple validation log records in one batch.

    Args:
        session: Database session
        logs: List of ValidationLog objects to save
        auto_commit: Whether to commit the transaction. Set to False
                     if you want to control transaction boundaries manually.

    Returns:
        Number of logs saved
    """
    if not logs:
        return 0

    session.add_all(logs)
    if auto_commit:
        await session.commit()
    return len(logs)


async def get_validation_stats(session: AsyncSession, coupon_code: str) -> dict:
    """Aggregate validation attempts for one coupon code.

    Returns:
        Dict with total_attempts, successful_validations, failed_validations
        and avg/max/min response_time_ms (None when there are no attempts)
    """
    result = await session.execute(
        select(
            func.count(ValidationLog.id).label("total_attempts"),
            func.coalesce(
                func.sum(case((ValidationLog.is_valid.is_(True), 1), else_=0)), 0
            ).label("successful_validations"),
            func.coalesce(
                func.sum(case((ValidationLog.is_valid.is_(True), 0), else_=1)), 0
            ).label("failed_validations"),
            func.avg(ValidationLog.response_time_ms).label("avg_response_time_ms"),
            func.max(ValidationLog.response_time_ms).label("max_response_time_ms"),
            func.min(ValidationLog.response_time_ms).label("min_response_time_ms"),
        ).where(ValidationLog.coupon_code == coupon_code)
    )
    row = result.mappings().one()
    stats = dict(row)
    if stats["avg_response_time_ms"] is not None:
        stats["avg_response_time_ms"] = float(stats["avg_response_time_ms"])
    return stats


async def get_recent_validation_logs(
    session: AsyncSession,
    limit: int = 100,
) -> List[ValidationLog]:
    """Get the most recent validation attempts across all coupons."""
    result = await session.execute(
        select(ValidationLog)
        .order_by(ValidationLog.validated_at.desc(), ValidationLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
