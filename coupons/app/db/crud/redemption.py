"""Redemption ledger CRUD operations."""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import and_, case, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from coupons.app.db.models import (
    USAGE_VIEW_NAME,
    Coupon,
    CouponPolicy,
    CouponRedemption,
    CouponStatus,
)


async def is_order_redeemed(session: AsyncSession, order_id: str) -> bool:
    """Check whether any coupon was already redeemed for an order."""
    result = await session.execute(
        select(CouponRedemption.id).where(CouponRedemption.order_id == order_id).limit(1)
    )
    return result.first() is not None


async def count_user_redemptions(
    session: AsyncSession,
    coupon_id: str,
    user_id: str,
) -> int:
    """Count a user's redemptions of one coupon."""
    result = await session.execute(
        select(func.count(CouponRedemption.id)).where(
            CouponRedemption.coupon_id == coupon_id,
            CouponRedemption.user_id == user_id,
        )
    )
    return int(result.scalar_one())


async def record_redemption(
    session: AsyncSession,
    redemption: CouponRedemption,
) -> bool:
    """Insert a ledger row and advance the coupon counter in one unit.

    The caller owns the transaction: nothing is committed here, so a False
    return or an IntegrityError must be followed by a rollback.

    The ledger row is flushed first so a concurrent attempt on the same
    order id fails on the unique index before it touches the counter. The
    coupon row is then locked and the counter update is guarded by the
    coupon still being active, below its aggregate cap, within the
    per-user cap counting the row just inserted and, for single-user
    coupons, unused. Reaching the aggregate cap flips the status to
    exhausted in the same statement.

    Args:
        session: Database session inside an open transaction
        redemption: Ledger row to insert

    Returns:
        True if the coupon accepted the redemption, False if the guarded
        update matched no row (the transaction must be rolled back).

    Raises:
        IntegrityError: If the order id was already redeemed.
    """
    session.add(redemption)
    await session.flush()

    # Serializes attempts on one coupon so the per-user count below sees
    # every committed row (no-op on SQLite, which locks on BEGIN IMMEDIATE).
    await session.execute(
        select(Coupon.id).where(Coupon.id == redemption.coupon_id).with_for_update()
    )
    user_uses = (
        select(func.count(CouponRedemption.id))
        .where(
            CouponRedemption.coupon_id == redemption.coupon_id,
            CouponRedemption.user_id == redemption.user_id,
        )
        .scalar_subquery()
    )

    next_uses = Coupon.current_total_uses + 1
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == redemption.coupon_id,
            Coupon.status == CouponStatus.ACTIVE.value,
            or_(
                Coupon.max_total_uses.is_(None),
                Coupon.current_total_uses < Coupon.max_total_uses,
            ),
            or_(
                Coupon.max_uses_per_user.is_(None),
                user_uses <= Coupon.max_uses_per_user,
            ),
            or_(
                Coupon.policy != CouponPolicy.SINGLE_USER.value,
                Coupon.current_total_uses == 0,
            ),
        )
        .values(
            current_total_uses=next_uses,
            status=case(
                (
                    and_(
                        Coupon.max_total_uses.is_not(None),
                        next_uses >= Coupon.max_total_uses,
                    ),
                    CouponStatus.EXHAUSTED.value,
                ),
                else_=Coupon.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_redemptions_by_coupon(
    session: AsyncSession,
    coupon_id: str,
) -> List[CouponRedemption]:
    """Get the redemption history of a coupon, newest first."""
    result = await session.execute(
        select(CouponRedemption)
        .where(CouponRedemption.coupon_id == coupon_id)
        .order_by(CouponRedemption.redeemed_at.desc())
    )
    return list(result.scalars().all())


async def list_redemptions_by_user(
    session: AsyncSession,
    user_id: str,
) -> List[CouponRedemption]:
    """Get the redemption history of a user, newest first."""
    result = await session.execute(
        select(CouponRedemption)
        .where(CouponRedemption.user_id == user_id)
        .order_by(CouponRedemption.redeemed_at.desc())
    )
    return list(result.scalars().all())


async def get_usage_reconciliation(
    session: AsyncSession,
    mismatched_only: bool = False,
    code: Optional[str] = None,
) -> List[dict]:
    """Read declared vs. actual usage per coupon from the usage view.

    Args:
        session: Database session
        mismatched_only: Only return coupons whose counter disagrees with
            the number of ledger rows
        code: Restrict to a single coupon code

    Returns:
        List of row dicts with coupon_id, code, policy, status,
        max_total_uses, current_total_uses and actual_usage_count
    """
    clauses = []
    params: dict = {}
    if mismatched_only:
        clauses.append("current_total_uses != actual_usage_count")
    if code is not None:
        clauses.append("code = :code")
        params["code"] = code
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"SELECT * FROM {USAGE_VIEW_NAME}{where} ORDER BY code"), params
    )
    return [dict(row) for row in result.mappings().all()]
