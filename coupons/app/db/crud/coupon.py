"""Coupon CRUD operations."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coupons.app.db.models import Coupon, CouponPolicy, CouponStatus


async def get_coupon_by_code(session: AsyncSession, code: str) -> Optional[Coupon]:
    """Look up a coupon by its code.

    Served by the (code, status, policy) index; cost does not grow with the
    number of stored coupons.
    """
    result = await session.execute(select(Coupon).where(Coupon.code == code))
    return result.scalar_one_or_none()


async def get_coupon_by_id(session: AsyncSession, coupon_id: str) -> Optional[Coupon]:
    result = await session.execute(select(Coupon).where(Coupon.id == coupon_id))
    return result.scalar_one_or_none()


async def create_coupon(
    session: AsyncSession,
    coupon: Coupon,
    auto_commit: bool = True,
) -> Coupon:
    """Persist a new coupon.

    Args:
        session: Database session
        coupon: Fully populated Coupon instance
        auto_commit: Whether to commit the transaction. Set to False
                     if you want to control transaction boundaries manually.

    Returns:
        The saved Coupon object

    Raises:
        IntegrityError: If the code already exists or the policy terms
            violate the table constraints.
    """
    session.add(coupon)
    await session.flush()
    if auto_commit:
        await session.commit()
        await session.refresh(coupon)
    return coupon


async def list_coupons_by_user(session: AsyncSession, user_id: str) -> List[Coupon]:
    """Get the active coupons bound to a user, newest first."""
    result = await session.execute(
        select(Coupon)
        .where(
            Coupon.user_id == user_id,
            Coupon.status == CouponStatus.ACTIVE.value,
        )
        .order_by(Coupon.created_at.desc())
    )
    return list(result.scalars().all())


async def list_active_shared_window_coupons(
    session: AsyncSession,
    now: datetime,
) -> List[Coupon]:
    """Get shared-window coupons that are active and inside their window."""
    result = await session.execute(
        select(Coupon)
        .where(
            Coupon.policy == CouponPolicy.SHARED_WINDOW.value,
            Coupon.status == CouponStatus.ACTIVE.value,
            Coupon.valid_from <= now,
            Coupon.valid_until > now,
        )
        .order_by(Coupon.created_at.desc())
    )
    return list(result.scalars().all())


async def transition_coupon_status(
    session: AsyncSession,
    coupon_id: str,
    new_status: CouponStatus,
    auto_commit: bool = True,
) -> bool:
    """Move an active coupon to another state.

    Transitions only ever leave `active`; a coupon already in another state
    is left untouched so no state is revived or overwritten.

    Returns:
        True if the coupon changed state
    """
    result = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.status == CouponStatus.ACTIVE.value,
        )
        .values(status=new_status.value)
        .execution_options(synchronize_session=False)
    )
    if auto_commit:
        await session.commit()
    return result.rowcount == 1
