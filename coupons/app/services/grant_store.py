"""Coupon store gateway.

Every call runs in its own session and carries an upper bound on its
duration. A timeout or a driver/connection failure surfaces as
StoreUnavailableError, never as "coupon not found" and never as a denial.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coupons.app.core.config import settings
from coupons.app.core.logging import get_log_context, get_logger
from coupons.app.db import crud
from coupons.app.db.async_session import get_async_session_maker
from coupons.app.db.models import CouponPolicy, CouponRedemption, CouponStatus, ValidationLog
from coupons.app.exceptions import (
    CouponCodeConflictError,
    DuplicateRedemptionError,
    RedemptionConflictError,
    StoreUnavailableError,
)
from coupons.app.services.models import (
    CommittedRedemption,
    CouponSnapshot,
    DenialReason,
    LedgerEntry,
    RedemptionRecord,
    UsageFacts,
    ValidationLogData,
)

logger = get_logger(__name__)

T = TypeVar("T")

_STATE_REASONS = {
    CouponStatus.EXPIRED.value: DenialReason.EXPIRED.value,
    CouponStatus.INACTIVE.value: DenialReason.INACTIVE.value,
    CouponStatus.EXHAUSTED.value: DenialReason.USAGE_LIMIT_REACHED.value,
}


class GrantStore:
    """Reads and writes coupons, redemptions and validation logs.

    Args:
        session_maker: Factory for sessions bound to the coupon database
        timeout: Upper bound in seconds for each store call
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        timeout: Optional[float] = None,
    ):
        self._session_maker = session_maker
        self._timeout = timeout if timeout is not None else settings.store_timeout_seconds

    async def _run(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(work(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                f"Store call {operation} timed out after {self._timeout}s",
                extra=get_log_context(operation=operation),
            )
            raise StoreUnavailableError(operation) from e
        except IntegrityError:
            raise
        except (OperationalError, InterfaceError, DBAPIError, OSError) as e:
            logger.error(
                f"Store call {operation} failed: {type(e).__name__}: {e}",
                extra=get_log_context(operation=operation),
            )
            raise StoreUnavailableError(operation) from e

    # ---- redemption path ----

    async def fetch_by_code(self, code: str) -> Optional[CouponSnapshot]:
        async def work():
            async with self._session_maker() as session:
                coupon = await crud.get_coupon_by_code(session, code)
                return CouponSnapshot.from_model(coupon) if coupon else None

        return await self._run("fetch_by_code", work)

    async def load_usage_facts(
        self,
        coupon_id: str,
        user_id: str,
        order_id: Optional[str] = None,
    ) -> UsageFacts:
        """Load whether the order id was used anywhere and the user's usage count."""

        async def work():
            async with self._session_maker() as session:
                order_used = False
                if order_id:
                    order_used = await crud.is_order_redeemed(session, order_id)
                count = await crud.count_user_redemptions(session, coupon_id, user_id)
                return UsageFacts(order_already_redeemed=order_used, user_redemption_count=count)

        return await self._run("load_usage_facts", work)

    async def commit_redemption(
        self,
        coupon: CouponSnapshot,
        entry: LedgerEntry,
    ) -> CommittedRedemption:
        """Insert the ledger row and advance the counter in one transaction.

        Returns the ledger row and the coupon re-read after the counter
        update, so callers see the new usage count and status.

        Raises:
            DuplicateRedemptionError: The order id was already redeemed
            RedemptionConflictError: The coupon no longer accepts redemptions
            StoreUnavailableError: The store timed out or is unreachable
        """

        async def work():
            row = CouponRedemption(
                coupon_id=coupon.id,
                user_id=entry.user_id,
                order_id=entry.order_id,
                order_value=entry.order_value,
                discount_applied=entry.discount_applied,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
            )
            async with self._session_maker() as session:
                try:
                    async with session.begin():
                        if not await crud.record_redemption(session, row):
                            reason = await _conflict_reason(session, coupon.id, entry.user_id)
                            raise RedemptionConflictError(coupon.id, reason=reason)
                        updated = await crud.get_coupon_by_id(session, coupon.id)
                        committed = CommittedRedemption(
                            record=RedemptionRecord.from_model(row),
                            coupon=CouponSnapshot.from_model(updated),
                        )
                except IntegrityError as e:
                    raise DuplicateRedemptionError(entry.order_id) from e
            return committed

        return await self._run("commit_redemption", work)

    async def apply_transition(self, coupon_id: str, status: CouponStatus) -> bool:
        """Move an active coupon to `status`; returns False if it was not active."""

        async def work():
            async with self._session_maker() as session:
                return await crud.transition_coupon_status(session, coupon_id, status)

        return await self._run("apply_transition", work)

    # ---- issuance and queries ----

    async def issue(self, coupon: CouponSnapshot) -> CouponSnapshot:
        """Persist a new coupon.

        Raises:
            CouponCodeConflictError: The code is already taken
        """

        async def work():
            async with self._session_maker() as session:
                try:
                    saved = await crud.create_coupon(session, coupon.to_model())
                except IntegrityError as e:
                    await session.rollback()
                    raise CouponCodeConflictError(coupon.code) from e
                return CouponSnapshot.from_model(saved)

        return await self._run("issue", work)

    async def list_by_user(self, user_id: str) -> List[CouponSnapshot]:
        async def work():
            async with self._session_maker() as session:
                rows = await crud.list_coupons_by_user(session, user_id)
                return [CouponSnapshot.from_model(row) for row in rows]

        return await self._run("list_by_user", work)

    async def list_active_windows(self, now: datetime) -> List[CouponSnapshot]:
        async def work():
            async with self._session_maker() as session:
                rows = await crud.list_active_shared_window_coupons(session, now)
                return [CouponSnapshot.from_model(row) for row in rows]

        return await self._run("list_active_windows", work)

    async def redemptions_for_coupon(self, coupon_id: str) -> List[RedemptionRecord]:
        async def work():
            async with self._session_maker() as session:
                rows = await crud.list_redemptions_by_coupon(session, coupon_id)
                return [RedemptionRecord.from_model(row) for row in rows]

        return await self._run("redemptions_for_coupon", work)

    async def redemptions_for_user(self, user_id: str) -> List[RedemptionRecord]:
        async def work():
            async with self._session_maker() as session:
                rows = await crud.list_redemptions_by_user(session, user_id)
                return [RedemptionRecord.from_model(row) for row in rows]

        return await self._run("redemptions_for_user", work)

    async def usage_reconciliation(
        self,
        mismatched_only: bool = False,
        code: Optional[str] = None,
    ) -> List[dict]:
        async def work():
            async with self._session_maker() as session:
                return await crud.get_usage_reconciliation(session, mismatched_only, code)

        return await self._run("usage_reconciliation", work)

    async def validation_stats(self, coupon_code: str) -> dict:
        async def work():
            async with self._session_maker() as session:
                return await crud.get_validation_stats(session, coupon_code)

        return await self._run("validation_stats", work)

    async def recent_validations(self, limit: int = 100) -> List[ValidationLog]:
        async def work():
            async with self._session_maker() as session:
                return await crud.get_recent_validation_logs(session, limit)

        return await self._run("recent_validations", work)

    async def write_validation_logs(self, entries: List[ValidationLogData]) -> int:
        """Write one batch of validation logs in a single transaction."""

        async def work():
            async with self._session_maker() as session:
                return await crud.save_validation_logs_bulk(
                    session, [entry.to_model() for entry in entries]
                )

        return await self._run("write_validation_logs", work)


async def _conflict_reason(session: AsyncSession, coupon_id: str, user_id: str) -> Optional[str]:
    """Name the guard that refused a redemption, read before the rollback.

    The user's count includes the ledger row flushed by the refused attempt.
    """
    current = await crud.get_coupon_by_id(session, coupon_id)
    if current is None:
        return None
    if current.status in _STATE_REASONS:
        return _STATE_REASONS[current.status]
    if current.max_total_uses is not None and current.current_total_uses >= current.max_total_uses:
        return DenialReason.USAGE_LIMIT_REACHED.value
    if current.policy == CouponPolicy.SINGLE_USER.value:
        return DenialReason.ALREADY_USED.value
    if current.max_uses_per_user is not None:
        prior = await crud.count_user_redemptions(session, coupon_id, user_id) - 1
        if prior >= current.max_uses_per_user:
            return DenialReason.PER_USER_LIMIT_REACHED.value
    return None


# Global store instance
_grant_store: Optional[GrantStore] = None


def get_grant_store() -> GrantStore:
    """Get the application-wide store (usable as a FastAPI dependency)."""
    global _grant_store
    if _grant_store is None:
        _grant_store = GrantStore(get_async_session_maker())
    return _grant_store


def reset_grant_store() -> None:
    """Forget the global store, e.g. after the engine was closed."""
    global _grant_store
    _grant_store = None
