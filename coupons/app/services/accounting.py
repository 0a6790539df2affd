"""Commit permitted redemptions and apply coupon state transitions."""

import asyncio
import functools
from typing import Callable, Optional

from coupons.app.core.logging import get_log_context, get_logger
from coupons.app.db.models import CouponStatus
from coupons.app.exceptions import (
    DuplicateRedemptionError,
    RedemptionConflictError,
    StoreUnavailableError,
)
from coupons.app.services.grant_store import GrantStore
from coupons.app.services.models import (
    CommittedRedemption,
    CouponSnapshot,
    Denied,
    DenialReason,
    LedgerEntry,
    Outcome,
    Permitted,
    Redeemed,
    RedemptionRequest,
    SingleUserTerms,
)
from coupons.app.services.rules import deny

logger = get_logger(__name__)

_STATE_REASONS = (DenialReason.EXPIRED, DenialReason.INACTIVE)


class AccountingTransaction:
    """Turns a Permitted verdict into a committed redemption.

    The store's guarded update and the unique order-id index decide races;
    this class only translates their failures into caller-facing denials.
    """

    def __init__(self, store: GrantStore):
        self._store = store

    async def apply(
        self,
        coupon: CouponSnapshot,
        request: RedemptionRequest,
        permitted: Permitted,
        on_detached: Optional[Callable[[Outcome], None]] = None,
    ) -> Outcome:
        """Commit the redemption.

        The commit is shielded: once it has started, a disconnecting caller
        does not abort it. If the caller is cancelled first, the commit
        keeps running and `on_detached` receives its final outcome.

        Raises:
            StoreUnavailableError: The store timed out or is unreachable
        """
        entry = LedgerEntry(
            user_id=request.user_id,
            order_id=request.order_id,
            order_value=request.order_value,
            discount_applied=permitted.discount,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        context = get_log_context(
            request_id=request.request_id,
            coupon_code=coupon.code,
            user_id=request.user_id,
            order_id=request.order_id,
        )

        commit = asyncio.ensure_future(self._store.commit_redemption(coupon, entry))
        try:
            committed = await asyncio.shield(commit)
        except asyncio.CancelledError:
            commit.add_done_callback(
                functools.partial(
                    self._settle_detached,
                    coupon=coupon,
                    permitted=permitted,
                    context=context,
                    on_detached=on_detached,
                )
            )
            raise
        except StoreUnavailableError:
            raise
        except Exception as e:
            return self._failure_denial(e, coupon, context)

        return self._redeemed(committed, permitted, context)

    def _redeemed(
        self,
        committed: CommittedRedemption,
        permitted: Permitted,
        context: dict,
    ) -> Redeemed:
        logger.info(
            f"Redeemed coupon {committed.coupon.code}, discount {permitted.discount}",
            extra=context,
        )
        return Redeemed(
            discount=permitted.discount,
            final_amount=permitted.final_amount,
            coupon=committed.coupon,
            redemption=committed.record,
        )

    def _failure_denial(
        self,
        error: BaseException,
        coupon: CouponSnapshot,
        context: dict,
    ) -> Denied:
        if isinstance(error, DuplicateRedemptionError):
            logger.info("Order already redeemed by a concurrent attempt", extra=context)
            return deny(DenialReason.DUPLICATE_ORDER)
        if isinstance(error, RedemptionConflictError):
            logger.info("Coupon changed before commit, redemption refused", extra=context)
            return self._conflict_denial(coupon, error)
        logger.error("Failed to commit permitted redemption", exc_info=error, extra=context)
        return deny(DenialReason.INTERNAL_ERROR)

    def _conflict_denial(
        self,
        coupon: CouponSnapshot,
        error: RedemptionConflictError,
    ) -> Denied:
        """Report the denial the winning attempt caused.

        The store names the guard that refused the commit; without one the
        reason falls back to the coupon's policy.
        """
        if error.reason is not None:
            reason = DenialReason(error.reason)
        elif isinstance(coupon.terms, SingleUserTerms):
            reason = DenialReason.ALREADY_USED
        else:
            reason = DenialReason.USAGE_LIMIT_REACHED

        if reason in _STATE_REASONS:
            return deny(reason, f"Coupon is {reason.value}")
        if reason is DenialReason.PER_USER_LIMIT_REACHED:
            return deny(
                reason,
                "You have reached the maximum usage limit "
                f"({coupon.terms.max_uses_per_user}) for this coupon",
            )
        return deny(reason)

    def _settle_detached(
        self,
        commit: "asyncio.Future[CommittedRedemption]",
        coupon: CouponSnapshot,
        permitted: Permitted,
        context: dict,
        on_detached: Optional[Callable[[Outcome], None]],
    ) -> None:
        """Resolve a commit whose caller went away before it finished."""
        outcome: Outcome
        if commit.cancelled():
            logger.error("Detached redemption commit was cancelled", extra=context)
            outcome = deny(DenialReason.INTERNAL_ERROR)
        elif commit.exception() is None:
            outcome = self._redeemed(commit.result(), permitted, context)
        elif isinstance(commit.exception(), StoreUnavailableError):
            logger.warning("Detached redemption commit hit an unavailable store", extra=context)
            outcome = deny(DenialReason.STORE_UNAVAILABLE)
        else:
            outcome = self._failure_denial(commit.exception(), coupon, context)

        logger.info(
            f"Caller left during commit, redemption settled as "
            f"{'redeemed' if outcome.permitted else outcome.reason.value}",
            extra=context,
        )
        if on_detached is not None:
            on_detached(outcome)

    async def apply_pending_transition(
        self,
        coupon: CouponSnapshot,
        status: CouponStatus,
    ) -> bool:
        """Apply a state transition signalled by the rules.

        Best effort: failures are logged and never reach the caller.

        Returns:
            True if the coupon changed state
        """
        try:
            changed = await self._store.apply_transition(coupon.id, status)
        except Exception as e:
            logger.warning(
                f"Failed to mark coupon {coupon.code} as {status.value}: {e}",
                extra=get_log_context(coupon_code=coupon.code),
            )
            return False

        if changed:
            logger.info(
                f"Coupon {coupon.code} is now {status.value}",
                extra=get_log_context(coupon_code=coupon.code),
            )
        return changed
