"""Redemption coordinator.

Runs one validation attempt end to end: fetch the coupon, evaluate the
rules, commit a permitted redemption, apply any signalled state
transition and hand a validation log entry to the batcher.
"""

import asyncio
import functools
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from coupons.app.core.logging import get_log_context, get_logger
from coupons.app.exceptions import AuditBatcherStoppedError, StoreUnavailableError
from coupons.app.services import rules
from coupons.app.services.accounting import AccountingTransaction
from coupons.app.services.audit_batcher import AuditBatcher, get_audit_batcher
from coupons.app.services.grant_store import GrantStore, get_grant_store
from coupons.app.services.models import (
    CouponSnapshot,
    Denied,
    DenialReason,
    Outcome,
    Redeemed,
    RedemptionRequest,
    ValidationLogData,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionCoordinator:
    """Handles validation requests against the coupon store.

    Args:
        store: Coupon store gateway
        batcher: Receives one validation log entry per attempt
        clock: Returns the current timezone-aware time
    """

    def __init__(
        self,
        store: GrantStore,
        batcher: AuditBatcher,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._batcher = batcher
        self._accounting = AccountingTransaction(store)
        self._clock = clock

    async def handle(self, request: RedemptionRequest) -> Outcome:
        """Validate and, when permitted, redeem a coupon.

        Every attempt is logged for audit, including the ones that fail
        with an exception. When the caller is cancelled during the commit,
        the entry is written once the commit settles.

        Returns:
            Redeemed with the committed discount, or Denied with a reason

        Raises:
            StoreUnavailableError: The store timed out or is unreachable
        """
        started = time.perf_counter()
        coupon: Optional[CouponSnapshot] = None
        outcome: Optional[Outcome] = None
        failure: Optional[DenialReason] = None
        detached = False

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            coupon = await self._store.fetch_by_code(request.code)
            denied = rules.screen(coupon, request)
            if denied is not None:
                outcome = denied
                return outcome

            facts = await self._store.load_usage_facts(
                coupon.id, request.user_id, request.order_id
            )
            decision = rules.evaluate(coupon, request, facts, self._clock())

            if decision.permitted:
                settled = functools.partial(self._record_detached, request, coupon, elapsed_ms)
                try:
                    outcome = await self._accounting.apply(
                        coupon, request, decision.verdict, on_detached=settled
                    )
                except asyncio.CancelledError:
                    # The commit outlives this call and logs its own result.
                    detached = True
                    raise
            else:
                outcome = decision.verdict

            if decision.pending_transition is not None:
                await self._accounting.apply_pending_transition(
                    coupon, decision.pending_transition
                )
            return outcome
        except StoreUnavailableError:
            failure = DenialReason.STORE_UNAVAILABLE
            raise
        finally:
            if not detached:
                self._record(request, coupon, outcome, failure, elapsed_ms())

    def _record_detached(
        self,
        request: RedemptionRequest,
        coupon: CouponSnapshot,
        elapsed_ms: Callable[[], int],
        outcome: Outcome,
    ) -> None:
        self._record(request, coupon, outcome, None, elapsed_ms())

    def _record(
        self,
        request: RedemptionRequest,
        coupon: Optional[CouponSnapshot],
        outcome: Optional[Outcome],
        failure: Optional[DenialReason],
        elapsed_ms: int,
    ) -> None:
        entry = ValidationLogData(
            coupon_code=request.code,
            coupon_id=coupon.id if coupon else None,
            user_id=request.user_id,
            order_id=request.order_id,
            order_value=request.order_value,
            is_valid=isinstance(outcome, Redeemed),
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            response_time_ms=elapsed_ms,
            request_id=request.request_id,
        )
        if isinstance(outcome, Redeemed):
            entry.discount_applied = outcome.discount
            entry.final_amount = outcome.final_amount
        elif isinstance(outcome, Denied):
            entry.reason_code = outcome.reason.value
            entry.reason = outcome.message
        else:
            reason = failure or DenialReason.INTERNAL_ERROR
            entry.reason_code = reason.value
            entry.reason = rules.MESSAGES[reason]

        context = get_log_context(
            request_id=request.request_id,
            coupon_code=request.code,
            user_id=request.user_id,
            order_id=request.order_id,
            reason_code=entry.reason_code,
            duration_ms=elapsed_ms,
        )
        if entry.is_valid:
            logger.info("Coupon validation succeeded", extra=context)
        else:
            logger.info(f"Coupon validation denied: {entry.reason}", extra=context)

        try:
            self._batcher.enqueue(entry)
        except AuditBatcherStoppedError:
            logger.warning("Validation log dropped, batcher is stopped", extra=context)


def get_coordinator() -> RedemptionCoordinator:
    """Build a coordinator on the application store and batcher."""
    return RedemptionCoordinator(get_grant_store(), get_audit_batcher())
