"""Redemption rules.

Pure functions: nothing here touches the store or the clock. The
coordinator fetches the coupon, runs `screen` for the checks that need no
further queries, loads usage facts and then calls `evaluate` for the full
pipeline. Checks run in a fixed order and stop at the first failure, since
every failure carries its own caller-facing reason.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from coupons.app.db.models import CouponStatus, DiscountKind
from coupons.app.services.models import (
    CouponSnapshot,
    Decision,
    Denied,
    DenialReason,
    DiscountTerms,
    Permitted,
    RedemptionRequest,
    SharedWindowTerms,
    SingleUserTerms,
    UsageFacts,
)

CENT = Decimal("0.01")

_STATE_REASONS = {
    CouponStatus.EXPIRED: DenialReason.EXPIRED,
    CouponStatus.EXHAUSTED: DenialReason.EXHAUSTED,
    CouponStatus.INACTIVE: DenialReason.INACTIVE,
}

MESSAGES = {
    DenialReason.NOT_FOUND: "Coupon not found",
    DenialReason.DUPLICATE_ORDER: "This order has already used a coupon",
    DenialReason.NOT_ASSIGNED: "This coupon is not assigned to you",
    DenialReason.ALREADY_USED: "You have already used this coupon",
    DenialReason.NOT_YET_VALID: "Coupon is not yet valid",
    DenialReason.USAGE_LIMIT_REACHED: "Coupon usage limit reached",
    DenialReason.STORE_UNAVAILABLE: "Coupon service temporarily unavailable",
    DenialReason.INTERNAL_ERROR: "Coupon could not be applied",
}


def to_currency(amount: Decimal) -> Decimal:
    """Round to two decimal places, half-up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_discount(terms: DiscountTerms, order_value: Decimal) -> Decimal:
    """Compute the discount for an order.

    Percentage discounts are clamped to `max_discount` when one is set;
    fixed discounts never exceed the order value.
    """
    if terms.kind is DiscountKind.PERCENTAGE:
        discount = order_value * terms.value / Decimal(100)
        if terms.max_discount is not None:
            discount = min(discount, terms.max_discount)
    else:
        discount = min(terms.value, order_value)
    return to_currency(discount)


def deny(reason: DenialReason, message: Optional[str] = None) -> Denied:
    return Denied(reason=reason, message=message or MESSAGES[reason])


def screen(
    coupon: Optional[CouponSnapshot],
    request: RedemptionRequest,
) -> Optional[Denied]:
    """Run the checks that need nothing beyond the coupon row.

    Returns:
        The denial, or None when the coupon exists, is active and the order
        meets its minimum value
    """
    if coupon is None:
        return deny(DenialReason.NOT_FOUND)

    if coupon.status is not CouponStatus.ACTIVE:
        return deny(_STATE_REASONS[coupon.status], f"Coupon is {coupon.status.value}")

    minimum = coupon.discount.min_order_value
    if request.order_value < minimum:
        return deny(
            DenialReason.MINIMUM_ORDER_NOT_MET,
            f"Minimum order value of {to_currency(minimum)} not met",
        )
    return None


def _check_single_user(
    terms: SingleUserTerms,
    request: RedemptionRequest,
    facts: UsageFacts,
) -> Optional[Denied]:
    if request.user_id != terms.user_id:
        return deny(DenialReason.NOT_ASSIGNED)
    if facts.user_redemption_count > 0:
        return deny(DenialReason.ALREADY_USED)
    return None


def _check_shared_window(
    coupon: CouponSnapshot,
    terms: SharedWindowTerms,
    facts: UsageFacts,
    now: datetime,
) -> Optional[Decision]:
    if now < terms.valid_from:
        return Decision(deny(DenialReason.NOT_YET_VALID))
    if now >= terms.valid_until:
        return Decision(
            deny(DenialReason.EXPIRED, "Coupon has expired"),
            pending_transition=CouponStatus.EXPIRED,
        )
    if terms.max_total_uses is not None and coupon.current_total_uses >= terms.max_total_uses:
        return Decision(
            deny(DenialReason.USAGE_LIMIT_REACHED),
            pending_transition=CouponStatus.EXHAUSTED,
        )
    if (
        terms.max_uses_per_user is not None
        and facts.user_redemption_count >= terms.max_uses_per_user
    ):
        return Decision(
            deny(
                DenialReason.PER_USER_LIMIT_REACHED,
                "You have reached the maximum usage limit "
                f"({terms.max_uses_per_user}) for this coupon",
            )
        )
    return None


def evaluate(
    coupon: Optional[CouponSnapshot],
    request: RedemptionRequest,
    facts: UsageFacts,
    now: datetime,
) -> Decision:
    """Run the full rule pipeline for one redemption attempt.

    Args:
        coupon: Snapshot from the store, None if the code is unknown
        request: The redemption attempt
        facts: Prior usage of the order id and of the coupon by this user
        now: Evaluation time (timezone-aware)

    Returns:
        Decision with a Permitted or Denied verdict, plus a state transition
        the caller should apply whatever the verdict
    """
    denied = screen(coupon, request)
    if denied is not None:
        return Decision(denied)

    if request.order_id and facts.order_already_redeemed:
        return Decision(deny(DenialReason.DUPLICATE_ORDER))

    if isinstance(coupon.terms, SingleUserTerms):
        denied = _check_single_user(coupon.terms, request, facts)
        if denied is not None:
            return Decision(denied)
    else:
        decision = _check_shared_window(coupon, coupon.terms, facts, now)
        if decision is not None:
            return decision

    discount = calculate_discount(coupon.discount, request.order_value)
    final_amount = to_currency(request.order_value - discount)
    return Decision(Permitted(discount=discount, final_amount=final_amount))
