"""Tests for the redemption rule pipeline and discount arithmetic."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from coupons.app.db.models import CouponStatus, DiscountKind
from coupons.app.services.models import (
    DenialReason,
    DiscountTerms,
    Permitted,
    RedemptionRequest,
    UsageFacts,
)
from coupons.app.services.rules import calculate_discount, evaluate, screen, to_currency

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _request(**overrides) -> RedemptionRequest:
    data = {
        "code": "SPRING2026",
        "user_id": "user-1",
        "order_value": Decimal("100"),
        "order_id": "order-1",
    }
    data.update(overrides)
    return RedemptionRequest(**data)


class TestDiscountCalculation:
    def test_fixed_discount(self):
        terms = DiscountTerms(kind=DiscountKind.FIXED, value=Decimal("30"))
        assert calculate_discount(terms, Decimal("100")) == Decimal("30.00")

    def test_fixed_discount_never_exceeds_order(self):
        terms = DiscountTerms(kind=DiscountKind.FIXED, value=Decimal("50"))
        assert calculate_discount(terms, Decimal("30")) == Decimal("30.00")

    def test_percentage_clamped_to_cap(self):
        terms = DiscountTerms(
            kind=DiscountKind.PERCENTAGE,
            value=Decimal("20"),
            max_discount=Decimal("150"),
        )
        assert calculate_discount(terms, Decimal("1000")) == Decimal("150.00")

    def test_percentage_below_cap_not_clamped(self):
        terms = DiscountTerms(
            kind=DiscountKind.PERCENTAGE,
            value=Decimal("20"),
            max_discount=Decimal("150"),
        )
        assert calculate_discount(terms, Decimal("500")) == Decimal("100.00")

    @pytest.mark.parametrize(
        ("percent", "order", "expected"),
        [
            ("15", "33.33", "5.00"),   # 4.9995
            ("12.5", "0.04", "0.01"),  # 0.005
            ("10", "0.04", "0.00"),    # 0.004
        ],
    )
    def test_rounds_half_up_to_cents(self, percent, order, expected):
        terms = DiscountTerms(kind=DiscountKind.PERCENTAGE, value=Decimal(percent))
        assert calculate_discount(terms, Decimal(order)) == Decimal(expected)

    def test_calculation_is_deterministic(self):
        terms = DiscountTerms(kind=DiscountKind.PERCENTAGE, value=Decimal("33"))
        results = {calculate_discount(terms, Decimal("123.45")) for _ in range(10)}
        assert results == {Decimal("40.74")}

    def test_to_currency(self):
        assert to_currency(Decimal("2.675")) == Decimal("2.68")


class TestScreen:
    def test_unknown_coupon(self):
        denied = screen(None, _request())
        assert denied.reason is DenialReason.NOT_FOUND
        assert denied.message == "Coupon not found"

    @pytest.mark.parametrize(
        ("status", "reason"),
        [
            (CouponStatus.EXPIRED, DenialReason.EXPIRED),
            (CouponStatus.EXHAUSTED, DenialReason.EXHAUSTED),
            (CouponStatus.INACTIVE, DenialReason.INACTIVE),
        ],
    )
    def test_inactive_states_named_in_reason(self, shared_window_coupon, status, reason):
        denied = screen(shared_window_coupon(status=status), _request())
        assert denied.reason is reason
        assert denied.message == f"Coupon is {status.value}"

    def test_minimum_order_value(self, shared_window_coupon):
        coupon = shared_window_coupon(min_order_value="50")
        denied = screen(coupon, _request(order_value=Decimal("49.99")))
        assert denied.reason is DenialReason.MINIMUM_ORDER_NOT_MET
        assert "50.00" in denied.message

    def test_order_equal_to_minimum_passes(self, shared_window_coupon):
        coupon = shared_window_coupon(min_order_value="50")
        assert screen(coupon, _request(order_value=Decimal("50"))) is None


class TestEvaluate:
    def test_fixed_discount_on_shared_window(self, shared_window_coupon):
        coupon = shared_window_coupon(
            kind=DiscountKind.FIXED,
            value="30",
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=1),
        )

        decision = evaluate(coupon, _request(), UsageFacts(), NOW)

        assert isinstance(decision.verdict, Permitted)
        assert decision.verdict.discount == Decimal("30.00")
        assert decision.verdict.final_amount == Decimal("70.00")
        assert decision.pending_transition is None

    def test_percentage_discount_clamped(self, shared_window_coupon):
        coupon = shared_window_coupon(
            value="20",
            max_discount="150",
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=1),
        )

        decision = evaluate(coupon, _request(order_value=Decimal("1000")), UsageFacts(), NOW)

        assert decision.verdict.discount == Decimal("150.00")
        assert decision.verdict.final_amount == Decimal("850.00")

    def test_minimum_order_checked_before_duplicate_order(self, shared_window_coupon):
        coupon = shared_window_coupon(min_order_value="500")
        facts = UsageFacts(order_already_redeemed=True)

        decision = evaluate(coupon, _request(), facts, NOW)

        assert decision.verdict.reason is DenialReason.MINIMUM_ORDER_NOT_MET

    def test_duplicate_order(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW - timedelta(days=1), valid_until=NOW + timedelta(days=1)
        )
        decision = evaluate(coupon, _request(), UsageFacts(order_already_redeemed=True), NOW)
        assert decision.verdict.reason is DenialReason.DUPLICATE_ORDER
        assert decision.verdict.message == "This order has already used a coupon"

    def test_missing_order_id_skips_duplicate_check(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW - timedelta(days=1), valid_until=NOW + timedelta(days=1)
        )
        facts = UsageFacts(order_already_redeemed=True)
        decision = evaluate(coupon, _request(order_id=None), facts, NOW)
        assert decision.permitted

    def test_duplicate_order_reported_before_already_used(self, single_user_coupon):
        coupon = single_user_coupon(user_id="user-1")
        facts = UsageFacts(order_already_redeemed=True, user_redemption_count=1)

        decision = evaluate(coupon, _request(), facts, NOW)

        assert decision.verdict.reason is DenialReason.DUPLICATE_ORDER

    def test_single_user_wrong_user(self, single_user_coupon):
        coupon = single_user_coupon(user_id="user-1")
        facts = UsageFacts(user_redemption_count=1)

        decision = evaluate(coupon, _request(user_id="user-2"), facts, NOW)

        assert decision.verdict.reason is DenialReason.NOT_ASSIGNED

    def test_single_user_already_used(self, single_user_coupon):
        coupon = single_user_coupon(user_id="user-1")
        decision = evaluate(coupon, _request(), UsageFacts(user_redemption_count=1), NOW)
        assert decision.verdict.reason is DenialReason.ALREADY_USED
        assert decision.pending_transition is None

    def test_single_user_first_use_permitted(self, single_user_coupon):
        coupon = single_user_coupon(user_id="user-1", value="10")
        decision = evaluate(coupon, _request(), UsageFacts(), NOW)
        assert decision.verdict.discount == Decimal("10.00")
        assert decision.verdict.final_amount == Decimal("90.00")

    def test_not_yet_valid(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW + timedelta(hours=1), valid_until=NOW + timedelta(days=1)
        )
        decision = evaluate(coupon, _request(), UsageFacts(), NOW)
        assert decision.verdict.reason is DenialReason.NOT_YET_VALID
        assert decision.pending_transition is None

    def test_window_start_is_inclusive(self, shared_window_coupon):
        coupon = shared_window_coupon(valid_from=NOW, valid_until=NOW + timedelta(days=1))
        assert evaluate(coupon, _request(), UsageFacts(), NOW).permitted

    def test_window_end_is_exclusive_and_signals_expiry(self, shared_window_coupon):
        coupon = shared_window_coupon(valid_from=NOW - timedelta(days=1), valid_until=NOW)

        decision = evaluate(coupon, _request(), UsageFacts(), NOW)

        assert decision.verdict.reason is DenialReason.EXPIRED
        assert decision.pending_transition is CouponStatus.EXPIRED

    def test_aggregate_cap_reached_signals_exhaustion(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=1),
            max_total_uses=5,
            current_total_uses=5,
        )

        decision = evaluate(coupon, _request(), UsageFacts(), NOW)

        assert decision.verdict.reason is DenialReason.USAGE_LIMIT_REACHED
        assert decision.pending_transition is CouponStatus.EXHAUSTED

    def test_per_user_cap(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=1),
            max_uses_per_user=2,
        )

        decision = evaluate(coupon, _request(), UsageFacts(user_redemption_count=2), NOW)

        assert decision.verdict.reason is DenialReason.PER_USER_LIMIT_REACHED
        assert "(2)" in decision.verdict.message
        assert decision.pending_transition is None

    def test_below_per_user_cap_permitted(self, shared_window_coupon):
        coupon = shared_window_coupon(
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=1),
            max_uses_per_user=2,
        )
        assert evaluate(coupon, _request(), UsageFacts(user_redemption_count=1), NOW).permitted
