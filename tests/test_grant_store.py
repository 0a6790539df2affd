"""Tests for the coupon store gateway against file-backed SQLite."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from coupons.app.db.async_session import build_session_maker
from coupons.app.db.models import CouponStatus
from coupons.app.exceptions import (
    CouponCodeConflictError,
    DuplicateRedemptionError,
    RedemptionConflictError,
    StoreUnavailableError,
)
from coupons.app.services.grant_store import GrantStore
from coupons.app.services.models import LedgerEntry, SharedWindowTerms, ValidationLogData


def _ledger(user_id="user-1", order_id=None, discount="10.00") -> LedgerEntry:
    return LedgerEntry(
        user_id=user_id,
        order_id=order_id,
        order_value=Decimal("100.00"),
        discount_applied=Decimal(discount),
        ip_address="127.0.0.1",
    )


@pytest.mark.asyncio
async def test_issue_and_fetch_by_code(store, shared_window_coupon):
    issued = await store.issue(shared_window_coupon(code="SPRING2026", max_total_uses=5))

    fetched = await store.fetch_by_code("SPRING2026")

    assert fetched is not None
    assert fetched.id == issued.id
    assert isinstance(fetched.terms, SharedWindowTerms)
    assert fetched.terms.max_total_uses == 5
    assert fetched.terms.valid_from.tzinfo is not None
    assert fetched.status is CouponStatus.ACTIVE
    assert fetched.created_at is not None


@pytest.mark.asyncio
async def test_fetch_unknown_code_returns_none(store):
    assert await store.fetch_by_code("NOPE") is None


@pytest.mark.asyncio
async def test_issue_duplicate_code_conflicts(store, shared_window_coupon):
    await store.issue(shared_window_coupon(code="TAKEN"))

    with pytest.raises(CouponCodeConflictError):
        await store.issue(shared_window_coupon(code="TAKEN"))


@pytest.mark.asyncio
async def test_commit_increments_counter_and_exhausts_at_cap(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon(max_total_uses=2))

    first = await store.commit_redemption(coupon, _ledger(order_id="order-1"))
    after_first = await store.fetch_by_code(coupon.code)
    second = await store.commit_redemption(coupon, _ledger(order_id="order-2"))
    after_second = await store.fetch_by_code(coupon.code)

    assert first.record.coupon_id == coupon.id
    assert first.record.discount_applied == Decimal("10.00")
    assert first.coupon.current_total_uses == 1
    assert first.coupon.status is CouponStatus.ACTIVE
    assert second.coupon.current_total_uses == 2
    assert second.coupon.status is CouponStatus.EXHAUSTED
    assert after_first.current_total_uses == 1
    assert after_first.status is CouponStatus.ACTIVE
    assert after_second.current_total_uses == 2
    assert after_second.status is CouponStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_commit_on_exhausted_coupon_conflicts_without_ledger_row(
    store, shared_window_coupon
):
    coupon = await store.issue(shared_window_coupon(max_total_uses=1))
    await store.commit_redemption(coupon, _ledger(order_id="order-1"))

    with pytest.raises(RedemptionConflictError) as exc_info:
        await store.commit_redemption(coupon, _ledger(user_id="user-2", order_id="order-2"))

    assert exc_info.value.reason == "usage_limit_reached"

    history = await store.redemptions_for_coupon(coupon.id)
    assert [r.order_id for r in history] == ["order-1"]


@pytest.mark.asyncio
async def test_duplicate_order_id_rejected_by_unique_index(store, shared_window_coupon):
    first = await store.issue(shared_window_coupon(code="FIRST"))
    second = await store.issue(shared_window_coupon(code="SECOND"))
    await store.commit_redemption(first, _ledger(order_id="order-1"))

    with pytest.raises(DuplicateRedemptionError):
        await store.commit_redemption(second, _ledger(order_id="order-1"))

    untouched = await store.fetch_by_code("SECOND")
    assert untouched.current_total_uses == 0


@pytest.mark.asyncio
async def test_redemptions_without_order_id_do_not_collide(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon())

    await store.commit_redemption(coupon, _ledger(order_id=None))
    await store.commit_redemption(coupon, _ledger(order_id=None))

    assert len(await store.redemptions_for_coupon(coupon.id)) == 2


@pytest.mark.asyncio
async def test_single_user_coupon_commits_once(store, single_user_coupon):
    coupon = await store.issue(single_user_coupon(user_id="user-1"))

    await store.commit_redemption(coupon, _ledger(order_id="order-1"))
    with pytest.raises(RedemptionConflictError) as exc_info:
        await store.commit_redemption(coupon, _ledger(order_id="order-2"))

    assert exc_info.value.reason == "already_used"
    assert len(await store.redemptions_for_coupon(coupon.id)) == 1
    # single-use coupons stay active; the ledger answers "already used"
    assert (await store.fetch_by_code(coupon.code)).status is CouponStatus.ACTIVE


@pytest.mark.asyncio
async def test_commit_enforces_per_user_cap(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon(max_uses_per_user=1))
    await store.commit_redemption(coupon, _ledger(user_id="user-1", order_id="order-1"))

    with pytest.raises(RedemptionConflictError) as exc_info:
        await store.commit_redemption(coupon, _ledger(user_id="user-1", order_id="order-2"))
    other = await store.commit_redemption(coupon, _ledger(user_id="user-2", order_id="order-3"))

    assert exc_info.value.reason == "per_user_limit_reached"
    assert other.coupon.current_total_uses == 2
    history = await store.redemptions_for_coupon(coupon.id)
    assert sorted(r.order_id for r in history) == ["order-1", "order-3"]


@pytest.mark.asyncio
async def test_commit_on_inactive_coupon_reports_state(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon())
    await store.apply_transition(coupon.id, CouponStatus.INACTIVE)

    with pytest.raises(RedemptionConflictError) as exc_info:
        await store.commit_redemption(coupon, _ledger(order_id="order-1"))

    assert exc_info.value.reason == "inactive"
    assert await store.redemptions_for_coupon(coupon.id) == []


@pytest.mark.asyncio
async def test_load_usage_facts(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon())
    await store.commit_redemption(coupon, _ledger(user_id="user-1", order_id="order-1"))

    facts = await store.load_usage_facts(coupon.id, "user-1", "order-1")
    other = await store.load_usage_facts(coupon.id, "user-2", "order-2")

    assert facts.order_already_redeemed is True
    assert facts.user_redemption_count == 1
    assert other.order_already_redeemed is False
    assert other.user_redemption_count == 0


@pytest.mark.asyncio
async def test_apply_transition_only_from_active(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon())

    assert await store.apply_transition(coupon.id, CouponStatus.EXPIRED) is True
    assert await store.apply_transition(coupon.id, CouponStatus.INACTIVE) is False
    assert (await store.fetch_by_code(coupon.code)).status is CouponStatus.EXPIRED


@pytest.mark.asyncio
async def test_list_queries(store, shared_window_coupon, single_user_coupon):
    now = datetime.now(timezone.utc)
    await store.issue(shared_window_coupon(code="OPEN"))
    await store.issue(
        shared_window_coupon(
            code="LATER",
            valid_from=now + timedelta(days=1),
            valid_until=now + timedelta(days=2),
        )
    )
    retired = await store.issue(shared_window_coupon(code="RETIRED"))
    await store.apply_transition(retired.id, CouponStatus.INACTIVE)
    await store.issue(single_user_coupon(user_id="user-7", code="USER-A"))
    used = await store.issue(single_user_coupon(user_id="user-7", code="USER-B"))
    await store.apply_transition(used.id, CouponStatus.EXPIRED)

    windows = await store.list_active_windows(now)
    mine = await store.list_by_user("user-7")

    assert [c.code for c in windows] == ["OPEN"]
    assert [c.code for c in mine] == ["USER-A"]


@pytest.mark.asyncio
async def test_user_redemption_history(store, shared_window_coupon):
    a = await store.issue(shared_window_coupon(code="A-CODE"))
    b = await store.issue(shared_window_coupon(code="B-CODE"))
    await store.commit_redemption(a, _ledger(user_id="user-3", order_id="o-1"))
    await store.commit_redemption(b, _ledger(user_id="user-3", order_id="o-2"))
    await store.commit_redemption(b, _ledger(user_id="user-4", order_id="o-3"))

    history = await store.redemptions_for_user("user-3")

    assert sorted(r.order_id for r in history) == ["o-1", "o-2"]
    assert all(r.redeemed_at.tzinfo is not None for r in history)


@pytest.mark.asyncio
async def test_usage_reconciliation(store, shared_window_coupon):
    coupon = await store.issue(shared_window_coupon(code="RECON", max_total_uses=3))
    await store.commit_redemption(coupon, _ledger(order_id="order-1"))

    rows = await store.usage_reconciliation(code="RECON")
    mismatched = await store.usage_reconciliation(mismatched_only=True)

    assert len(rows) == 1
    assert rows[0]["current_total_uses"] == 1
    assert rows[0]["actual_usage_count"] == 1
    assert mismatched == []


@pytest.mark.asyncio
async def test_validation_logs_write_and_stats(store):
    entries = [
        ValidationLogData(coupon_code="STATS", is_valid=True, response_time_ms=10),
        ValidationLogData(coupon_code="STATS", is_valid=False, response_time_ms=30,
                          reason_code="expired"),
        ValidationLogData(coupon_code="OTHER", is_valid=False, response_time_ms=5),
    ]

    written = await store.write_validation_logs(entries)
    stats = await store.validation_stats("STATS")
    recent = await store.recent_validations(limit=2)

    assert written == 3
    assert stats["total_attempts"] == 2
    assert stats["successful_validations"] == 1
    assert stats["failed_validations"] == 1
    assert stats["avg_response_time_ms"] == pytest.approx(20.0)
    assert stats["max_response_time_ms"] == 30
    assert stats["min_response_time_ms"] == 10
    assert len(recent) == 2


@pytest.mark.asyncio
async def test_validation_stats_for_unseen_code(store):
    stats = await store.validation_stats("NEVER")

    assert stats["total_attempts"] == 0
    assert stats["successful_validations"] == 0
    assert stats["avg_response_time_ms"] is None


@pytest.mark.asyncio
async def test_timeout_surfaces_as_store_unavailable(engine):
    store = GrantStore(build_session_maker(engine), timeout=0.05)

    async def slow_lookup(session, code):
        await asyncio.sleep(1)

    with patch("coupons.app.db.crud.get_coupon_by_code", side_effect=slow_lookup):
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.fetch_by_code("ANY")

    assert exc_info.value.operation == "fetch_by_code"
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_driver_failure_surfaces_as_store_unavailable(store):
    failure = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with patch("coupons.app.db.crud.get_coupon_by_code", AsyncMock(side_effect=failure)):
        with pytest.raises(StoreUnavailableError):
            await store.fetch_by_code("ANY")
