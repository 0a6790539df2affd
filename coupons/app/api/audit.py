"""Validation log analytics and usage reconciliation endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from coupons.app.services.grant_store import GrantStore, get_grant_store

router = APIRouter(prefix="/api/audit", tags=["audit"])


class ValidationStats(BaseModel):
    coupon_code: str
    total_attempts: int
    successful_validations: int
    failed_validations: int
    avg_response_time_ms: Optional[float] = None
    max_response_time_ms: Optional[int] = None
    min_response_time_ms: Optional[int] = None


class ValidationLogEntry(BaseModel):
    id: int
    coupon_code: str
    coupon_id: Optional[str] = None
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    order_value: Optional[Decimal] = None
    is_valid: bool
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    discount_applied: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    response_time_ms: Optional[int] = None
    validated_at: datetime

    model_config = {"from_attributes": True}


class UsageReconciliation(BaseModel):
    coupon_id: str
    code: str
    policy: str
    status: str
    max_total_uses: Optional[int] = None
    current_total_uses: int
    actual_usage_count: int
    consistent: bool


@router.get("/coupons/{code}/stats", response_model=ValidationStats)
async def coupon_validation_stats(
    code: str,
    store: GrantStore = Depends(get_grant_store),
) -> ValidationStats:
    """Aggregate validation attempts for a coupon code.

    Only flushed attempts are counted; entries still buffered in memory
    show up after the next flush.
    """
    stats = await store.validation_stats(code)
    return ValidationStats(coupon_code=code, **stats)


@router.get("/recent", response_model=list[ValidationLogEntry])
async def recent_validations(
    limit: int = Query(default=100, ge=1, le=1000),
    store: GrantStore = Depends(get_grant_store),
) -> list[ValidationLogEntry]:
    logs = await store.recent_validations(limit)
    return [ValidationLogEntry.model_validate(log) for log in logs]


@router.get("/reconciliation", response_model=list[UsageReconciliation])
async def usage_reconciliation(
    mismatched_only: bool = False,
    code: Optional[str] = None,
    store: GrantStore = Depends(get_grant_store),
) -> list[UsageReconciliation]:
    """Compare each coupon's usage counter with its redemption ledger."""
    rows = await store.usage_reconciliation(mismatched_only=mismatched_only, code=code)
    return [
        UsageReconciliation(
            **row,
            consistent=row["current_total_uses"] == row["actual_usage_count"],
        )
        for row in rows
    ]
