"""Coupon endpoints: issuance, validation and read-only queries."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import (
    BaseModel,
    Field,
    IPvAnyAddress,
    ValidationInfo,
    field_validator,
    model_validator,
)

from coupons.app.db.models import DiscountKind
from coupons.app.exceptions import (
    CouponNotFoundError,
    InternalCommitError,
    PolicyViolationError,
)
from coupons.app.middleware.request_id import get_request_id
from coupons.app.services.grant_store import GrantStore, get_grant_store
from coupons.app.services.issuance import IssuanceService, get_issuance_service
from coupons.app.services.models import (
    CouponSnapshot,
    DenialReason,
    Redeemed,
    RedemptionRecord,
    RedemptionRequest,
    SingleUserTerms,
)
from coupons.app.services.redemption import RedemptionCoordinator, get_coordinator

router = APIRouter(prefix="/api/coupons", tags=["coupons"])


def _strip_required(v: str, name: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{name} cannot be empty")
    return v


class _DiscountFields(BaseModel):
    discount_kind: DiscountKind
    discount_value: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    max_discount: Optional[Decimal] = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    min_order_value: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=10, decimal_places=2
    )
    description: Optional[str] = Field(default=None, max_length=500)
    created_by: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def check_percentage(self):
        if self.discount_kind is DiscountKind.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount_value cannot exceed 100")
        return self


class UserCouponCreate(_DiscountFields):
    user_id: str = Field(..., min_length=1, max_length=100)

    @field_validator("user_id")
    @classmethod
    def normalize_user_id(cls, v: str) -> str:
        return _strip_required(v, "user_id")


class SharedWindowCouponCreate(_DiscountFields):
    code: Optional[str] = Field(default=None, min_length=4, max_length=50)
    valid_from: datetime
    valid_until: datetime
    max_uses_per_user: Optional[int] = Field(default=None, gt=0)
    max_total_uses: Optional[int] = Field(default=None, gt=0)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 4:
            raise ValueError("code must be at least 4 characters")
        return v

    @field_validator("valid_from", "valid_until")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def check_window(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    user_id: str = Field(..., min_length=1, max_length=100)
    order_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    order_value: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    ip_address: Optional[IPvAnyAddress] = None
    user_agent: Optional[str] = Field(default=None, max_length=500)

    @field_validator("code", "user_id")
    @classmethod
    def normalize_required(cls, v: str, info: ValidationInfo) -> str:
        return _strip_required(v, info.field_name)


class CouponResponse(BaseModel):
    id: str
    code: str
    policy: str
    discount_kind: str
    discount_value: Decimal
    max_discount: Optional[Decimal] = None
    min_order_value: Decimal
    description: Optional[str] = None
    status: str
    user_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses_per_user: Optional[int] = None
    max_total_uses: Optional[int] = None
    current_total_uses: int
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def from_snapshot(cls, coupon: CouponSnapshot) -> "CouponResponse":
        data = dict(
            id=coupon.id,
            code=coupon.code,
            policy=coupon.policy.value,
            discount_kind=coupon.discount.kind.value,
            discount_value=coupon.discount.value,
            max_discount=coupon.discount.max_discount,
            min_order_value=coupon.discount.min_order_value,
            description=coupon.description,
            status=coupon.status.value,
            current_total_uses=coupon.current_total_uses,
            created_at=coupon.created_at,
            created_by=coupon.created_by,
        )
        if isinstance(coupon.terms, SingleUserTerms):
            data["user_id"] = coupon.terms.user_id
        else:
            data.update(
                valid_from=coupon.terms.valid_from,
                valid_until=coupon.terms.valid_until,
                max_uses_per_user=coupon.terms.max_uses_per_user,
                max_total_uses=coupon.terms.max_total_uses,
            )
        return cls(**data)


class ValidationSuccess(BaseModel):
    permitted: Literal[True] = True
    discount: Decimal
    final_amount: Decimal
    coupon: CouponResponse
    redemption_id: Optional[str] = None


class RedemptionResponse(BaseModel):
    id: str
    coupon_id: str
    user_id: str
    order_id: Optional[str] = None
    order_value: Decimal
    discount_applied: Decimal
    redeemed_at: datetime

    @classmethod
    def from_record(cls, record: RedemptionRecord) -> "RedemptionResponse":
        return cls(
            id=record.id,
            coupon_id=record.coupon_id,
            user_id=record.user_id,
            order_id=record.order_id,
            order_value=record.order_value,
            discount_applied=record.discount_applied,
            redeemed_at=record.redeemed_at,
        )


@router.post(
    "/user-specific",
    response_model=CouponResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_user_coupon(
    data: UserCouponCreate,
    issuance: IssuanceService = Depends(get_issuance_service),
) -> CouponResponse:
    """Issue a single-use coupon bound to one user."""
    coupon = await issuance.issue_single_user(
        user_id=data.user_id,
        discount_kind=data.discount_kind,
        discount_value=data.discount_value,
        max_discount=data.max_discount,
        min_order_value=data.min_order_value,
        description=data.description,
        created_by=data.created_by,
    )
    return CouponResponse.from_snapshot(coupon)


@router.post(
    "/time-specific",
    response_model=CouponResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_shared_window_coupon(
    data: SharedWindowCouponCreate,
    issuance: IssuanceService = Depends(get_issuance_service),
) -> CouponResponse:
    """Issue a coupon usable by anyone inside its validity window.

    Returns 409 when the requested code is already taken.
    """
    coupon = await issuance.issue_shared_window(
        code=data.code,
        discount_kind=data.discount_kind,
        discount_value=data.discount_value,
        max_discount=data.max_discount,
        min_order_value=data.min_order_value,
        valid_from=data.valid_from,
        valid_until=data.valid_until,
        max_uses_per_user=data.max_uses_per_user,
        max_total_uses=data.max_total_uses,
        description=data.description,
        created_by=data.created_by,
    )
    return CouponResponse.from_snapshot(coupon)


@router.post("/validate", response_model=ValidationSuccess)
async def validate_coupon(
    data: ValidateCouponRequest,
    request: Request,
    coordinator: RedemptionCoordinator = Depends(get_coordinator),
) -> ValidationSuccess:
    """Validate a coupon for an order and redeem it when permitted.

    Denials come back as 400 with a machine-readable reason_code; an
    unknown code is a 404.
    """
    client_ip = str(data.ip_address) if data.ip_address else None
    if client_ip is None and request.client is not None:
        client_ip = request.client.host

    outcome = await coordinator.handle(
        RedemptionRequest(
            code=data.code,
            user_id=data.user_id,
            order_id=data.order_id,
            order_value=data.order_value,
            ip_address=client_ip,
            user_agent=data.user_agent or request.headers.get("user-agent"),
            request_id=get_request_id(request),
        )
    )

    if isinstance(outcome, Redeemed):
        return ValidationSuccess(
            discount=outcome.discount,
            final_amount=outcome.final_amount,
            coupon=CouponResponse.from_snapshot(outcome.coupon),
            redemption_id=outcome.redemption.id if outcome.redemption else None,
        )
    if outcome.reason is DenialReason.NOT_FOUND:
        raise CouponNotFoundError(data.code, outcome.message)
    if outcome.reason is DenialReason.INTERNAL_ERROR:
        raise InternalCommitError(outcome.message)
    raise PolicyViolationError(outcome.reason.value, outcome.message)


@router.get("/active/time-specific", response_model=list[CouponResponse])
async def list_active_shared_window_coupons(
    store: GrantStore = Depends(get_grant_store),
) -> list[CouponResponse]:
    coupons = await store.list_active_windows(datetime.now(timezone.utc))
    return [CouponResponse.from_snapshot(c) for c in coupons]


@router.get("/user/{user_id}", response_model=list[CouponResponse])
async def list_user_coupons(
    user_id: str,
    store: GrantStore = Depends(get_grant_store),
) -> list[CouponResponse]:
    """Active coupons bound to a user."""
    coupons = await store.list_by_user(user_id)
    return [CouponResponse.from_snapshot(c) for c in coupons]


@router.get("/user/{user_id}/usage-history", response_model=list[RedemptionResponse])
async def user_usage_history(
    user_id: str,
    store: GrantStore = Depends(get_grant_store),
) -> list[RedemptionResponse]:
    records = await store.redemptions_for_user(user_id)
    return [RedemptionResponse.from_record(r) for r in records]


@router.get("/{coupon_id}/usage-history", response_model=list[RedemptionResponse])
async def coupon_usage_history(
    coupon_id: str,
    store: GrantStore = Depends(get_grant_store),
) -> list[RedemptionResponse]:
    records = await store.redemptions_for_coupon(coupon_id)
    return [RedemptionResponse.from_record(r) for r in records]


@router.get("/{code}", response_model=CouponResponse)
async def get_coupon(
    code: str,
    store: GrantStore = Depends(get_grant_store),
) -> CouponResponse:
    coupon = await store.fetch_by_code(code)
    if coupon is None:
        raise CouponNotFoundError(code)
    return CouponResponse.from_snapshot(coupon)
