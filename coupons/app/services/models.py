"""Domain types for coupon redemption.

Coupons are read from the store into immutable snapshots. The policy is a
tagged variant: a snapshot carries either SingleUserTerms or
SharedWindowTerms, and each validates its own fields on construction, so a
snapshot with mismatched policy fields cannot exist.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional, Union

from coupons.app.db.models import (
    Coupon,
    CouponPolicy,
    CouponRedemption,
    CouponStatus,
    DiscountKind,
    ValidationLog,
)


class DenialReason(str, Enum):
    """Machine-readable reasons returned to callers."""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    INACTIVE = "inactive"
    MINIMUM_ORDER_NOT_MET = "minimum_order_not_met"
    DUPLICATE_ORDER = "duplicate_order"
    NOT_ASSIGNED = "not_assigned"
    ALREADY_USED = "already_used"
    NOT_YET_VALID = "not_yet_valid"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DiscountTerms:
    kind: DiscountKind
    value: Decimal
    max_discount: Optional[Decimal] = None
    min_order_value: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", DiscountKind(self.kind))
        if self.value <= 0:
            raise ValueError("discount value must be positive")
        if self.kind is DiscountKind.PERCENTAGE and self.value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        if self.max_discount is not None and self.max_discount <= 0:
            raise ValueError("max_discount must be positive")
        if self.min_order_value < 0:
            raise ValueError("min_order_value cannot be negative")


@dataclass(frozen=True)
class SingleUserTerms:
    """Usable once, by exactly one user."""
    user_id: str

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("single_user coupons must be bound to a user")


@dataclass(frozen=True)
class SharedWindowTerms:
    """Usable by anyone within [valid_from, valid_until), subject to caps."""
    valid_from: datetime
    valid_until: datetime
    max_uses_per_user: Optional[int] = None
    max_total_uses: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "valid_from", as_utc(self.valid_from))
        object.__setattr__(self, "valid_until", as_utc(self.valid_until))
        if self.valid_from >= self.valid_until:
            raise ValueError("valid_from must be before valid_until")
        for name in ("max_uses_per_user", "max_total_uses"):
            cap = getattr(self, name)
            if cap is not None and cap < 1:
                raise ValueError(f"{name} must be at least 1")


PolicyTerms = Union[SingleUserTerms, SharedWindowTerms]


@dataclass(frozen=True)
class CouponSnapshot:
    """A coupon as read from the store for one request."""
    id: str
    code: str
    discount: DiscountTerms
    terms: PolicyTerms
    status: CouponStatus = CouponStatus.ACTIVE
    current_total_uses: int = 0
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.terms, (SingleUserTerms, SharedWindowTerms)):
            raise TypeError(f"unsupported coupon terms: {type(self.terms).__name__}")
        object.__setattr__(self, "status", CouponStatus(self.status))
        if self.current_total_uses < 0:
            raise ValueError("current_total_uses cannot be negative")

    @property
    def policy(self) -> CouponPolicy:
        if isinstance(self.terms, SingleUserTerms):
            return CouponPolicy.SINGLE_USER
        return CouponPolicy.SHARED_WINDOW

    @classmethod
    def from_model(cls, coupon: Coupon) -> "CouponSnapshot":
        terms: PolicyTerms
        if coupon.policy == CouponPolicy.SINGLE_USER.value:
            terms = SingleUserTerms(user_id=coupon.user_id)
        elif coupon.policy == CouponPolicy.SHARED_WINDOW.value:
            terms = SharedWindowTerms(
                valid_from=coupon.valid_from,
                valid_until=coupon.valid_until,
                max_uses_per_user=coupon.max_uses_per_user,
                max_total_uses=coupon.max_total_uses,
            )
        else:
            raise ValueError(f"unknown coupon policy: {coupon.policy!r}")

        return cls(
            id=coupon.id,
            code=coupon.code,
            discount=DiscountTerms(
                kind=DiscountKind(coupon.discount_kind),
                value=Decimal(coupon.discount_value),
                max_discount=(
                    Decimal(coupon.max_discount) if coupon.max_discount is not None else None
                ),
                min_order_value=Decimal(coupon.min_order_value or 0),
            ),
            terms=terms,
            status=CouponStatus(coupon.status),
            current_total_uses=coupon.current_total_uses or 0,
            description=coupon.description,
            created_at=as_utc(coupon.created_at) if coupon.created_at else None,
            created_by=coupon.created_by,
        )

    def to_model(self) -> Coupon:
        """Build an unsaved ORM row for issuance."""
        coupon = Coupon(
            id=self.id,
            code=self.code,
            policy=self.policy.value,
            discount_kind=self.discount.kind.value,
            discount_value=self.discount.value,
            max_discount=self.discount.max_discount,
            min_order_value=self.discount.min_order_value,
            description=self.description,
            status=self.status.value,
            current_total_uses=self.current_total_uses,
            created_by=self.created_by,
        )
        if isinstance(self.terms, SingleUserTerms):
            coupon.user_id = self.terms.user_id
        else:
            coupon.valid_from = self.terms.valid_from
            coupon.valid_until = self.terms.valid_until
            coupon.max_uses_per_user = self.terms.max_uses_per_user
            coupon.max_total_uses = self.terms.max_total_uses
        return coupon


@dataclass(frozen=True)
class RedemptionRequest:
    code: str
    user_id: str
    order_value: Decimal
    order_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class UsageFacts:
    """Store-derived facts the rule engine needs beyond the coupon row."""
    order_already_redeemed: bool = False
    user_redemption_count: int = 0


@dataclass(frozen=True)
class Permitted:
    permitted: ClassVar[bool] = True
    discount: Decimal
    final_amount: Decimal


@dataclass(frozen=True)
class Denied:
    permitted: ClassVar[bool] = False
    reason: DenialReason
    message: str


@dataclass(frozen=True)
class Decision:
    """Rule engine verdict plus a state transition to apply either way.

    Expiry and exhaustion are facts about the coupon, so they are reported
    even when this attempt is denied.
    """
    verdict: Union[Permitted, Denied]
    pending_transition: Optional[CouponStatus] = None

    @property
    def permitted(self) -> bool:
        return self.verdict.permitted


@dataclass(frozen=True)
class LedgerEntry:
    """Fields of a redemption row about to be committed."""
    user_id: str
    order_id: Optional[str]
    order_value: Decimal
    discount_applied: Decimal
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class RedemptionRecord:
    id: str
    coupon_id: str
    user_id: str
    order_id: Optional[str]
    order_value: Decimal
    discount_applied: Decimal
    redeemed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_model(cls, row: CouponRedemption) -> "RedemptionRecord":
        return cls(
            id=row.id,
            coupon_id=row.coupon_id,
            user_id=row.user_id,
            order_id=row.order_id,
            order_value=Decimal(row.order_value),
            discount_applied=Decimal(row.discount_applied),
            redeemed_at=as_utc(row.redeemed_at),
            ip_address=row.ip_address,
            user_agent=row.user_agent,
        )


@dataclass(frozen=True)
class CommittedRedemption:
    """A ledger row together with the coupon as its commit left it."""
    record: RedemptionRecord
    coupon: CouponSnapshot


@dataclass(frozen=True)
class Redeemed:
    """Successful outcome: the redemption is committed."""
    permitted: ClassVar[bool] = True
    discount: Decimal
    final_amount: Decimal
    coupon: CouponSnapshot
    redemption: Optional[RedemptionRecord] = field(default=None)


Outcome = Union[Redeemed, Denied]


@dataclass
class ValidationLogData:
    """One validation attempt, buffered in memory until the batcher flushes it."""
    coupon_code: str
    is_valid: bool
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    order_value: Optional[Decimal] = None
    coupon_id: Optional[str] = None
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    discount_applied: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    response_time_ms: Optional[int] = None
    request_id: Optional[str] = None
    validated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_model(self) -> ValidationLog:
        return ValidationLog(
            coupon_code=self.coupon_code,
            coupon_id=self.coupon_id,
            user_id=self.user_id,
            order_id=self.order_id,
            order_value=self.order_value,
            is_valid=self.is_valid,
            reason_code=self.reason_code,
            reason=self.reason,
            discount_applied=self.discount_applied,
            final_amount=self.final_amount,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            response_time_ms=self.response_time_ms,
            validated_at=self.validated_at,
        )
