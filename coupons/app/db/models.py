import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from coupons.app.db.base import Base

# Per-coupon declared vs. actual usage, created by init_db.
USAGE_VIEW_NAME = "coupon_usage_stats"


class CouponPolicy(str, Enum):
    SINGLE_USER = "single_user"
    SHARED_WINDOW = "shared_window"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    INACTIVE = "inactive"


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        # Validation lookups filter on all three, so one index serves them.
        Index("idx_coupons_code_status_policy", "code", "status", "policy"),
        Index("idx_coupons_user_id", "user_id"),
        Index("idx_coupons_policy_status_window", "policy", "status", "valid_from", "valid_until"),
        CheckConstraint("policy IN ('single_user', 'shared_window')", name="ck_coupons_policy"),
        CheckConstraint(
            "status IN ('active', 'expired', 'exhausted', 'inactive')",
            name="ck_coupons_status",
        ),
        CheckConstraint("discount_kind IN ('percentage', 'fixed')", name="ck_coupons_discount_kind"),
        CheckConstraint("discount_value > 0", name="ck_coupons_discount_positive"),
        CheckConstraint(
            "(policy = 'single_user' AND user_id IS NOT NULL"
            " AND valid_from IS NULL AND valid_until IS NULL"
            " AND max_uses_per_user IS NULL AND max_total_uses IS NULL)"
            " OR (policy = 'shared_window' AND user_id IS NULL"
            " AND valid_from IS NOT NULL AND valid_until IS NOT NULL"
            " AND valid_from < valid_until)",
            name="ck_coupons_policy_terms",
        ),
        CheckConstraint("current_total_uses >= 0", name="ck_coupons_uses_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(50), unique=True)
    policy: Mapped[str] = mapped_column(String(20))  # single_user | shared_window
    discount_kind: Mapped[str] = mapped_column(String(20))  # percentage | fixed
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    max_discount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    min_order_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=CouponStatus.ACTIVE.value)

    # single_user terms
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # shared_window terms
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    max_uses_per_user: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_total_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_total_uses: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Coupon(code={self.code}, policy={self.policy}, status={self.status})>"


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        Index("idx_coupon_redemptions_coupon_user", "coupon_id", "user_id"),
        Index("idx_coupon_redemptions_user_id", "user_id"),
        Index("idx_coupon_redemptions_redeemed_at", "redeemed_at"),
        # An order may redeem at most one coupon, across all coupons.
        Index(
            "uq_coupon_redemptions_order_id",
            "order_id",
            unique=True,
            postgresql_where=text("order_id IS NOT NULL"),
            sqlite_where=text("order_id IS NOT NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    coupon_id: Mapped[str] = mapped_column(ForeignKey("coupons.id"))
    user_id: Mapped[str] = mapped_column(String(100))
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_value: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)


class ValidationLog(Base):
    __tablename__ = "validation_logs"
    __table_args__ = (
        Index("idx_validation_logs_analytics", "coupon_code", "is_valid", "validated_at"),
        Index("idx_validation_logs_user_id", "user_id"),
        Index("idx_validation_logs_validated_at", "validated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coupon_code: Mapped[str] = mapped_column(String(50))
    coupon_id: Mapped[str | None] = mapped_column(
        ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean)
    reason_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_applied: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    final_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    validated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
