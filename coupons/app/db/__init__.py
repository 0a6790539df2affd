"""Database package for the coupon service.

This package provides:
- Database models (Coupon, CouponRedemption, ValidationLog)
- Asynchronous engine and session management
- CRUD operations for all models
"""

from coupons.app.db.base import Base
from coupons.app.db.models import (
    Coupon,
    CouponPolicy,
    CouponRedemption,
    CouponStatus,
    DiscountKind,
    ValidationLog,
)

__all__ = [
    "Base",
    "Coupon",
    "CouponPolicy",
    "CouponRedemption",
    "CouponStatus",
    "DiscountKind",
    "ValidationLog",
]
