"""Core utilities for the coupon service."""

from coupons.app.core.codes import generate_coupon_code, generate_unique_coupon_code
from coupons.app.core.config import settings
from coupons.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "generate_coupon_code",
    "generate_unique_coupon_code",
]
