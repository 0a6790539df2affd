"""HTTP middleware for the coupon service."""

from coupons.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = ["RequestIdMiddleware", "get_request_id"]
