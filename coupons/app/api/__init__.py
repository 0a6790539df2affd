"""API routers for the coupon service."""
