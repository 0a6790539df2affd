"""Coupon redemption service application package."""
