"""Coupon redemption service."""
