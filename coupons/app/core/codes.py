"""Coupon code generation."""

import secrets
import string
import time
from typing import Optional

CODE_ALPHABET = string.ascii_uppercase + string.digits


def _to_base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_coupon_code(length: int = 10, prefix: Optional[str] = None) -> str:
    """Generate a random alphanumeric code, e.g. ``PROMO7K2M9QX4ZP1A``."""
    code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}{code}" if prefix else code


def generate_unique_coupon_code(prefix: Optional[str] = None) -> str:
    """Generate a time-ordered code, e.g. ``USER-LZ4K8Q2W9F3XA1``.

    The millisecond timestamp keeps codes issued by one process distinct;
    the random suffix separates concurrent issuers.
    """
    timestamp = _to_base36(time.time_ns() // 1_000_000)
    code = f"{timestamp}{generate_coupon_code(6)}"
    return f"{prefix}-{code}" if prefix else code
