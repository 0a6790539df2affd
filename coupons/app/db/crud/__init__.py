"""CRUD operations package.

- coupon.py: coupon lookup, issuance and state transitions
- redemption.py: redemption ledger and usage reconciliation
- validation_log.py: batched validation log writes and analytics
"""

from coupons.app.db.crud.coupon import (
    create_coupon,
    get_coupon_by_code,
    get_coupon_by_id,
    list_active_shared_window_coupons,
    list_coupons_by_user,
    transition_coupon_status,
)
from coupons.app.db.crud.redemption import (
    count_user_redemptions,
    get_usage_reconciliation,
    is_order_redeemed,
    list_redemptions_by_coupon,
    list_redemptions_by_user,
    record_redemption,
)
from coupons.app.db.crud.validation_log import (
    get_recent_validation_logs,
    get_validation_stats,
    save_validation_logs_bulk,
)

__all__ = [
    # Coupon operations
    "create_coupon",
    "get_coupon_by_code",
    "get_coupon_by_id",
    "list_active_shared_window_coupons",
    "list_coupons_by_user",
    "transition_coupon_status",
    # Redemption operations
    "count_user_redemptions",
    "get_usage_reconciliation",
    "is_order_redeemed",
    "list_redemptions_by_coupon",
    "list_redemptions_by_user",
    "record_redemption",
    # Validation log operations
    "get_recent_validation_logs",
    "get_validation_stats",
    "save_validation_logs_bulk",
]
