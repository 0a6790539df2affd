"""Coupon services: store gateway, rules, accounting, audit batching."""

from coupons.app.services.audit_batcher import AuditBatcher, get_audit_batcher
from coupons.app.services.grant_store import GrantStore, get_grant_store
from coupons.app.services.issuance import IssuanceService, get_issuance_service
from coupons.app.services.redemption import RedemptionCoordinator, get_coordinator

__all__ = [
    "AuditBatcher",
    "GrantStore",
    "IssuanceService",
    "RedemptionCoordinator",
    "get_audit_batcher",
    "get_coordinator",
    "get_grant_store",
    "get_issuance_service",
]
