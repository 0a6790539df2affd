"""Custom exceptions for the coupon service."""


class CouponServiceException(Exception):
    """Base class for coupon service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Coupon service error"):
        self.message = message
        super().__init__(message)


class CouponNotFoundError(CouponServiceException):
    """Raised when a coupon code or id is unknown.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404

    def __init__(self, code: str | None = None, message: str = "Coupon not found"):
        self.code = code
        super().__init__(message)


class PolicyViolationError(CouponServiceException):
    """Raised when a redemption attempt is denied by a coupon rule.

    The reason code is business information and is returned verbatim.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, reason_code: str, message: str):
        self.reason_code = reason_code
        super().__init__(message)


class CouponCodeConflictError(CouponServiceException):
    """Raised when issuing a coupon whose code already exists.

    Maps to HTTP 409 Conflict.
    """
    status_code = 409

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Coupon code {code!r} already exists")


class InvalidCouponTermsError(CouponServiceException):
    """Raised when issuance parameters violate the coupon policy invariants.

    Maps to HTTP 422 Unprocessable Entity.
    """
    status_code = 422


class StoreUnavailableError(CouponServiceException):
    """Raised when the coupon store cannot be reached or timed out.

    Retryable. Never treated as "coupon not found".
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, operation: str, message: str = "Coupon store unavailable"):
        self.operation = operation
        super().__init__(message)


class InternalCommitError(CouponServiceException):
    """Raised when a permitted redemption could not be committed.

    Maps to HTTP 500 Internal Server Error.
    """
    status_code = 500

    def __init__(self, message: str = "Redemption could not be recorded"):
        super().__init__(message)


class DuplicateRedemptionError(CouponServiceException):
    """Raised by the store when an order id was already redeemed.

    The unique index on order_id is the final arbiter for concurrent
    attempts sharing an order id.
    """
    status_code = 400

    def __init__(self, order_id: str | None):
        self.order_id = order_id
        super().__init__(f"Order {order_id!r} has already used a coupon")


class RedemptionConflictError(CouponServiceException):
    """Raised by the store when the guarded counter update matched no row.

    Another attempt exhausted the coupon, used a single-use coupon, took
    the user's last allowed use, or the coupon left the active state
    between evaluation and commit. `reason` carries the denial reason code
    the store read inside the refused transaction, when it could tell.
    """
    status_code = 400

    def __init__(self, coupon_id: str, reason: str | None = None):
        self.coupon_id = coupon_id
        self.reason = reason
        super().__init__(f"Coupon {coupon_id} can no longer be redeemed")


class AuditBatcherStoppedError(CouponServiceException):
    """Raised when enqueueing a validation log after the batcher stopped."""
    status_code = 500

    def __init__(self):
        super().__init__("Validation log batcher has been shut down")
