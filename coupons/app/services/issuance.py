"""Coupon issuance for both policies."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from coupons.app.core.codes import generate_coupon_code, generate_unique_coupon_code
from coupons.app.core.config import settings
from coupons.app.core.logging import get_log_context, get_logger
from coupons.app.db.models import CouponStatus, DiscountKind
from coupons.app.exceptions import CouponCodeConflictError, InvalidCouponTermsError
from coupons.app.services.grant_store import GrantStore, get_grant_store
from coupons.app.services.models import (
    CouponSnapshot,
    DiscountTerms,
    PolicyTerms,
    SharedWindowTerms,
    SingleUserTerms,
)

logger = get_logger(__name__)

# Generated codes are retried on collision; caller-chosen codes are not.
MAX_CODE_ATTEMPTS = 3


def _discount_terms(
    discount_kind: DiscountKind,
    discount_value: Decimal,
    max_discount: Optional[Decimal],
    min_order_value: Optional[Decimal],
) -> DiscountTerms:
    return DiscountTerms(
        kind=discount_kind,
        value=discount_value,
        max_discount=max_discount,
        min_order_value=min_order_value if min_order_value is not None else Decimal("0"),
    )


class IssuanceService:
    """Creates single-user and shared-window coupons."""

    def __init__(self, store: GrantStore):
        self._store = store

    async def _issue(
        self,
        code_factory,
        discount: DiscountTerms,
        terms: PolicyTerms,
        description: Optional[str],
        created_by: Optional[str],
        attempts: int,
    ) -> CouponSnapshot:
        attempt = 0
        while True:
            attempt += 1
            try:
                snapshot = CouponSnapshot(
                    id=str(uuid.uuid4()),
                    code=code_factory(),
                    discount=discount,
                    terms=terms,
                    status=CouponStatus.ACTIVE,
                    description=description,
                    created_by=created_by or settings.default_created_by,
                )
            except ValueError as e:
                raise InvalidCouponTermsError(str(e)) from e

            try:
                coupon = await self._store.issue(snapshot)
            except CouponCodeConflictError:
                if attempt >= attempts:
                    raise
                logger.warning(
                    f"Generated code {snapshot.code} collided, retrying",
                    extra=get_log_context(coupon_code=snapshot.code),
                )
                continue

            logger.info(
                f"Issued {coupon.policy.value} coupon {coupon.code}",
                extra=get_log_context(coupon_code=coupon.code),
            )
            return coupon

    async def issue_single_user(
        self,
        user_id: str,
        discount_kind: DiscountKind,
        discount_value: Decimal,
        max_discount: Optional[Decimal] = None,
        min_order_value: Optional[Decimal] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CouponSnapshot:
        """Issue a coupon usable once, by `user_id` only.

        The code is generated as ``USER-<base36 timestamp><random>``.
        """
        try:
            discount = _discount_terms(discount_kind, discount_value, max_discount, min_order_value)
            terms = SingleUserTerms(user_id=user_id)
        except ValueError as e:
            raise InvalidCouponTermsError(str(e)) from e

        return await self._issue(
            lambda: generate_unique_coupon_code(settings.user_code_prefix),
            discount,
            terms,
            description,
            created_by,
            attempts=MAX_CODE_ATTEMPTS,
        )

    async def issue_shared_window(
        self,
        discount_kind: DiscountKind,
        discount_value: Decimal,
        valid_from: datetime,
        valid_until: datetime,
        code: Optional[str] = None,
        max_discount: Optional[Decimal] = None,
        min_order_value: Optional[Decimal] = None,
        max_uses_per_user: Optional[int] = None,
        max_total_uses: Optional[int] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CouponSnapshot:
        """Issue a coupon usable by anyone within [valid_from, valid_until).

        Raises:
            CouponCodeConflictError: `code` was given and is already taken
            InvalidCouponTermsError: The window or caps are invalid
        """
        try:
            discount = _discount_terms(discount_kind, discount_value, max_discount, min_order_value)
            terms = SharedWindowTerms(
                valid_from=valid_from,
                valid_until=valid_until,
                max_uses_per_user=max_uses_per_user,
                max_total_uses=max_total_uses,
            )
        except ValueError as e:
            raise InvalidCouponTermsError(str(e)) from e

        if code:
            return await self._issue(
                lambda: code, discount, terms, description, created_by, attempts=1
            )
        return await self._issue(
            lambda: generate_coupon_code(settings.promo_code_length, settings.promo_code_prefix),
            discount,
            terms,
            description,
            created_by,
            attempts=MAX_CODE_ATTEMPTS,
        )


def get_issuance_service() -> IssuanceService:
    return IssuanceService(get_grant_store())
