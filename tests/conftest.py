from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
import uuid

import pytest
import pytest_asyncio

from coupons.app.db.async_session import build_async_engine, build_session_maker
from coupons.app.db.init_db import init_database
from coupons.app.db.models import CouponStatus, DiscountKind
from coupons.app.services.grant_store import GrantStore
from coupons.app.services.models import (
    CouponSnapshot,
    DiscountTerms,
    SharedWindowTerms,
    SingleUserTerms,
)


def sqlite_url(path) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths. The path already starts
    # with '/', so strip it when appending after '////'.
    return f"sqlite+aiosqlite:////{str(path).lstrip('/')}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_async_engine(sqlite_url(tmp_path / "coupons_test.db"))
    await init_database(engine=engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    return GrantStore(build_session_maker(engine))


@pytest.fixture
def shared_window_coupon():
    """Factory for shared-window snapshots; the window is open by default."""

    def _make(
        code: str = "SPRING2026",
        kind: DiscountKind = DiscountKind.PERCENTAGE,
        value: str = "20",
        max_discount: Optional[str] = None,
        min_order_value: str = "0",
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        max_uses_per_user: Optional[int] = None,
        max_total_uses: Optional[int] = None,
        current_total_uses: int = 0,
        status: CouponStatus = CouponStatus.ACTIVE,
    ) -> CouponSnapshot:
        now = datetime.now(timezone.utc)
        return CouponSnapshot(
            id=str(uuid.uuid4()),
            code=code,
            discount=DiscountTerms(
                kind=kind,
                value=Decimal(value),
                max_discount=Decimal(max_discount) if max_discount else None,
                min_order_value=Decimal(min_order_value),
            ),
            terms=SharedWindowTerms(
                valid_from=valid_from or now - timedelta(days=1),
                valid_until=valid_until or now + timedelta(days=1),
                max_uses_per_user=max_uses_per_user,
                max_total_uses=max_total_uses,
            ),
            status=status,
            current_total_uses=current_total_uses,
            created_by="tests",
        )

    return _make


@pytest.fixture
def single_user_coupon():
    """Factory for single-user snapshots bound to `user_id`."""

    def _make(
        user_id: str = "user-1",
        code: str = "USER-TEST0001",
        kind: DiscountKind = DiscountKind.FIXED,
        value: str = "10",
        min_order_value: str = "0",
        status: CouponStatus = CouponStatus.ACTIVE,
    ) -> CouponSnapshot:
        return CouponSnapshot(
            id=str(uuid.uuid4()),
            code=code,
            discount=DiscountTerms(
                kind=kind,
                value=Decimal(value),
                min_order_value=Decimal(min_order_value),
            ),
            terms=SingleUserTerms(user_id=user_id),
            status=status,
            created_by="tests",
        )

    return _make
