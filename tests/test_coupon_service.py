"""
Tests for CouponService.

Validation order, the SAVE20 scenario, and race-safe usage accounting.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from conftest import added_of_type, create_coupon, make_result, utc_now
from fulfillment.db.models import Coupon, CouponUsage
from fulfillment.exceptions import (
    CouponLimitReachedError,
    CouponRejectedError,
    DuplicateCouponCodeError,
    ResourceNotFoundError,
)
from fulfillment.models.api import CouponScope, DiscountKind
from fulfillment.models.domain import NewCoupon
from fulfillment.services.coupons import CouponService


def coupon_lookup(db_session: AsyncMock, coupon: Coupon | None, user_uses: int = 0) -> None:
    """Queue the code lookup and the per-user usage count."""
    db_session.execute = AsyncMock(
        side_effect=[make_result(one=coupon), make_result(count=user_uses)]
    )


class TestValidateCoupon:
    """Tests for coupon validation."""

    async def test_save20_scenario(self, db_session: AsyncMock) -> None:
        """20% capped at $10 on $100 -> $10 off; a second buyer hits the usage limit."""
        coupon = create_coupon()
        coupon_lookup(db_session, coupon)

        quote = await CouponService(db_session).validate_coupon(uuid4(), "save20", 10000)

        assert quote.valid is True
        assert quote.discount_minor == 1000
        assert quote.final_amount_minor == 9000
        assert quote.code == "SAVE20"

        # First buyer redeemed it
        coupon.used_count = 1
        coupon_lookup(db_session, coupon)

        with pytest.raises(CouponRejectedError) as exc_info:
            await CouponService(db_session).validate_coupon(uuid4(), "SAVE20", 10000)

        assert exc_info.value.denial == "usage_limit_reached"
        assert exc_info.value.http_status == 400

    async def test_unknown_code(self, db_session: AsyncMock) -> None:
        coupon_lookup(db_session, None)

        with pytest.raises(CouponRejectedError) as exc_info:
            await CouponService(db_session).validate_coupon(uuid4(), "NOPE", 1000)

        assert exc_info.value.denial == "not_found"

    @pytest.mark.parametrize(
        ("overrides", "denial"),
        [
            ({"is_active": False, "expires_at": utc_now() - timedelta(days=1)}, "inactive"),
            ({"starts_at": utc_now() + timedelta(days=1)}, "not_started"),
            (
                {"expires_at": utc_now() - timedelta(minutes=1), "used_count": 1},
                "expired",
            ),
            ({"used_count": 1, "scope": CouponScope.SERVICES}, "usage_limit_reached"),
            ({"scope": CouponScope.SERVICES, "min_order_minor": 50000}, "scope_mismatch"),
            ({"min_order_minor": 50000}, "below_minimum"),
        ],
    )
    async def test_first_failed_check_wins(
        self, db_session: AsyncMock, overrides: dict, denial: str
    ) -> None:
        coupon = create_coupon(**overrides)
        coupon_lookup(db_session, coupon)

        with pytest.raises(CouponRejectedError) as exc_info:
            await CouponService(db_session).validate_coupon(
                uuid4(), "SAVE20", 10000, scope=CouponScope.GOODS
            )

        assert exc_info.value.denial == denial

    async def test_per_user_limit(self, db_session: AsyncMock) -> None:
        coupon = create_coupon(usage_limit=100, per_user_limit=1)
        coupon_lookup(db_session, coupon, user_uses=1)

        with pytest.raises(CouponRejectedError) as exc_info:
            await CouponService(db_session).validate_coupon(uuid4(), "SAVE20", 10000)

        assert exc_info.value.denial == "per_user_limit_reached"

    async def test_product_restricted_coupon(self, db_session: AsyncMock) -> None:
        allowed = uuid4()
        coupon = create_coupon(product_ids=[allowed])
        coupon_lookup(db_session, coupon)

        with pytest.raises(CouponRejectedError) as exc_info:
            await CouponService(db_session).validate_coupon(
                uuid4(), "SAVE20", 10000, product_ids=[allowed, uuid4()]
            )

        assert exc_info.value.denial == "product_not_eligible"

    async def test_fixed_coupon_clamped_to_amount(self, db_session: AsyncMock) -> None:
        coupon = create_coupon(
            discount_kind=DiscountKind.FIXED, discount_value=5000, max_discount_minor=None
        )
        coupon_lookup(db_session, coupon)

        quote = await CouponService(db_session).validate_coupon(uuid4(), "SAVE20", 3000)

        assert quote.discount_minor == 3000
        assert quote.final_amount_minor == 0

    async def test_validation_never_writes(self, db_session: AsyncMock) -> None:
        coupon_lookup(db_session, create_coupon())

        await CouponService(db_session).validate_coupon(uuid4(), "SAVE20", 10000)

        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()


class TestRecordUsage:
    """Tests for the conditional usage increment."""

    async def test_records_usage_row(self, db_session: AsyncMock) -> None:
        coupon_id, user_id, order_id = uuid4(), uuid4(), uuid4()
        db_session.execute = AsyncMock(return_value=make_result(one=1))

        used = await CouponService(db_session).record_usage(coupon_id, user_id, order_id, 1000)

        assert used == 1
        usages = added_of_type(db_session, CouponUsage)
        assert len(usages) == 1
        assert usages[0].order_id == order_id
        assert usages[0].discount_minor == 1000
        db_session.commit.assert_not_awaited()

    async def test_increment_is_guarded_by_limit(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(one=1))

        await CouponService(db_session).record_usage(uuid4(), uuid4(), uuid4(), 100)

        stmt = db_session.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "usage_limit IS NULL" in sql
        assert "coupons.used_count < coupons.usage_limit" in sql

    async def test_limit_reached_raises(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(one=None))

        with pytest.raises(CouponLimitReachedError):
            await CouponService(db_session).record_usage(uuid4(), uuid4(), uuid4(), 100)

        db_session.add.assert_not_called()

    async def test_concurrent_redemptions_never_exceed_limit(self, db_session: AsyncMock) -> None:
        """N+k concurrent record_usage calls -> exactly N succeed."""
        limit, extra = 3, 4
        state = {"used": 0}

        async def conditional_increment(stmt, *args, **kwargs):
            await asyncio.sleep(0)
            if state["used"] < limit:
                state["used"] += 1
                return make_result(one=state["used"])
            return make_result(one=None)

        db_session.execute = AsyncMock(side_effect=conditional_increment)
        service = CouponService(db_session)
        coupon_id = uuid4()

        results = await asyncio.gather(
            *(
                service.record_usage(coupon_id, uuid4(), uuid4(), 500)
                for _ in range(limit + extra)
            ),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, int)]
        failures = [r for r in results if isinstance(r, CouponLimitReachedError)]
        assert len(successes) == limit
        assert len(failures) == extra
        assert state["used"] == limit
        assert len(added_of_type(db_session, CouponUsage)) == limit


class TestCouponAdmin:
    """Tests for coupon create/list/deactivate."""

    def new_coupon(self, code: str = "launch10") -> NewCoupon:
        return NewCoupon(
            code=code,
            description="Launch week",
            discount_kind=DiscountKind.PERCENTAGE,
            discount_value=10,
            min_order_minor=0,
            max_discount_minor=None,
            usage_limit=None,
            per_user_limit=1,
            scope=CouponScope.ALL,
            product_ids=None,
            starts_at=None,
            expires_at=utc_now() + timedelta(days=7),
        )

    async def test_create_normalizes_code(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(one=None))

        coupon = await CouponService(db_session).create_coupon(uuid4(), self.new_coupon())

        assert coupon.code == "LAUNCH10"
        assert coupon.used_count == 0
        assert coupon.is_active is True
        db_session.commit.assert_awaited_once()

    async def test_create_duplicate_code(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(one=create_coupon(code="LAUNCH10")))

        with pytest.raises(DuplicateCouponCodeError):
            await CouponService(db_session).create_coupon(uuid4(), self.new_coupon())

    async def test_create_duplicate_race_maps_integrity_error(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(one=None))
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))

        with pytest.raises(DuplicateCouponCodeError):
            await CouponService(db_session).create_coupon(uuid4(), self.new_coupon())

        db_session.rollback.assert_awaited_once()

    async def test_list_coupons(self, db_session: AsyncMock) -> None:
        coupons = [create_coupon(code="A"), create_coupon(code="B")]
        db_session.execute = AsyncMock(
            side_effect=[make_result(count=2), make_result(many=coupons)]
        )

        listed, total = await CouponService(db_session).list_coupons(page=1, limit=20)

        assert total == 2
        assert [c.code for c in listed] == ["A", "B"]

    async def test_deactivate(self, db_session: AsyncMock) -> None:
        coupon = create_coupon()
        db_session.get = AsyncMock(return_value=coupon)

        result = await CouponService(db_session).deactivate_coupon(coupon.id)

        assert result.is_active is False
        db_session.commit.assert_awaited_once()

    async def test_deactivate_missing(self, db_session: AsyncMock) -> None:
        db_session.get = AsyncMock(return_value=None)

        with pytest.raises(ResourceNotFoundError):
            await CouponService(db_session).deactivate_coupon(uuid4())
