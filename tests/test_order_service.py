"""
Tests for OrderService.

Order creation, idempotent payment confirmation, and the single-transaction
rollback when a confirmation step fails.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from conftest import (
    added_of_type,
    create_coupon,
    create_order,
    create_product,
    make_result,
    utc_now,
)
from fulfillment.db.models import CouponUsage, License, OutboxEvent
from fulfillment.exceptions import (
    AlreadyOwnedError,
    DataIntegrityError,
    DuplicateCartItemError,
    FulfillmentIntegrityError,
    InvalidStateTransitionError,
    NotOwnerError,
    ProductUnavailableError,
    ResourceNotFoundError,
)
from fulfillment.models.api import (
    LicenseTier,
    OrderStatus,
    PaymentMethod,
    ProductKind,
    ProductStatus,
    UserRole,
)
from fulfillment.models.domain import Principal
from fulfillment.services.orders import OrderService, generate_order_number


class TestCreateOrder:
    """Tests for pending order creation."""

    async def test_snapshots_prices_and_split(self, db_session: AsyncMock) -> None:
        good = create_product(price_minor=1000)
        service_item = create_product(kind=ProductKind.SERVICE, price_minor=5000)
        db_session.execute = AsyncMock(
            side_effect=[make_result(many=[good, service_item]), make_result(many=[])]
        )
        db_session.get = AsyncMock(return_value=MagicMock())

        order = await OrderService(db_session).create_order(
            uuid4(), [good.id, service_item.id], buyer_email="buyer@example.com"
        )

        assert order.status == OrderStatus.PENDING
        assert order.subtotal_minor == 6000
        assert order.discount_minor == 0
        assert order.total_minor == 6000
        assert order.order_number.startswith("FLW-")
        assert [i.product_id for i in order.items] == [good.id, service_item.id]
        assert (order.items[0].platform_fee_minor, order.items[0].creator_payout_minor) == (300, 700)
        assert (order.items[1].platform_fee_minor, order.items[1].creator_payout_minor) == (1000, 4000)
        db_session.commit.assert_awaited_once()

    async def test_duplicate_item_rejected(self, db_session: AsyncMock) -> None:
        product_id = uuid4()

        with pytest.raises(DuplicateCartItemError):
            await OrderService(db_session).create_order(uuid4(), [product_id, product_id])

        db_session.execute.assert_not_awaited()

    async def test_unapproved_product_rejected(self, db_session: AsyncMock) -> None:
        draft = create_product(status=ProductStatus.DRAFT)
        db_session.execute = AsyncMock(return_value=make_result(many=[draft]))

        with pytest.raises(ProductUnavailableError):
            await OrderService(db_session).create_order(uuid4(), [draft.id])

    async def test_unknown_product_rejected(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(many=[]))

        with pytest.raises(ProductUnavailableError):
            await OrderService(db_session).create_order(uuid4(), [uuid4()])

    async def test_owned_good_rejected(self, db_session: AsyncMock) -> None:
        good = create_product(title="Budget Tracker")
        db_session.execute = AsyncMock(
            side_effect=[make_result(many=[good]), make_result(many=[good.id])]
        )

        with pytest.raises(AlreadyOwnedError) as exc_info:
            await OrderService(db_session).create_order(uuid4(), [good.id])

        assert "Budget Tracker" in str(exc_info.value)
        db_session.add.assert_not_called()

    async def test_mixed_currency_rejected(self, db_session: AsyncMock) -> None:
        usd = create_product(kind=ProductKind.SERVICE)
        eur = create_product(kind=ProductKind.SERVICE, currency="EUR")
        db_session.execute = AsyncMock(return_value=make_result(many=[usd, eur]))

        with pytest.raises(DataIntegrityError):
            await OrderService(db_session).create_order(uuid4(), [usd.id, eur.id])


class TestConfirmPayment:
    """Tests for payment confirmation."""

    async def test_confirms_and_issues_one_license_per_good(self, db_session: AsyncMock) -> None:
        good_a = create_product(license_tier=LicenseTier.COMMERCIAL)
        good_b = create_product()
        service_item = create_product(kind=ProductKind.SERVICE)
        order = create_order([good_a, good_b, service_item])
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=order.id), make_result(many=[good_a, good_b])]
        )

        paid = await OrderService(db_session).confirm_payment(order.id, "pi_123", PaymentMethod.STRIPE)

        assert paid.status == OrderStatus.PAID
        assert paid.charge_ref == "pi_123"
        assert paid.payment_method == PaymentMethod.STRIPE
        assert paid.paid_at is not None

        licenses = added_of_type(db_session, License)
        assert {lic.product_id for lic in licenses} == {good_a.id, good_b.id}
        commercial = next(lic for lic in licenses if lic.product_id == good_a.id)
        assert commercial.tier == LicenseTier.COMMERCIAL
        assert commercial.max_access == 25
        assert len(added_of_type(db_session, OutboxEvent)) == 1
        db_session.commit.assert_awaited_once()

    async def test_transition_is_conditional_on_pending(self, db_session: AsyncMock) -> None:
        service_item = create_product(kind=ProductKind.SERVICE)
        order = create_order([service_item])
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(return_value=make_result(one=order.id))

        await OrderService(db_session).confirm_payment(order.id, None, PaymentMethod.FREE)

        stmt = db_session.execute.call_args_list[0].args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        assert "orders.status = " in str(compiled)
        assert compiled.params["status_1"] == OrderStatus.PENDING

    async def test_double_confirm_issues_licenses_once(self, db_session: AsyncMock) -> None:
        good = create_product()
        order = create_order([good])
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=order.id), make_result(many=[good])]
        )
        service = OrderService(db_session)

        first = await service.confirm_payment(order.id, "pi_1", PaymentMethod.STRIPE)
        second = await service.confirm_payment(order.id, "pi_1", PaymentMethod.STRIPE)

        assert first.status == OrderStatus.PAID
        assert second.status == OrderStatus.PAID
        assert len(added_of_type(db_session, License)) == 1
        assert db_session.execute.await_count == 2

    async def test_lost_race_returns_paid_order(self, db_session: AsyncMock) -> None:
        """A concurrent confirmation won the UPDATE; this one issues nothing."""
        good = create_product()
        pending = create_order([good])
        paid = create_order([good], buyer_id=pending.buyer_id, status=OrderStatus.PAID, paid_at=utc_now())
        paid.id = pending.id
        db_session.get = AsyncMock(side_effect=[pending, paid])
        db_session.execute = AsyncMock(return_value=make_result(one=None))

        result = await OrderService(db_session).confirm_payment(pending.id, "pi_1", PaymentMethod.STRIPE)

        assert result.status == OrderStatus.PAID
        assert added_of_type(db_session, License) == []
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_failed_order_cannot_be_paid(self, db_session: AsyncMock) -> None:
        order = create_order([create_product()], status=OrderStatus.FAILED)
        db_session.get = AsyncMock(return_value=order)

        with pytest.raises(InvalidStateTransitionError):
            await OrderService(db_session).confirm_payment(order.id, "pi_1", PaymentMethod.STRIPE)

        db_session.execute.assert_not_awaited()

    async def test_missing_order(self, db_session: AsyncMock) -> None:
        with pytest.raises(ResourceNotFoundError):
            await OrderService(db_session).confirm_payment(uuid4(), "pi_1", PaymentMethod.STRIPE)

    async def test_records_coupon_usage(self, db_session: AsyncMock) -> None:
        good = create_product(price_minor=10000)
        coupon = create_coupon()
        order = create_order([good], discount_minor=1000, coupon=coupon)
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(one=order.id),
                make_result(many=[good]),
                make_result(one=1),
            ]
        )

        paid = await OrderService(db_session).confirm_payment(order.id, "pi_9", PaymentMethod.STRIPE)

        assert paid.total_minor == 9000
        usages = added_of_type(db_session, CouponUsage)
        assert len(usages) == 1
        assert usages[0].coupon_id == coupon.id
        assert usages[0].discount_minor == 1000

    async def test_coupon_limit_failure_rolls_back_everything(self, db_session: AsyncMock) -> None:
        good = create_product(price_minor=10000)
        coupon = create_coupon()
        order = create_order([good], discount_minor=1000, coupon=coupon)
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(one=order.id),
                make_result(many=[good]),
                make_result(one=None),
            ]
        )

        with pytest.raises(FulfillmentIntegrityError) as exc_info:
            await OrderService(db_session).confirm_payment(order.id, "pi_9", PaymentMethod.STRIPE)

        assert exc_info.value.step == "record_coupon_usage"
        assert exc_info.value.http_status == 500
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()
        assert order.status == OrderStatus.PENDING

    async def test_missing_product_fails_license_step(self, db_session: AsyncMock) -> None:
        order = create_order([create_product()])
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(
            side_effect=[make_result(one=order.id), make_result(many=[])]
        )

        with pytest.raises(FulfillmentIntegrityError) as exc_info:
            await OrderService(db_session).confirm_payment(order.id, "pi_1", PaymentMethod.STRIPE)

        assert exc_info.value.step == "issue_licenses"
        db_session.rollback.assert_awaited_once()


class TestFailAndExpire:
    async def test_mark_failed(self, db_session: AsyncMock) -> None:
        order = create_order([create_product()])
        db_session.get = AsyncMock(return_value=order)
        db_session.execute = AsyncMock(return_value=make_result(one=order.id))

        result = await OrderService(db_session).mark_failed(order.id)

        assert result.status == OrderStatus.FAILED
        assert len(added_of_type(db_session, OutboxEvent)) == 1
        db_session.commit.assert_awaited_once()

    async def test_mark_failed_ignores_paid_order(self, db_session: AsyncMock) -> None:
        order = create_order([create_product()], status=OrderStatus.PAID, paid_at=utc_now())
        db_session.get = AsyncMock(return_value=order)

        result = await OrderService(db_session).mark_failed(order.id)

        assert result.status == OrderStatus.PAID
        db_session.execute.assert_not_awaited()

    async def test_expire_stale_orders(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(many=[uuid4(), uuid4(), uuid4()]))

        expired = await OrderService(db_session).expire_stale_orders(utc_now() - timedelta(hours=24))

        assert expired == 3
        stmt = db_session.execute.call_args.args[0]
        compiled = stmt.compile(dialect=postgresql.dialect())
        assert compiled.params["status"] == OrderStatus.EXPIRED
        assert compiled.params["status_1"] == OrderStatus.PENDING
        db_session.commit.assert_awaited_once()


class TestGetOrder:
    async def test_owner_can_read(self, db_session: AsyncMock, buyer: Principal) -> None:
        order = create_order([create_product()], buyer_id=buyer.user_id)
        db_session.get = AsyncMock(return_value=order)

        result = await OrderService(db_session).get_order(buyer, order.id)

        assert result.order_id == order.id

    async def test_other_buyer_rejected(self, db_session: AsyncMock, buyer: Principal) -> None:
        order = create_order([create_product()])
        db_session.get = AsyncMock(return_value=order)

        with pytest.raises(NotOwnerError):
            await OrderService(db_session).get_order(buyer, order.id)

    async def test_admin_can_read_any(self, db_session: AsyncMock) -> None:
        order = create_order([create_product()])
        db_session.get = AsyncMock(return_value=order)
        admin = Principal(user_id=uuid4(), role=UserRole.ADMIN)

        result = await OrderService(db_session).get_order(admin, order.id)

        assert result.buyer_id == order.buyer_id


def test_order_number_format() -> None:
    number = generate_order_number()
    prefix, millis, suffix = number.split("-")

    assert prefix == "FLW"
    assert millis.isdigit()
    assert len(suffix) == 5 and suffix.isdigit()
