"""
Order Service - the order ledger and payment confirmation.

NO DICTIONARIES - All operations use strongly typed domain models.

Status only moves through conditional UPDATEs whose predicate names the
expected current status. confirm_payment applies the paid transition, the
licenses, the coupon redemption and the outbox event in one transaction:
either all of them commit or none do.
"""

import secrets
import time
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.config import settings
from fulfillment.db.models import Order, OrderItem
from fulfillment.exceptions import (
    AlreadyOwnedError,
    DataIntegrityError,
    DuplicateCartItemError,
    FulfillmentError,
    FulfillmentIntegrityError,
    InvalidStateTransitionError,
    NotOwnerError,
    ProductUnavailableError,
    ResourceNotFoundError,
    WriteVerificationError,
)
from fulfillment.models.api import (
    OrderStatus,
    PaymentMethod,
    ProductKind,
    ProductStatus,
)
from fulfillment.models.domain import OrderData, OrderLineData, Principal
from fulfillment.models.lifecycle import ensure_order_transition
from fulfillment.observability.logging import get_logger
from fulfillment.observability.metrics import metrics
from fulfillment.observability.tracing import trace_operation
from fulfillment.services.catalog import CatalogService
from fulfillment.services.coupons import CouponService
from fulfillment.services.licenses import LicenseService
from fulfillment.services.notifications import OutboxEventType, enqueue_event
from fulfillment.services.pricing import split_line_price

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def generate_order_number() -> str:
    """FLW-<epoch ms>-<5 digits>."""
    return f"FLW-{int(time.time() * 1000)}-{secrets.randbelow(100000):05d}"


class OrderService:
    """
    Order ledger.

    Handles:
    - Creating pending orders with an immutable price snapshot
    - Confirming payment (idempotent, single transaction)
    - Failing and expiring pending orders
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.catalog = CatalogService(session)
        self.licenses = LicenseService(session)
        self.coupons = CouponService(session)

    async def create_order(
        self, buyer_id: UUID, product_ids: list[UUID], buyer_email: str | None = None
    ) -> OrderData:
        """
        Create a pending order priced from the current catalog.

        Raises:
            DuplicateCartItemError: same product twice in one cart
            ProductUnavailableError: product unknown or not approved
            AlreadyOwnedError: buyer already holds an active license for a good
            DataIntegrityError: products priced in different currencies
        """
        seen: set[UUID] = set()
        for product_id in product_ids:
            if product_id in seen:
                raise DuplicateCartItemError(product_id)
            seen.add(product_id)

        products = await self.catalog.get_products(product_ids)
        for product_id in product_ids:
            product = products.get(product_id)
            if product is None or product.status != ProductStatus.APPROVED:
                raise ProductUnavailableError(product_id)

        good_ids = [pid for pid in product_ids if products[pid].kind == ProductKind.GOOD]
        owned = await self.licenses.owned_product_ids(buyer_id, good_ids)
        for product_id in good_ids:
            if product_id in owned:
                raise AlreadyOwnedError(product_id, products[product_id].title)

        currencies = {products[pid].currency for pid in product_ids}
        if len(currencies) > 1:
            raise DataIntegrityError(f"Cart mixes currencies: {sorted(currencies)}")
        currency = currencies.pop() if currencies else settings.default_currency

        items: list[OrderItem] = []
        for position, product_id in enumerate(product_ids):
            product = products[product_id]
            split = split_line_price(product.price_minor, ProductKind(product.kind))
            items.append(
                OrderItem(
                    id=uuid4(),
                    position=position,
                    kind=ProductKind(product.kind),
                    product_id=product.id,
                    title=product.title,
                    price_minor=split.price_minor,
                    creator_id=product.creator_id,
                    platform_fee_minor=split.platform_fee_minor,
                    creator_payout_minor=split.creator_payout_minor,
                )
            )

        subtotal = sum(item.price_minor for item in items)
        order = Order(
            id=uuid4(),
            order_number=generate_order_number(),
            buyer_id=buyer_id,
            buyer_email=buyer_email,
            subtotal_minor=subtotal,
            discount_minor=0,
            total_minor=subtotal,
            currency=currency,
            status=OrderStatus.PENDING,
            created_at=_utc_now(),
            items=items,
        )
        self.session.add(order)
        await self.session.flush()

        verified = await self.session.get(Order, order.id)
        if verified is None:
            raise WriteVerificationError(f"Order {order.id} not found after insert")

        await self.session.commit()

        metrics.orders_created_total.inc()
        logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            buyer_id=str(buyer_id),
            items=len(items),
            subtotal_minor=subtotal,
        )
        return order_to_domain(order)

    async def confirm_payment(
        self,
        order_id: UUID,
        charge_ref: str | None,
        payment_method: PaymentMethod,
    ) -> OrderData:
        """
        Move a pending order to paid and grant what it bought.

        Idempotent: an order that is already paid is returned unchanged and
        no further licenses are issued.

        Raises:
            ResourceNotFoundError: order doesn't exist
            InvalidStateTransitionError: order is failed, expired or refunded
            FulfillmentIntegrityError: a step failed after the paid transition;
                everything was rolled back and the confirmation can be retried
        """
        with trace_operation("confirm_payment", order_id=order_id, charge_ref=charge_ref) as span:
            order = await self._get_order_row(order_id)

            if order.status == OrderStatus.PAID:
                logger.info("order_already_paid", order_id=str(order_id), charge_ref=charge_ref)
                return order_to_domain(order)

            ensure_order_transition(OrderStatus(order.status), OrderStatus.PAID)

            now = _utc_now()
            won = await self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
                .values(
                    status=OrderStatus.PAID,
                    paid_at=now,
                    charge_ref=charge_ref or order.charge_ref,
                    payment_method=payment_method,
                    updated_at=now,
                )
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
            if won.scalar_one_or_none() is None:
                await self.session.rollback()
                current = await self._get_order_row(order_id, refresh=True)
                if current.status == OrderStatus.PAID:
                    logger.info("order_confirm_race_lost", order_id=str(order_id))
                    return order_to_domain(current)
                raise InvalidStateTransitionError(
                    "order", OrderStatus(current.status).value, OrderStatus.PAID.value
                )

            step = "issue_licenses"
            try:
                issued = await self._issue_licenses(order)

                if order.coupon_id is not None:
                    step = "record_coupon_usage"
                    await self.coupons.record_usage(
                        order.coupon_id, order.buyer_id, order.id, order.discount_minor
                    )

                step = "enqueue_event"
                enqueue_event(
                    self.session,
                    OutboxEventType.ORDER_PAID,
                    order_id=order.id,
                    buyer_id=order.buyer_id,
                    amount_minor=order.total_minor,
                )

                step = "commit"
                await self.session.commit()
            except (FulfillmentError, SQLAlchemyError) as exc:
                await self.session.rollback()
                metrics.integrity_failures_total.labels(step=step).inc()
                logger.error(
                    "payment_confirmation_integrity_failure",
                    order_id=str(order_id),
                    step=step,
                    charge_ref=charge_ref,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise FulfillmentIntegrityError(order_id, step, str(exc)) from exc

            set_committed_value(order, "status", OrderStatus.PAID)
            set_committed_value(order, "paid_at", now)
            set_committed_value(order, "charge_ref", charge_ref or order.charge_ref)
            set_committed_value(order, "payment_method", payment_method)
            span.set_attribute("licenses_issued", issued)

        metrics.record_payment_confirmed(payment_method.value, order.total_minor)
        logger.info(
            "order_paid",
            order_id=str(order_id),
            payment_method=payment_method.value,
            total_minor=order.total_minor,
            licenses_issued=issued,
        )
        return order_to_domain(order)

    async def mark_failed(self, order_id: UUID) -> OrderData:
        """
        Record a declined payment on a pending order.

        Orders that already left pending are returned as they are.
        """
        order = await self._get_order_row(order_id)
        if order.status != OrderStatus.PENDING:
            logger.info(
                "order_fail_ignored", order_id=str(order_id), status=OrderStatus(order.status).value
            )
            return order_to_domain(order)

        now = _utc_now()
        won = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.FAILED, updated_at=now)
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        if won.scalar_one_or_none() is None:
            await self.session.rollback()
            return order_to_domain(await self._get_order_row(order_id, refresh=True))

        enqueue_event(
            self.session, OutboxEventType.ORDER_FAILED, order_id=order.id, buyer_id=order.buyer_id
        )
        await self.session.commit()
        set_committed_value(order, "status", OrderStatus.FAILED)

        logger.info("order_failed", order_id=str(order_id))
        return order_to_domain(order)

    async def expire_stale_orders(self, older_than: datetime) -> int:
        """Expire every pending order created before `older_than` in one statement."""
        result = await self.session.execute(
            update(Order)
            .where(Order.status == OrderStatus.PENDING, Order.created_at < older_than)
            .values(status=OrderStatus.EXPIRED, updated_at=_utc_now())
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        expired = len(result.scalars().all())
        await self.session.commit()

        if expired:
            metrics.orders_expired_total.inc(expired)
        logger.info("stale_orders_expired", count=expired, older_than=older_than.isoformat())
        return expired

    async def get_order(self, principal: Principal, order_id: UUID) -> OrderData:
        """
        Raises:
            ResourceNotFoundError: order doesn't exist
            NotOwnerError: order belongs to another buyer (admins may read any)
        """
        order = await self._get_order_row(order_id)
        if order.buyer_id != principal.user_id and not principal.is_admin:
            raise NotOwnerError("order", principal.user_id)
        return order_to_domain(order)

    async def list_orders_for_buyer(self, buyer_id: UUID, limit: int = 50) -> list[OrderData]:
        result = await self.session.execute(
            select(Order)
            .where(Order.buyer_id == buyer_id)
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        return [order_to_domain(o) for o in result.scalars().all()]

    async def find_by_charge_ref(self, charge_ref: str) -> Order | None:
        result = await self.session.execute(select(Order).where(Order.charge_ref == charge_ref))
        return result.scalar_one_or_none()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _get_order_row(self, order_id: UUID, refresh: bool = False) -> Order:
        order = await self.session.get(
            Order, order_id, populate_existing=refresh
        )
        if order is None:
            raise ResourceNotFoundError("order", order_id)
        return order

    async def _issue_licenses(self, order: Order) -> int:
        """One license per goods line; services carry no license."""
        goods = [item for item in order.items if item.kind == ProductKind.GOOD]
        if not goods:
            return 0

        products = await self.catalog.get_products([item.product_id for item in goods])
        for item in goods:
            product = products.get(item.product_id)
            if product is None:
                raise ResourceNotFoundError("product", item.product_id)
            await self.licenses.issue(order, item, product.license_tier)
        return len(goods)


def order_to_domain(order: Order) -> OrderData:
    return OrderData(
        order_id=order.id,
        order_number=order.order_number,
        buyer_id=order.buyer_id,
        status=OrderStatus(order.status),
        items=tuple(
            OrderLineData(
                item_id=item.id,
                kind=ProductKind(item.kind),
                product_id=item.product_id,
                title=item.title,
                price_minor=item.price_minor,
                creator_id=item.creator_id,
                platform_fee_minor=item.platform_fee_minor,
                creator_payout_minor=item.creator_payout_minor,
            )
            for item in order.items
        ),
        subtotal_minor=order.subtotal_minor,
        discount_minor=order.discount_minor,
        coupon_code=order.coupon_code,
        total_minor=order.total_minor,
        currency=order.currency,
        payment_method=PaymentMethod(order.payment_method) if order.payment_method else None,
        charge_ref=order.charge_ref,
        paid_at=order.paid_at,
        created_at=order.created_at,
    )
