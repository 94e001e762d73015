"""
Checkout Service - prices a pending order, charges the gateway, and routes
gateway webhooks back into the order ledger.

NO DICTIONARIES - All operations use strongly typed domain models.

Gateway calls happen with no write transaction open: pricing is committed
before the charge, and confirmation opens its own transaction afterwards.
"""

from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.db.models import Order
from fulfillment.exceptions import (
    InvalidStateTransitionError,
    NotOwnerError,
    PaymentProviderError,
    ResourceNotFoundError,
)
from fulfillment.models.api import OrderStatus, PaymentMethod, ProductKind
from fulfillment.models.domain import CheckoutResult, OrderData, Principal
from fulfillment.observability.logging import get_logger
from fulfillment.services.coupons import CouponService
from fulfillment.services.orders import OrderService, order_to_domain
from fulfillment.services.payment_provider import (
    ChargeRequest,
    ChargeStatus,
    PaymentProvider,
    WebhookEvent,
)
from fulfillment.services.pricing import resolve_scope

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class CheckoutService:
    """Checkout orchestration on top of OrderService."""

    def __init__(
        self, session: AsyncSession, provider: PaymentProvider, demo_mode: bool = False
    ) -> None:
        self.session = session
        self.provider = provider
        self.demo_mode = demo_mode
        self.orders = OrderService(session)
        self.coupons = CouponService(session)

    async def checkout(
        self, principal: Principal, order_id: UUID, coupon_code: str | None = None
    ) -> CheckoutResult:
        """
        Apply an optional coupon to a pending order and take payment.

        Zero totals and demo mode confirm immediately. A gateway that settles
        asynchronously leaves the order pending with a client secret for the
        buyer; the webhook confirms it later.

        Raises:
            ResourceNotFoundError: order doesn't exist
            NotOwnerError: order belongs to another buyer
            InvalidStateTransitionError: order is not pending
            CouponRejectedError: coupon invalid for this order
            PaymentProviderError: gateway failed; the order stays pending
        """
        order = await self.session.get(Order, order_id)
        if order is None:
            raise ResourceNotFoundError("order", order_id)
        if order.buyer_id != principal.user_id:
            raise NotOwnerError("order", principal.user_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateTransitionError(
                "order", OrderStatus(order.status).value, OrderStatus.PAID.value
            )

        await self._apply_pricing(order, coupon_code)

        if order.total_minor == 0:
            logger.info("checkout_free_order", order_id=str(order_id))
            paid = await self.orders.confirm_payment(order.id, None, PaymentMethod.FREE)
            return CheckoutResult(order=paid, client_secret=None, demo_mode=self.demo_mode)

        request = ChargeRequest(
            order_id=str(order.id),
            order_number=order.order_number,
            buyer_id=str(order.buyer_id),
            amount_minor=order.total_minor,
            currency=order.currency,
            description=f"Order {order.order_number}",
            customer_email=order.buyer_email or principal.email,
            idempotency_key=f"order-{order.id}-{order.coupon_code or 'none'}-{order.total_minor}",
        )
        try:
            charge = await self.provider.charge(request)
        except PaymentProviderError:
            logger.warning("checkout_charge_failed", order_id=str(order_id))
            raise

        method = PaymentMethod.MOCK if self.demo_mode else PaymentMethod.STRIPE

        if charge.status == ChargeStatus.SUCCEEDED:
            paid = await self.orders.confirm_payment(order.id, charge.charge_ref, method)
            return CheckoutResult(order=paid, client_secret=None, demo_mode=self.demo_mode)

        if charge.status == ChargeStatus.FAILED:
            raise PaymentProviderError(f"charge {charge.charge_ref} was declined")

        await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(charge_ref=charge.charge_ref, payment_method=method)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        set_committed_value(order, "charge_ref", charge.charge_ref)
        set_committed_value(order, "payment_method", method)

        logger.info("checkout_awaiting_payment", order_id=str(order_id), charge_ref=charge.charge_ref)
        return CheckoutResult(
            order=order_to_domain(order),
            client_secret=charge.client_secret,
            demo_mode=self.demo_mode,
        )

    async def handle_webhook(self, event: WebhookEvent) -> OrderData | None:
        """
        Apply a verified gateway event.

        Returns the affected order, or None when the event is ignored.
        """
        if event.event_type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
            logger.info("webhook_ignored", event_id=event.event_id, event_type=event.event_type)
            return None

        order = await self._find_order(event)
        if order is None:
            logger.warning(
                "webhook_order_not_found", event_id=event.event_id, charge_ref=event.charge_ref
            )
            return None

        if event.event_type == PAYMENT_FAILED:
            return await self.orders.mark_failed(order.id)

        if event.amount_minor is not None and event.amount_minor != order.total_minor:
            logger.error(
                "webhook_amount_mismatch",
                order_id=str(order.id),
                expected=order.total_minor,
                received=event.amount_minor,
            )
            return None

        return await self.orders.confirm_payment(order.id, event.charge_ref, PaymentMethod.STRIPE)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply_pricing(self, order: Order, coupon_code: str | None) -> None:
        """Price the snapshot subtotal and persist it on the pending order."""
        if coupon_code:
            quote = await self.coupons.validate_coupon(
                order.buyer_id,
                coupon_code,
                order.subtotal_minor,
                scope=resolve_scope(ProductKind(item.kind) for item in order.items),
                product_ids=[item.product_id for item in order.items],
            )
            pricing = {
                "coupon_id": quote.coupon_id,
                "coupon_code": quote.code,
                "discount_minor": quote.discount_minor,
                "total_minor": quote.final_amount_minor,
            }
        else:
            pricing = {
                "coupon_id": None,
                "coupon_code": None,
                "discount_minor": 0,
                "total_minor": order.subtotal_minor,
            }

        priced = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.PENDING)
            .values(**pricing)
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        if priced.scalar_one_or_none() is None:
            await self.session.rollback()
            raise InvalidStateTransitionError("order", "not pending", OrderStatus.PAID.value)
        await self.session.commit()
        for key, value in pricing.items():
            set_committed_value(order, key, value)
        logger.info(
            "checkout_priced",
            order_id=str(order.id),
            coupon_code=order.coupon_code,
            discount_minor=order.discount_minor,
            total_minor=order.total_minor,
        )

    async def _find_order(self, event: WebhookEvent) -> Order | None:
        order_id: UUID | None = None
        if event.order_id:
            try:
                order_id = UUID(event.order_id)
            except ValueError:
                logger.warning("webhook_bad_order_id", event_id=event.event_id)
        if order_id is not None:
            order = await self.session.get(Order, order_id)
            if order is not None:
                return order
        return await self.orders.find_by_charge_ref(event.charge_ref)
