"""
Webhook Routes - payment gateway callbacks.

The gateway authenticates with its signature header, not a bearer token.
A 5xx response makes the gateway redeliver, which is safe because payment
confirmation is idempotent.
"""

from collections.abc import Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.api.dependencies import get_outbox_dispatch, get_payment_provider
from fulfillment.config import settings
from fulfillment.db.session import get_write_db
from fulfillment.observability.logging import get_logger
from fulfillment.services.checkout import CheckoutService
from fulfillment.services.payment_provider import PaymentProvider

logger = get_logger(__name__)

router = APIRouter()


@router.post("/v1/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    dispatch: Callable[[], Awaitable[int]] = Depends(get_outbox_dispatch),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    payment_intent.succeeded confirms the order, payment_intent.payment_failed
    fails it, everything else is acknowledged and ignored.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    webhook_event = await provider.verify_webhook(payload, signature)
    logger.info(
        "stripe_webhook_received",
        event_id=webhook_event.event_id,
        event_type=webhook_event.event_type,
        charge_ref=webhook_event.charge_ref,
    )

    service = CheckoutService(db, provider, demo_mode=settings.demo_mode)
    order = await service.handle_webhook(webhook_event)
    if order is None:
        return {"status": "ignored", "event_id": webhook_event.event_id}

    background_tasks.add_task(dispatch)
    return {
        "status": order.status.value,
        "event_id": webhook_event.event_id,
        "order_id": str(order.order_id),
    }
