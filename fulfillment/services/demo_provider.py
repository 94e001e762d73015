"""
Demo Payment Provider - settles every charge synchronously, moves no money.

Selected when no usable Stripe key is configured (see Settings.demo_mode).
"""

from uuid import uuid4

from fulfillment.exceptions import WebhookVerificationError
from fulfillment.observability.logging import get_logger
from fulfillment.services.payment_provider import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    WebhookEvent,
)

logger = get_logger(__name__)


class DemoPaymentProvider:
    """PaymentProvider that succeeds immediately."""

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        charge_ref = f"demo_{uuid4().hex}"
        logger.info(
            "demo_charge_settled",
            order_id=request.order_id,
            amount_minor=request.amount_minor,
            charge_ref=charge_ref,
        )
        return ChargeResult(charge_ref=charge_ref, status=ChargeStatus.SUCCEEDED)

    async def refund(self, charge_ref: str, amount_minor: int, idempotency_key: str) -> str:
        refund_ref = f"demo_refund_{uuid4().hex}"
        logger.info(
            "demo_refund_settled",
            charge_ref=charge_ref,
            amount_minor=amount_minor,
            refund_ref=refund_ref,
        )
        return refund_ref

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        raise WebhookVerificationError("Webhooks are not accepted in demo mode")
