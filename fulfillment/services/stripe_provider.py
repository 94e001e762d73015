"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import stripe

from fulfillment.exceptions import PaymentProviderError, WebhookVerificationError
from fulfillment.observability.logging import get_logger
from fulfillment.services.payment_provider import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    WebhookEvent,
)

logger = get_logger(__name__)

_FAILED_STATES = frozenset({"canceled"})


def _normalize_status(stripe_status: str) -> ChargeStatus:
    if stripe_status == "succeeded":
        return ChargeStatus.SUCCEEDED
    if stripe_status in _FAILED_STATES:
        return ChargeStatus.FAILED
    return ChargeStatus.PENDING


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol with PaymentIntents. Charges are
    created unconfirmed, so they come back pending with a client secret and
    are settled by the payment_intent.succeeded webhook.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Create a Stripe PaymentIntent for an order.

        Raises:
            PaymentProviderError: If the Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_payment_intent",
                order_id=request.order_id,
                amount_minor=request.amount_minor,
                currency=request.currency,
                idempotency_key=request.idempotency_key,
            )

            payment_intent = stripe.PaymentIntent.create(
                amount=request.amount_minor,
                currency=request.currency.lower(),
                description=request.description,
                receipt_email=request.customer_email,
                automatic_payment_methods={"enabled": True},
                metadata={
                    "order_id": request.order_id,
                    "order_number": request.order_number,
                    "buyer_id": request.buyer_id,
                },
                idempotency_key=request.idempotency_key,
            )

            logger.info(
                "stripe_payment_intent_created",
                payment_intent_id=payment_intent.id,
                status=payment_intent.status,
            )

            return ChargeResult(
                charge_ref=payment_intent.id,
                status=_normalize_status(payment_intent.status),
                client_secret=payment_intent.client_secret,
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_payment_intent_failed",
                order_id=request.order_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe payment failed: {exc}") from exc

    async def refund(self, charge_ref: str, amount_minor: int, idempotency_key: str) -> str:
        """
        Refund a Stripe PaymentIntent.

        Raises:
            PaymentProviderError: If the refund fails
        """
        try:
            logger.info(
                "creating_stripe_refund",
                payment_intent_id=charge_ref,
                amount_minor=amount_minor,
            )

            refund = stripe.Refund.create(
                payment_intent=charge_ref,
                amount=amount_minor,
                idempotency_key=idempotency_key,
            )

            logger.info(
                "stripe_refund_created",
                refund_id=refund.id,
                status=refund.status,
                amount_minor=refund.amount,
            )

            refund_id: str = refund.id
            return refund_id

        except stripe.StripeError as exc:
            logger.error("stripe_refund_failed", payment_intent_id=charge_ref, error=str(exc))
            raise PaymentProviderError(f"Stripe refund failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a Stripe webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        payment_intent = event.data.object
        metadata = payment_intent.get("metadata") or {}
        currency = payment_intent.get("currency")

        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            charge_ref=payment_intent.id,
            status=payment_intent.get("status", ""),
            amount_minor=payment_intent.get("amount"),
            currency=currency.upper() if currency else None,
            order_id=metadata.get("order_id"),
        )
