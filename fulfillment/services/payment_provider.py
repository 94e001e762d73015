"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class ChargeStatus(str, Enum):
    """Normalized gateway charge state."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class ChargeRequest:
    """
    Provider-agnostic charge request for one order.

    The idempotency key is derived from the order and its priced total, so a
    retried checkout at the same price reuses the same gateway charge.
    """

    order_id: str
    order_number: str
    buyer_id: str
    amount_minor: int
    currency: str
    description: str
    customer_email: str | None
    idempotency_key: str


@dataclass(frozen=True)
class ChargeResult:
    """Provider-agnostic charge result."""

    charge_ref: str
    status: ChargeStatus
    client_secret: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    order_id comes from the charge metadata when the provider echoes it back.
    """

    event_id: str
    event_type: str
    charge_ref: str
    status: str
    amount_minor: int | None
    currency: str | None
    order_id: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any gateway (Stripe, the demo gateway, ...) must implement this interface.
    """

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Start (or synchronously complete) a charge.

        Raises:
            PaymentProviderError: If the gateway call fails
        """
        ...

    async def refund(self, charge_ref: str, amount_minor: int, idempotency_key: str) -> str:
        """
        Refund a settled charge.

        Returns:
            Provider refund reference

        Raises:
            PaymentProviderError: If the refund fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
