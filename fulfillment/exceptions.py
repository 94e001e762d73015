"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every exception carries a category from the error taxonomy. The API layer maps
categories to HTTP status codes in one place (see fulfillment.main).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID


class ErrorCategory(str, Enum):
    """Error taxonomy shared by every fulfillment failure."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    EXTERNAL_DEPENDENCY = "external_dependency"
    INTEGRITY = "integrity"


CATEGORY_STATUS_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.EXTERNAL_DEPENDENCY: 502,
    ErrorCategory.INTEGRITY: 500,
}


class FulfillmentError(Exception):
    """Base exception for all fulfillment errors."""

    category: ErrorCategory = ErrorCategory.VALIDATION
    reason: str = "fulfillment_error"
    status_code: int | None = None

    @property
    def http_status(self) -> int:
        """HTTP status for this error."""
        if self.status_code is not None:
            return self.status_code
        return CATEGORY_STATUS_CODES[self.category]


# ============================================================================
# Not Found
# ============================================================================


class ResourceNotFoundError(FulfillmentError):
    """Raised when an order, license, refund, coupon or product doesn't exist."""

    category = ErrorCategory.NOT_FOUND
    reason = "not_found"

    def __init__(self, resource: str, identifier: UUID | str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource.capitalize()} not found: {identifier}")


class TokenNotFoundError(FulfillmentError):
    """Raised when a download token is unknown."""

    category = ErrorCategory.NOT_FOUND
    reason = "token_not_found"

    def __init__(self) -> None:
        super().__init__("Invalid download token")


class ContentUnavailableError(FulfillmentError):
    """Raised when a product file cannot be located in the content store."""

    category = ErrorCategory.NOT_FOUND
    reason = "content_unavailable"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Authorization
# ============================================================================


class AuthenticationError(FulfillmentError):
    """Raised when a bearer token is missing or invalid."""

    category = ErrorCategory.AUTHORIZATION
    reason = "unauthenticated"
    status_code = 401

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(FulfillmentError):
    """Raised when the caller lacks the required role."""

    category = ErrorCategory.AUTHORIZATION
    reason = "forbidden"

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: {required_role} role required")


class NotOwnerError(FulfillmentError):
    """Raised when a buyer acts on a resource that belongs to someone else."""

    category = ErrorCategory.AUTHORIZATION
    reason = "not_owner"

    def __init__(self, resource: str, user_id: UUID) -> None:
        self.resource = resource
        self.user_id = user_id
        super().__init__(f"You can only access your own {resource}s")


class EntitlementDeniedError(FulfillmentError):
    """Raised when a license does not grant the requested access."""

    category = ErrorCategory.AUTHORIZATION
    reason = "entitlement_denied"

    MESSAGES = {
        "no_license": "No active license found for this product",
        "access_exhausted": "Maximum accesses reached for this license",
        "download_exhausted": "Maximum downloads reached for this license",
        "inactive": "License is no longer active",
    }

    def __init__(self, denial: str) -> None:
        self.denial = denial
        super().__init__(self.MESSAGES.get(denial, "Access denied"))


# ============================================================================
# Validation
# ============================================================================


class CouponRejectedError(FulfillmentError):
    """Raised when a coupon fails validation. `denial` names the failed check."""

    reason = "coupon_rejected"

    def __init__(self, denial: str, message: str) -> None:
        self.denial = denial
        self.message = message
        super().__init__(message)


class DeliveryNotSupportedError(FulfillmentError):
    """Raised when a download token is requested for link-delivered products."""

    reason = "delivery_not_supported"

    def __init__(self, delivery_type: str) -> None:
        self.delivery_type = delivery_type
        super().__init__(f"Download tokens are not issued for {delivery_type} delivery")


class RefundWindowExpiredError(FulfillmentError):
    """Raised when a refund is requested after the refund window."""

    reason = "refund_window_expired"

    def __init__(self, paid_at: datetime, window_days: int) -> None:
        self.paid_at = paid_at
        self.window_days = window_days
        super().__init__(
            f"Refund window has expired ({window_days} days after purchase)"
        )


class WebhookVerificationError(FulfillmentError):
    """Raised when webhook verification fails."""

    reason = "webhook_invalid"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Conflict
# ============================================================================


class CouponLimitReachedError(FulfillmentError):
    """Raised when the conditional usage increment matched no row."""

    category = ErrorCategory.CONFLICT
    reason = "coupon_limit_reached"

    def __init__(self, coupon_id: UUID) -> None:
        self.coupon_id = coupon_id
        super().__init__("Coupon usage limit has been reached")


class DuplicateCouponCodeError(FulfillmentError):
    """Raised when creating a coupon whose code already exists."""

    category = ErrorCategory.CONFLICT
    reason = "duplicate_coupon"

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Coupon code already exists: {code}")


class ProductUnavailableError(FulfillmentError):
    """Raised when a cart item is unknown or no longer purchasable."""

    category = ErrorCategory.CONFLICT
    reason = "product_unavailable"

    def __init__(self, product_id: UUID) -> None:
        self.product_id = product_id
        super().__init__(f"Product not available: {product_id}")


class AlreadyOwnedError(FulfillmentError):
    """Raised when a buyer tries to purchase a good they already hold a license for."""

    category = ErrorCategory.CONFLICT
    reason = "already_owned"

    def __init__(self, product_id: UUID, title: str) -> None:
        self.product_id = product_id
        self.title = title
        super().__init__(f'You already own "{title}"')


class DuplicateCartItemError(FulfillmentError):
    """Raised when the same product appears twice in one cart."""

    reason = "duplicate_item"

    def __init__(self, product_id: UUID) -> None:
        self.product_id = product_id
        super().__init__(f"Product appears more than once in the cart: {product_id}")


class InvalidStateTransitionError(FulfillmentError):
    """Raised when a lifecycle edge is not allowed."""

    category = ErrorCategory.CONFLICT
    reason = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class DuplicateRefundError(FulfillmentError):
    """Raised when a refund already exists for an order."""

    category = ErrorCategory.CONFLICT
    reason = "duplicate_refund"

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id
        super().__init__("A refund request already exists for this order")


class TokenAlreadyUsedError(FulfillmentError):
    """Raised when a download token was already redeemed."""

    category = ErrorCategory.CONFLICT
    reason = "token_used"

    def __init__(self) -> None:
        super().__init__("Download token already used")


class TokenExpiredError(FulfillmentError):
    """Raised when a download token is past its expiry."""

    category = ErrorCategory.CONFLICT
    reason = "token_expired"
    status_code = 410

    def __init__(self, expires_at: datetime) -> None:
        self.expires_at = expires_at
        super().__init__("Download token expired")


# ============================================================================
# External Dependency
# ============================================================================


class PaymentProviderError(FulfillmentError):
    """Raised when payment provider operation fails."""

    category = ErrorCategory.EXTERNAL_DEPENDENCY
    reason = "payment_provider_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class NotificationDeliveryError(FulfillmentError):
    """Raised when a notifier could not deliver an outbox event."""

    category = ErrorCategory.EXTERNAL_DEPENDENCY
    reason = "notification_failed"

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        self.message = message
        super().__init__(f"Notification {event_type} failed: {message}")


# ============================================================================
# Integrity
# ============================================================================


class DataIntegrityError(FulfillmentError):
    """Raised when data integrity constraint violated."""

    category = ErrorCategory.INTEGRITY
    reason = "data_integrity"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class WriteVerificationError(DataIntegrityError):
    """Raised when a row cannot be read back after it was written."""

    reason = "write_verification_failed"


class FulfillmentIntegrityError(DataIntegrityError):
    """
    Raised when payment confirmation could not be applied after money moved.

    The confirmation transaction is rolled back, so the order stays pending and
    no partial set of licenses exists. Redelivery of the confirmation is safe.
    """

    reason = "fulfillment_integrity"

    def __init__(self, order_id: UUID, step: str, message: str) -> None:
        self.order_id = order_id
        self.step = step
        super().__init__(f"order {order_id} failed at {step}: {message}")
