"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import UUID

from fulfillment.models.api import (
    CouponScope,
    DeliveryType,
    DiscountKind,
    LicenseTier,
    OrderStatus,
    PaymentMethod,
    ProductKind,
    RefundStatus,
    UserRole,
)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, decoded from a bearer token."""

    user_id: UUID
    role: UserRole
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class PriceSplit:
    """Platform fee / creator payout split of one line price."""

    price_minor: int
    platform_fee_minor: int
    creator_payout_minor: int

    def __post_init__(self) -> None:
        """Validate the split adds up."""
        if self.price_minor < 0:
            raise ValueError(f"Price cannot be negative: {self.price_minor}")
        if self.platform_fee_minor + self.creator_payout_minor != self.price_minor:
            raise ValueError("Platform fee and payout must sum to the price")


@dataclass(frozen=True)
class CouponQuote:
    """Result of a successful coupon validation. Side-effect free."""

    coupon_id: UUID
    code: str
    discount_kind: DiscountKind
    discount_value: int
    order_amount_minor: int
    discount_minor: int
    final_amount_minor: int

    def __post_init__(self) -> None:
        """Validate pricing invariants."""
        if self.discount_minor < 0 or self.discount_minor > self.order_amount_minor:
            raise ValueError(f"Discount out of range: {self.discount_minor}")
        if self.final_amount_minor != self.order_amount_minor - self.discount_minor:
            raise ValueError("final amount must equal order amount minus discount")

    @property
    def valid(self) -> bool:
        return True


@dataclass(frozen=True)
class CouponData:
    """Immutable coupon snapshot."""

    coupon_id: UUID
    code: str
    description: str | None
    discount_kind: DiscountKind
    discount_value: int
    min_order_minor: int
    max_discount_minor: int | None
    usage_limit: int | None
    used_count: int
    per_user_limit: int
    scope: CouponScope
    product_ids: tuple[UUID, ...] | None
    starts_at: datetime
    expires_at: datetime
    is_active: bool


@dataclass(frozen=True)
class NewCoupon:
    """Admin intent to create a coupon."""

    code: str
    description: str | None
    discount_kind: DiscountKind
    discount_value: int
    min_order_minor: int
    max_discount_minor: int | None
    usage_limit: int | None
    per_user_limit: int
    scope: CouponScope
    product_ids: tuple[UUID, ...] | None
    starts_at: datetime | None
    expires_at: datetime


@dataclass(frozen=True)
class LicensePolicy:
    """Access caps for a license tier."""

    tier: LicenseTier
    max_access: int
    max_downloads: int


@dataclass(frozen=True)
class OrderLineData:
    """Immutable price snapshot of one order line."""

    item_id: UUID
    kind: ProductKind
    product_id: UUID
    title: str
    price_minor: int
    creator_id: UUID | None
    platform_fee_minor: int
    creator_payout_minor: int


@dataclass(frozen=True)
class OrderData:
    """Immutable order snapshot."""

    order_id: UUID
    order_number: str
    buyer_id: UUID
    status: OrderStatus
    items: tuple[OrderLineData, ...]
    subtotal_minor: int
    discount_minor: int
    coupon_code: str | None
    total_minor: int
    currency: str
    payment_method: PaymentMethod | None
    charge_ref: str | None
    paid_at: datetime | None
    created_at: datetime

    def __post_init__(self) -> None:
        """Validate order pricing invariant."""
        if self.total_minor != self.subtotal_minor - self.discount_minor:
            raise ValueError("total must equal subtotal minus discount")
        if self.total_minor < 0:
            raise ValueError(f"Order total cannot be negative: {self.total_minor}")


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of a checkout attempt."""

    order: OrderData
    client_secret: str | None
    demo_mode: bool


@dataclass(frozen=True)
class LicenseData:
    """Immutable license snapshot."""

    license_id: UUID
    license_key: str
    product_id: UUID
    order_id: UUID
    buyer_id: UUID
    tier: LicenseTier
    access_count: int
    max_access: int
    download_count: int
    max_downloads: int
    is_active: bool
    last_accessed_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class EntitlementSnapshot:
    """What a successful access check grants."""

    license_id: UUID
    product_id: UUID
    delivery_type: DeliveryType
    delivery_url: str | None
    requires_credential: bool
    access_count: int


@dataclass(frozen=True)
class DownloadCredential:
    """A freshly minted download token. The raw token is only ever held here."""

    token: str
    license_id: UUID
    product_id: UUID
    expires_at: datetime


@dataclass(frozen=True)
class FileLocator:
    """Where the redeemed file lives, for the caller to stream."""

    file_key: str
    title: str
    license_id: UUID
    path: Path | None = None


@dataclass(frozen=True)
class Delivery:
    """Result of a delivery request: a direct link, or a credential to redeem."""

    entitlement: EntitlementSnapshot
    credential: DownloadCredential | None = None


@dataclass(frozen=True)
class RefundData:
    """Immutable refund snapshot."""

    refund_id: UUID
    order_id: UUID
    buyer_id: UUID
    reason: str
    status: RefundStatus
    amount_minor: int
    refund_ref: str | None
    admin_note: str | None
    processed_by: UUID | None
    processed_at: datetime | None
    created_at: datetime
