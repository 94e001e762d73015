"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
All amounts are integer minor units (cents).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class ProductKind(str, Enum):
    """What a line item sells."""

    GOOD = "good"
    SERVICE = "service"


class ProductStatus(str, Enum):
    """Catalog moderation status. Only approved products are purchasable."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class LicenseTier(str, Enum):
    """License tier granted by a purchase."""

    PERSONAL = "personal"
    COMMERCIAL = "commercial"
    EXTENDED = "extended"


class DeliveryType(str, Enum):
    """How a purchased good reaches the buyer."""

    FILE_DOWNLOAD = "file_download"
    CLONE_LINK = "clone_link"
    REMIX_LINK = "remix_link"


LINK_DELIVERY_TYPES = frozenset({DeliveryType.CLONE_LINK, DeliveryType.REMIX_LINK})


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    """Refund lifecycle status."""

    REQUESTED = "requested"
    PROCESSED = "processed"
    REJECTED = "rejected"


class DiscountKind(str, Enum):
    """Coupon discount type."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponScope(str, Enum):
    """Which carts a coupon applies to."""

    ALL = "all"
    GOODS = "goods"
    SERVICES = "services"


class PaymentMethod(str, Enum):
    """How an order was settled."""

    STRIPE = "stripe"
    MOCK = "mock"
    FREE = "free"


class UserRole(str, Enum):
    """Role claim carried in bearer tokens."""

    BUYER = "buyer"
    ADMIN = "admin"


# ============================================================================
# Coupon Models
# ============================================================================


class CouponValidateRequest(BaseModel):
    """POST /v1/coupons/validate request body."""

    code: str = Field(..., min_length=1, max_length=30)
    order_amount_minor: int = Field(..., ge=0)
    scope: CouponScope = CouponScope.ALL
    product_ids: list[UUID] = Field(default_factory=list)


class CouponValidateResponse(BaseModel):
    """POST /v1/coupons/validate response."""

    valid: bool
    coupon_id: UUID
    code: str
    discount_kind: DiscountKind
    discount_value: int
    discount_minor: int
    final_amount_minor: int


class CreateCouponRequest(BaseModel):
    """POST /v1/admin/coupons request body."""

    code: str = Field(..., min_length=1, max_length=30)
    description: str | None = Field(None, max_length=200)
    discount_kind: DiscountKind
    discount_value: int = Field(..., gt=0, description="Whole percent, or minor units if fixed")
    min_order_minor: int = Field(0, ge=0)
    max_discount_minor: int | None = Field(None, gt=0)
    usage_limit: int | None = Field(None, gt=0, description="None = unlimited")
    per_user_limit: int = Field(1, ge=1)
    scope: CouponScope = CouponScope.ALL
    product_ids: list[UUID] | None = None
    starts_at: datetime | None = None
    expires_at: datetime

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        """Coupon codes are case-insensitive and stored upper-case."""
        v = v.strip().upper()
        if not v:
            raise ValueError("code cannot be blank")
        return v

    @model_validator(mode="after")
    def validate_discount(self) -> "CreateCouponRequest":
        """Percentage coupons must stay within 1-100."""
        if self.discount_kind == DiscountKind.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount_value must be between 1 and 100")
        if self.starts_at is not None and self.starts_at >= self.expires_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class CouponResponse(BaseModel):
    """Coupon as seen by admins."""

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
    product_ids: list[UUID] | None
    starts_at: datetime
    expires_at: datetime
    is_active: bool


class CouponListResponse(BaseModel):
    """GET /v1/admin/coupons response."""

    coupons: list[CouponResponse]
    total: int
    page: int
    limit: int


# ============================================================================
# Order Models
# ============================================================================


class OrderItemRequest(BaseModel):
    """One product in a cart."""

    product_id: UUID


class CreateOrderRequest(BaseModel):
    """POST /v1/orders request body."""

    items: list[OrderItemRequest] = Field(..., min_length=1, max_length=20)


class CheckoutRequest(BaseModel):
    """POST /v1/orders/{id}/confirm request body."""

    coupon_code: str | None = Field(None, min_length=1, max_length=30)


class OrderItemResponse(BaseModel):
    """Snapshot of a purchased line."""

    item_id: UUID
    kind: ProductKind
    product_id: UUID
    title: str
    price_minor: int
    platform_fee_minor: int
    creator_payout_minor: int


class OrderResponse(BaseModel):
    """Order representation returned to buyers."""

    order_id: UUID
    order_number: str
    status: OrderStatus
    items: list[OrderItemResponse]
    subtotal_minor: int
    discount_minor: int
    coupon_code: str | None
    total_minor: int
    currency: str
    payment_method: PaymentMethod | None
    paid_at: datetime | None
    created_at: datetime


class OrderListResponse(BaseModel):
    """GET /v1/orders response."""

    orders: list[OrderResponse]


class CheckoutResponse(BaseModel):
    """POST /v1/orders/{id}/confirm response."""

    order: OrderResponse
    client_secret: str | None = None
    demo_mode: bool = False


# ============================================================================
# License and Delivery Models
# ============================================================================


class LicenseResponse(BaseModel):
    """A buyer's entitlement."""

    license_id: UUID
    license_key: str
    product_id: UUID
    order_id: UUID
    tier: LicenseTier
    access_count: int
    max_access: int
    download_count: int
    max_downloads: int
    is_active: bool
    last_accessed_at: datetime | None
    created_at: datetime


class LicenseListResponse(BaseModel):
    """GET /v1/licenses response."""

    licenses: list[LicenseResponse]


class ReviewEligibilityResponse(BaseModel):
    """GET /v1/products/{id}/review-eligibility response."""

    product_id: UUID
    eligible: bool


class DownloadTokenRequest(BaseModel):
    """POST /v1/downloads/token request body."""

    license_id: UUID


class DownloadTokenResponse(BaseModel):
    """Either a single-use download token or a direct delivery link."""

    delivery_type: DeliveryType
    token: str | None = None
    expires_at: datetime | None = None
    download_url: str | None = None
    delivery_url: str | None = None


# ============================================================================
# Refund Models
# ============================================================================


class RefundRequestBody(BaseModel):
    """POST /v1/refunds/request request body."""

    order_id: UUID
    reason: str = Field(..., min_length=1, max_length=1000)


class RejectRefundRequest(BaseModel):
    """POST /v1/admin/refunds/{id}/reject request body."""

    admin_note: str | None = Field(None, max_length=500)


class RefundResponse(BaseModel):
    """Refund representation."""

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


class RefundListResponse(BaseModel):
    """GET /v1/admin/refunds response."""

    refunds: list[RefundResponse]
    total: int
    page: int
    limit: int


# ============================================================================
# Misc
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body returned by the FulfillmentError handler."""

    detail: str
    reason: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    demo_mode: bool
    version: str
