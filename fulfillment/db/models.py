"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from fulfillment.models.api import (
    CouponScope,
    DeliveryType,
    DiscountKind,
    LicenseTier,
    OrderStatus,
    PaymentMethod,
    ProductKind,
    ProductStatus,
    RefundStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class Product(Base):
    """
    ORM model for products table.

    Owned by the catalog; the fulfillment core only reads it.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    kind: Mapped[ProductKind] = mapped_column(
        _enum_column(ProductKind, "product_kind"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status"),
        nullable=False,
        default=ProductStatus.DRAFT,
    )
    creator_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    license_tier: Mapped[LicenseTier] = mapped_column(
        _enum_column(LicenseTier, "license_tier"),
        nullable=False,
        default=LicenseTier.PERSONAL,
    )
    delivery_type: Mapped[DeliveryType] = mapped_column(
        _enum_column(DeliveryType, "delivery_type"),
        nullable=False,
        default=DeliveryType.FILE_DOWNLOAD,
    )
    delivery_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price_minor >= 0", name="ck_product_price_non_negative"),
        Index("idx_products_status", "status"),
        Index("idx_products_creator", "creator_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(id={self.id}, kind={self.kind}, title={self.title})>"


class Coupon(Base):
    """
    ORM model for coupons table.

    used_count never exceeds usage_limit: it only moves through a conditional
    UPDATE in the coupon service, and the check constraint backs that up.
    """

    __tablename__ = "coupons"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)

    discount_kind: Mapped[DiscountKind] = mapped_column(
        _enum_column(DiscountKind, "discount_kind"), nullable=False
    )
    discount_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    min_order_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    max_discount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_user_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    scope: Mapped[CouponScope] = mapped_column(
        _enum_column(CouponScope, "coupon_scope"),
        nullable=False,
        default=CouponScope.ALL,
    )
    product_ids: Mapped[list[UUID] | None] = mapped_column(
        ARRAY(PG_UUID(as_uuid=True)), nullable=True
    )

    starts_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_coupon_discount_positive"),
        CheckConstraint("used_count >= 0", name="ck_coupon_used_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_coupon_used_within_limit",
        ),
        CheckConstraint("per_user_limit >= 1", name="ck_coupon_per_user_positive"),
        Index("idx_coupons_active_expires", "is_active", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Coupon(id={self.id}, code={self.code}, used={self.used_count}/{self.usage_limit})>"


class CouponUsage(Base):
    """
    ORM model for coupon_usages table.

    Append-only ledger of coupon redemptions, one row per (coupon, order).
    """

    __tablename__ = "coupon_usages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    coupon_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    order_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False
    )
    discount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usage_order"),
        Index("idx_coupon_usages_coupon_user", "coupon_id", "user_id"),
    )


class Order(Base):
    """
    ORM model for orders table.

    Holds the price snapshot taken at creation; status only moves through
    conditional updates in the order service.
    """

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    buyer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    subtotal_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    coupon_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True
    )
    coupon_code: Mapped[str | None] = mapped_column(String(30), nullable=True)
    total_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        _enum_column(PaymentMethod, "payment_method"), nullable=True
    )
    charge_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    __table_args__ = (
        CheckConstraint("subtotal_minor >= 0", name="ck_order_subtotal_non_negative"),
        CheckConstraint("discount_minor >= 0", name="ck_order_discount_non_negative"),
        CheckConstraint("total_minor >= 0", name="ck_order_total_non_negative"),
        CheckConstraint(
            "total_minor = subtotal_minor - discount_minor", name="ck_order_total_matches"
        ),
        Index("idx_orders_buyer_created", "buyer_id", "created_at"),
        Index("idx_orders_status_created", "status", "created_at"),
        Index("idx_orders_charge_ref", "charge_ref", postgresql_where=(charge_ref.isnot(None))),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"


class OrderItem(Base):
    """
    ORM model for order_items table.

    Immutable price snapshot of one cart line.
    """

    __tablename__ = "order_items"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    kind: Mapped[ProductKind] = mapped_column(
        _enum_column(ProductKind, "product_kind"), nullable=False
    )
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    platform_fee_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_payout_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "platform_fee_minor + creator_payout_minor = price_minor",
            name="ck_order_item_split_matches",
        ),
        UniqueConstraint("order_id", "product_id", name="uq_order_item_product"),
    )


class License(Base):
    """
    ORM model for licenses table.

    One license per paid goods line. Revocation flips is_active; rows are
    never deleted.
    """

    __tablename__ = "licenses"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    license_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    product_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    order_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False
    )
    order_item_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("order_items.id", ondelete="RESTRICT"), nullable=False
    )
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    tier: Mapped[LicenseTier] = mapped_column(
        _enum_column(LicenseTier, "license_tier"), nullable=False
    )

    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_access: Mapped[int] = mapped_column(Integer, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_downloads: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("access_count >= 0", name="ck_license_access_non_negative"),
        CheckConstraint("download_count >= 0", name="ck_license_download_non_negative"),
        UniqueConstraint("order_id", "order_item_id", name="uq_license_order_item"),
        Index("idx_licenses_buyer_product", "buyer_id", "product_id"),
        Index("idx_licenses_order", "order_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<License(id={self.id}, key={self.license_key}, active={self.is_active})>"


class DownloadToken(Base):
    """
    ORM model for download_tokens table.

    Only the SHA-256 hash of the token is stored.
    """

    __tablename__ = "download_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    license_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("licenses.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_download_tokens_license", "license_id"),
        Index("idx_download_tokens_expires", "expires_at"),
    )


class Refund(Base):
    """
    ORM model for refunds table.

    At most one refund per order (unique order_id).
    """

    __tablename__ = "refunds"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    buyer_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[RefundStatus] = mapped_column(
        _enum_column(RefundStatus, "refund_status"),
        nullable=False,
        default=RefundStatus.REQUESTED,
    )
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processed_by: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_refund_amount_non_negative"),
        Index("idx_refunds_status_created", "status", "created_at"),
        Index("idx_refunds_buyer", "buyer_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Refund(id={self.id}, order_id={self.order_id}, status={self.status})>"


class OutboxEvent(Base):
    """
    ORM model for outbox_events table.

    Written in the same transaction as the state change it describes; the
    dispatcher delivers it after commit.
    """

    __tablename__ = "outbox_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    order_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    refund_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    buyer_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    amount_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Lease held by a dispatcher between claim and outcome
    claimed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "idx_outbox_pending",
            "created_at",
            postgresql_where=(dispatched_at.is_(None)),
        ),
    )
