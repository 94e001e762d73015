"""initial fulfillment schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create the fulfillment schema."""

    # ========================================================================
    # products (catalog-owned, read by fulfillment)
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('creator_id', UUID(as_uuid=True), nullable=True),
        sa.Column('license_tier', sa.String(20), nullable=False, server_default='personal'),
        sa.Column('delivery_type', sa.String(20), nullable=False, server_default='file_download'),
        sa.Column('delivery_url', sa.String(1024), nullable=True),
        sa.Column('file_key', sa.String(512), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('price_minor >= 0', name='ck_product_price_non_negative'),
    )
    op.create_index('idx_products_status', 'products', ['status'])
    op.create_index('idx_products_creator', 'products', ['creator_id'])

    # ========================================================================
    # coupons
    # ========================================================================
    op.create_table(
        'coupons',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code', sa.String(30), nullable=False, unique=True),
        sa.Column('description', sa.String(200), nullable=True),
        sa.Column('discount_kind', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.BigInteger(), nullable=False),
        sa.Column('min_order_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('max_discount_minor', sa.BigInteger(), nullable=True),
        sa.Column('usage_limit', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('per_user_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('scope', sa.String(20), nullable=False, server_default='all'),
        sa.Column('product_ids', ARRAY(UUID(as_uuid=True)), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', UUID(as_uuid=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('discount_value > 0', name='ck_coupon_discount_positive'),
        sa.CheckConstraint('used_count >= 0', name='ck_coupon_used_non_negative'),
        sa.CheckConstraint(
            'usage_limit IS NULL OR used_count <= usage_limit', name='ck_coupon_used_within_limit'
        ),
        sa.CheckConstraint('per_user_limit >= 1', name='ck_coupon_per_user_positive'),
    )
    op.create_index('idx_coupons_active_expires', 'coupons', ['is_active', 'expires_at'])

    # ========================================================================
    # orders and order_items
    # ========================================================================
    op.create_table(
        'orders',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_number', sa.String(40), nullable=False, unique=True),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('subtotal_minor', sa.BigInteger(), nullable=False),
        sa.Column('discount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('coupon_id', UUID(as_uuid=True), nullable=True),
        sa.Column('coupon_code', sa.String(30), nullable=True),
        sa.Column('total_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(20), nullable=True),
        sa.Column('charge_ref', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('subtotal_minor >= 0', name='ck_order_subtotal_non_negative'),
        sa.CheckConstraint('discount_minor >= 0', name='ck_order_discount_non_negative'),
        sa.CheckConstraint('total_minor >= 0', name='ck_order_total_non_negative'),
        sa.CheckConstraint('total_minor = subtotal_minor - discount_minor', name='ck_order_total_matches'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], name='fk_orders_coupon', ondelete='SET NULL'),
    )
    op.create_index('idx_orders_buyer_created', 'orders', ['buyer_id', 'created_at'])
    op.create_index('idx_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index(
        'idx_orders_charge_ref', 'orders', ['charge_ref'], postgresql_where=sa.text('charge_ref IS NOT NULL')
    )

    op.create_table(
        'order_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('creator_id', UUID(as_uuid=True), nullable=True),
        sa.Column('platform_fee_minor', sa.BigInteger(), nullable=False),
        sa.Column('creator_payout_minor', sa.BigInteger(), nullable=False),

        sa.CheckConstraint(
            'platform_fee_minor + creator_payout_minor = price_minor', name='ck_order_item_split_matches'
        ),
        sa.UniqueConstraint('order_id', 'product_id', name='uq_order_item_product'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_items_order', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_order_items_product', ondelete='RESTRICT'),
    )

    # ========================================================================
    # coupon_usages (append-only redemption ledger)
    # ========================================================================
    op.create_table(
        'coupon_usages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('coupon_id', UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('discount_minor', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('coupon_id', 'order_id', name='uq_coupon_usage_order'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], name='fk_coupon_usages_coupon', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_coupon_usages_order', ondelete='RESTRICT'),
    )
    op.create_index('idx_coupon_usages_coupon_user', 'coupon_usages', ['coupon_id', 'user_id'])

    # ========================================================================
    # licenses
    # ========================================================================
    op.create_table(
        'licenses',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('license_key', sa.String(64), nullable=False, unique=True),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False),
        sa.Column('order_item_id', UUID(as_uuid=True), nullable=False),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False),
        sa.Column('access_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_access', sa.Integer(), nullable=False),
        sa.Column('download_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_downloads', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_accessed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('access_count >= 0', name='ck_license_access_non_negative'),
        sa.CheckConstraint('download_count >= 0', name='ck_license_download_non_negative'),
        sa.UniqueConstraint('order_id', 'order_item_id', name='uq_license_order_item'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_licenses_product', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_licenses_order', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['order_item_id'], ['order_items.id'], name='fk_licenses_order_item', ondelete='RESTRICT'
        ),
    )
    op.create_index('idx_licenses_buyer_product', 'licenses', ['buyer_id', 'product_id'])
    op.create_index('idx_licenses_order', 'licenses', ['order_id'])

    # ========================================================================
    # download_tokens (hash only, never the raw token)
    # ========================================================================
    op.create_table(
        'download_tokens',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('token_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('license_id', UUID(as_uuid=True), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(
            ['license_id'], ['licenses.id'], name='fk_download_tokens_license', ondelete='CASCADE'
        ),
    )
    op.create_index('idx_download_tokens_license', 'download_tokens', ['license_id'])
    op.create_index('idx_download_tokens_expires', 'download_tokens', ['expires_at'])

    # ========================================================================
    # refunds (one per order)
    # ========================================================================
    op.create_table(
        'refunds',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=False),
        sa.Column('reason', sa.String(1000), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='requested'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('refund_ref', sa.String(255), nullable=True),
        sa.Column('admin_note', sa.String(500), nullable=True),
        sa.Column('processed_by', UUID(as_uuid=True), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),

        sa.CheckConstraint('amount_minor >= 0', name='ck_refund_amount_non_negative'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_refunds_order', ondelete='RESTRICT'),
    )
    op.create_index('idx_refunds_status_created', 'refunds', ['status', 'created_at'])
    op.create_index('idx_refunds_buyer', 'refunds', ['buyer_id'])

    # ========================================================================
    # outbox_events
    # ========================================================================
    op.create_table(
        'outbox_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), nullable=True),
        sa.Column('refund_id', UUID(as_uuid=True), nullable=True),
        sa.Column('buyer_id', UUID(as_uuid=True), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index(
        'idx_outbox_pending', 'outbox_events', ['created_at'], postgresql_where=sa.text('dispatched_at IS NULL')
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('outbox_events')
    op.drop_table('refunds')
    op.drop_table('download_tokens')
    op.drop_table('licenses')
    op.drop_table('coupon_usages')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('products')
