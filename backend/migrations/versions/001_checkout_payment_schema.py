"""
Alembic migration: Create catalog, cart, order and payment schema.

Creates the tables the checkout and payment reconciliation flow reads and
writes, including the database-enforced cart invariants (one live cart per
user, checkout link present exactly while checkout is pending) and the
(provider, provider_ref) uniqueness that locates payment attempts.

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CART_STATUS = postgresql.ENUM(
    'active', 'checkout_pending', 'converted', 'abandoned',
    name='cart_status', create_type=False,
)
ORDER_STATUS = postgresql.ENUM(
    'pending', 'awaiting_payment', 'processing', 'payment_failed',
    'shipped', 'delivered', 'cancelled', 'refunded',
    name='order_status', create_type=False,
)
ORDER_PAYMENT_STATUS = postgresql.ENUM(
    'pending', 'paid', 'failed', 'refunded', 'partially_refunded',
    name='order_payment_status', create_type=False,
)
PAYMENT_METHOD = postgresql.ENUM(
    'esewa', 'khalti', 'stripe', 'cash_on_delivery',
    name='payment_method', create_type=False,
)
PAYMENT_STATUS = postgresql.ENUM(
    'pending', 'paid', 'failed', 'refunded',
    name='payment_status', create_type=False,
)
PAYMENT_LOG_TYPE = postgresql.ENUM(
    'initiate', 'redirect', 'verify-request', 'verify-response', 'error',
    name='payment_log_type', create_type=False,
)

ENUMS = (
    CART_STATUS,
    ORDER_STATUS,
    ORDER_PAYMENT_STATUS,
    PAYMENT_METHOD,
    PAYMENT_STATUS,
    PAYMENT_LOG_TYPE,
)


def _id() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    """
    Upgrade database schema to the checkout and payment model.
    """
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # Catalog
    op.create_table(
        'products',
        _id(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_timestamps(),
    )

    op.create_table(
        'product_variants',
        _id(),
        sa.Column('product_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('attributes', postgresql.JSONB(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_timestamps(),
        sa.CheckConstraint('price_cents >= 0', name='ck_product_variants_price_non_negative'),
    )
    op.create_index('ix_product_variants_product_id', 'product_variants', ['product_id'])

    # Promotions
    op.create_table(
        'featured_collections',
        _id(),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'featured_items',
        _id(),
        sa.Column('collection_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('featured_collections.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=True),
        sa.Column('product_variant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('product_variants.id', ondelete='CASCADE'), nullable=True),
        sa.Column('deal_price_cents', sa.BigInteger(), nullable=True),
        sa.Column('deal_percent', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('product_id IS NOT NULL OR product_variant_id IS NOT NULL',
                           name='ck_featured_items_has_target'),
        sa.CheckConstraint('deal_price_cents IS NULL OR deal_price_cents >= 0',
                           name='ck_featured_items_deal_price_non_negative'),
        sa.CheckConstraint('deal_percent IS NULL OR (deal_percent >= 0 AND deal_percent <= 100)',
                           name='ck_featured_items_deal_percent_range'),
    )
    op.create_index('ix_featured_items_collection_id', 'featured_items', ['collection_id'])
    op.create_index('ix_featured_items_product_id', 'featured_items', ['product_id'])
    op.create_index('ix_featured_items_product_variant_id', 'featured_items', ['product_variant_id'])

    # Carts
    op.create_table(
        'carts',
        _id(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', CART_STATUS, nullable=False, server_default='active'),
        sa.Column('checkout_order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "(status = 'checkout_pending' AND checkout_order_id IS NOT NULL) OR "
            "(status <> 'checkout_pending' AND checkout_order_id IS NULL)",
            name='ck_carts_checkout_link',
        ),
    )
    op.create_index('ix_carts_user_id', 'carts', ['user_id'])
    op.create_index('ix_carts_checkout_order_id', 'carts', ['checkout_order_id'])
    op.create_index(
        'ux_carts_one_live_per_user',
        'carts',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'checkout_pending')"),
    )

    op.create_table(
        'cart_items',
        _id(),
        sa.Column('cart_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('carts.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_variant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('product_variants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('cart_id', 'product_variant_id', name='uq_cart_items_cart_variant'),
        sa.CheckConstraint('quantity > 0', name='ck_cart_items_quantity_positive'),
        sa.CheckConstraint('price_cents >= 0', name='ck_cart_items_price_non_negative'),
    )
    op.create_index('ix_cart_items_cart_id', 'cart_items', ['cart_id'])

    # Orders
    op.create_table(
        'orders',
        _id(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('cart_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('carts.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', ORDER_STATUS, nullable=False, server_default='pending'),
        sa.Column('payment_status', ORDER_PAYMENT_STATUS, nullable=False, server_default='pending'),
        sa.Column('payment_method', PAYMENT_METHOD, nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipping_name', sa.String(length=255), nullable=False),
        sa.Column('shipping_phone', sa.String(length=32), nullable=False),
        sa.Column('shipping_address', sa.String(length=500), nullable=False),
        sa.Column('shipping_city', sa.String(length=120), nullable=False),
        sa.Column('shipping_postal_code', sa.String(length=20), nullable=True),
        sa.Column('shipping_country', sa.String(length=80), nullable=False, server_default='Nepal'),
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False),
        sa.Column('discount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shipping_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='NPR'),
        sa.Column('primary_payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.CheckConstraint(
            'subtotal_cents >= 0 AND discount_cents >= 0 AND tax_cents >= 0 '
            'AND shipping_cents >= 0 AND total_cents >= 0',
            name='ck_orders_money_non_negative',
        ),
        sa.CheckConstraint('discount_cents <= subtotal_cents', name='ck_orders_discount_le_subtotal'),
        sa.CheckConstraint(
            'total_cents = subtotal_cents - discount_cents + tax_cents + shipping_cents',
            name='ck_orders_total_consistent',
        ),
        sa.CheckConstraint(
            "(paid_at IS NULL AND payment_status IN ('pending', 'failed')) OR "
            "(paid_at IS NOT NULL AND payment_status IN ('paid', 'refunded', 'partially_refunded'))",
            name='ck_orders_paid_at_consistent',
        ),
    )
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'order_items',
        _id(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('products.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_variant_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('product_variants.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('variant_attributes', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('total_price_cents', sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price_cents >= 0 AND total_price_cents >= 0',
                           name='ck_order_items_money_non_negative'),
        sa.CheckConstraint('total_price_cents = unit_price_cents * quantity',
                           name='ck_order_items_total_consistent'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_status_history',
        _id(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('old_status', ORDER_STATUS, nullable=True),
        sa.Column('new_status', ORDER_STATUS, nullable=False),
        sa.Column('note', sa.String(length=500), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_order_status_history_order_created', 'order_status_history',
                    ['order_id', 'created_at'])

    # Payments
    op.create_table(
        'payments',
        _id(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_ref', sa.String(length=255), nullable=True),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='NPR'),
        sa.Column('status', PAYMENT_STATUS, nullable=False, server_default='pending'),
        sa.Column('gateway_response', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_payments_provider_ref'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_payments_amount_non_negative'),
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'])

    op.create_table(
        'payment_logs',
        _id(),
        sa.Column('payment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('log_type', PAYMENT_LOG_TYPE, nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    )
    op.create_index('ix_payment_logs_payment_created', 'payment_logs', ['payment_id', 'created_at'])


def downgrade() -> None:
    """
    Drop the checkout and payment schema.
    """
    op.drop_table('payment_logs')
    op.drop_table('payments')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('cart_items')
    op.drop_table('carts')
    op.drop_table('featured_items')
    op.drop_table('featured_collections')
    op.drop_table('product_variants')
    op.drop_table('products')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
