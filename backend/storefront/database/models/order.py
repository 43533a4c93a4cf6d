"""
Order snapshot models.

An Order is the immutable priced copy of a cart taken at checkout: line
items and monetary totals are written once and never updated. Only the
fulfillment status, payment status and settlement timestamp move afterwards,
and only through the reconciliation engine (online payments) or at creation
time (cash on delivery). Money is stored in integer minor units.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import BaseModel, JSONType, enum_type


class OrderStatus(str, Enum):
    """
    Fulfillment status of an order.

    Attributes:
        PENDING: Placed, awaiting fulfillment (cash on delivery)
        AWAITING_PAYMENT: Placed, waiting for an online payment to settle
        PROCESSING: Paid or confirmed, being prepared
        PAYMENT_FAILED: Online payment ended in a terminal failure
        SHIPPED: Handed to the carrier
        DELIVERED: Received by the customer
        CANCELLED: Cancelled
        REFUNDED: Refunded after cancellation
    """

    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    PAYMENT_FAILED = "payment_failed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid order status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions)."""
        return self in (
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
            OrderStatus.PAYMENT_FAILED,
        )


class OrderPaymentStatus(str, Enum):
    """Payment status as recorded on the order."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, Enum):
    """
    Payment method chosen at checkout.

    Online methods share their value with the gateway provider name.
    """

    ESEWA = "esewa"
    KHALTI = "khalti"
    STRIPE = "stripe"
    CASH_ON_DELIVERY = "cash_on_delivery"

    @classmethod
    def from_string(cls, value: str) -> "PaymentMethod":
        """
        Create PaymentMethod from string value.

        Raises:
            ValueError: If value is not a valid method
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid payment method: {value}")

    @property
    def is_online(self) -> bool:
        """Online methods go through a gateway before the cart converts."""
        return self is not PaymentMethod.CASH_ON_DELIVERY


class Order(BaseModel):
    """
    Priced order snapshot.

    Attributes:
        user_id: Owner
        order_number: Human-readable unique number
        cart_id: Cart the snapshot was taken from
        status: Fulfillment status
        payment_status: Payment status
        payment_method: Method chosen at checkout
        paid_at: Settlement timestamp
        subtotal_cents: Sum of list price times quantity
        discount_cents: Promotional discount
        tax_cents: Tax (reserved, zero by default)
        shipping_cents: Shipping (reserved, zero by default)
        total_cents: subtotal - discount + tax + shipping
        primary_payment_id: Payment attempt created at checkout
    """

    __tablename__ = "orders"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    order_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    cart_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("carts.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )

    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        enum_type(OrderPaymentStatus, "order_payment_status"),
        nullable=False,
        default=OrderPaymentStatus.PENDING,
    )

    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        enum_type(PaymentMethod, "payment_method"),
        nullable=True,
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Shipping snapshot
    shipping_name: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    shipping_address: Mapped[str] = mapped_column(String(500), nullable=False)
    shipping_city: Mapped[str] = mapped_column(String(120), nullable=False)
    shipping_postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    shipping_country: Mapped[str] = mapped_column(String(80), nullable=False, default="Nepal")

    # Totals
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NPR")

    primary_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Payment attempt created at checkout",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_status", "status"),
        CheckConstraint(
            "subtotal_cents >= 0 AND discount_cents >= 0 AND tax_cents >= 0 "
            "AND shipping_cents >= 0 AND total_cents >= 0",
            name="ck_orders_money_non_negative",
        ),
        CheckConstraint("discount_cents <= subtotal_cents", name="ck_orders_discount_le_subtotal"),
        CheckConstraint(
            "total_cents = subtotal_cents - discount_cents + tax_cents + shipping_cents",
            name="ck_orders_total_consistent",
        ),
        CheckConstraint(
            "(paid_at IS NULL AND payment_status IN ('pending', 'failed')) OR "
            "(paid_at IS NOT NULL AND payment_status IN ('paid', 'refunded', 'partially_refunded'))",
            name="ck_orders_paid_at_consistent",
        ),
    )


class OrderItem(BaseModel):
    """
    Denormalized line item snapshot.

    Attributes:
        order_id: Parent order
        product_id: Product at checkout time
        product_variant_id: Variant at checkout time
        product_name: Display name at checkout time
        variant_attributes: Variant attributes at checkout time
        quantity: Units
        unit_price_cents: Final (post-discount) unit price
        total_price_cents: unit_price_cents * quantity
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
    )

    product_variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_variants.id", ondelete="SET NULL"),
        nullable=True,
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    variant_attributes: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    unit_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    total_price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    order: Mapped[Order] = relationship("Order", back_populates="items")

    __table_args__ = (
        Index("ix_order_items_order_id", "order_id"),
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint(
            "unit_price_cents >= 0 AND total_price_cents >= 0",
            name="ck_order_items_money_non_negative",
        ),
        CheckConstraint(
            "total_price_cents = unit_price_cents * quantity",
            name="ck_order_items_total_consistent",
        ),
    )


class OrderStatusHistory(BaseModel):
    """
    Append-only audit trail of order status changes.

    Attributes:
        order_id: Parent order
        old_status: Previous status (None on creation)
        new_status: New status
        note: Short reason
    """

    __tablename__ = "order_status_history"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    old_status: Mapped[Optional[OrderStatus]] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=True,
    )

    new_status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=False,
    )

    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    __table_args__ = (Index("ix_order_status_history_order_created", "order_id", "created_at"),)
