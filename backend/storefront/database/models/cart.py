"""
Shopping cart database models.

This module defines the Cart and CartItem models. A cart belongs to one
owner and moves through a small lifecycle (active, checkout_pending,
converted, abandoned). While a checkout is waiting on an online payment the
cart is locked to exactly one order through ``checkout_order_id``; the pair
``(status, checkout_order_id)`` is enforced by a check constraint so that a
linked cart is always ``checkout_pending`` and vice versa.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import BaseModel, enum_type
from storefront.database.models.catalog import ProductVariant


class CartStatus(str, Enum):
    """
    Cart lifecycle status.

    Attributes:
        ACTIVE: Editable cart, no order link
        CHECKOUT_PENDING: Locked to one order awaiting online payment
        CONVERTED: Turned into a settled order
        ABANDONED: Expired without checkout
    """

    ACTIVE = "active"
    CHECKOUT_PENDING = "checkout_pending"
    CONVERTED = "converted"
    ABANDONED = "abandoned"

    @classmethod
    def from_string(cls, value: str) -> "CartStatus":
        """
        Create CartStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid cart status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Converted and abandoned carts never change again."""
        return self in (CartStatus.CONVERTED, CartStatus.ABANDONED)

    @property
    def is_live(self) -> bool:
        """Live carts count towards the one-cart-per-owner rule."""
        return self in (CartStatus.ACTIVE, CartStatus.CHECKOUT_PENDING)


class Cart(BaseModel):
    """
    Shopping cart owned by a single user.

    Attributes:
        user_id: Owner
        status: Lifecycle status
        checkout_order_id: Order currently locking the cart
        expires_at: Idle expiry for active carts
    """

    __tablename__ = "carts"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        comment="Cart owner",
    )

    status: Mapped[CartStatus] = mapped_column(
        enum_type(CartStatus, "cart_status"),
        nullable=False,
        default=CartStatus.ACTIVE,
        comment="Cart lifecycle status",
    )

    checkout_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Order that holds the checkout lock",
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Expiry of an idle active cart",
    )

    items: Mapped[list["CartItem"]] = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.created_at",
    )

    __table_args__ = (
        Index("ix_carts_user_id", "user_id"),
        Index("ix_carts_checkout_order_id", "checkout_order_id"),
        Index(
            "ux_carts_one_live_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'checkout_pending')"),
            sqlite_where=text("status IN ('active', 'checkout_pending')"),
        ),
        CheckConstraint(
            "(status = 'checkout_pending' AND checkout_order_id IS NOT NULL) OR "
            "(status <> 'checkout_pending' AND checkout_order_id IS NULL)",
            name="ck_carts_checkout_link",
        ),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether an active cart has passed its expiry."""
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or datetime.now(timezone.utc))

    def extend_expiration(self, days: int) -> None:
        """Push the expiry ``days`` into the future."""
        self.expires_at = datetime.now(timezone.utc) + timedelta(days=days)

    @property
    def is_empty(self) -> bool:
        return not self.items


class CartItem(BaseModel):
    """
    Line in a cart.

    Attributes:
        cart_id: Parent cart
        product_variant_id: Variant being bought
        quantity: Units, always positive
        price_cents: Price seen when the item was added (informational)
    """

    __tablename__ = "cart_items"

    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("carts.id", ondelete="CASCADE"),
        nullable=False,
    )

    product_variant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_variants.id", ondelete="RESTRICT"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    price_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Price when added to cart; checkout reprices from catalog",
    )

    cart: Mapped[Cart] = relationship("Cart", back_populates="items")

    variant: Mapped[ProductVariant] = relationship("ProductVariant", lazy="selectin")

    __table_args__ = (
        Index("ix_cart_items_cart_id", "cart_id"),
        UniqueConstraint("cart_id", "product_variant_id", name="uq_cart_items_cart_variant"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        CheckConstraint("price_cents >= 0", name="ck_cart_items_price_non_negative"),
    )
