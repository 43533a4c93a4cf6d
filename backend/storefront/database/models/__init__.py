"""
Database models package initialization.

Models are imported here so they register with ``Base.metadata`` for Alembic
autogeneration and relationship resolution.
"""

from storefront.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from storefront.database.models.catalog import Product, ProductVariant
from storefront.database.models.promotion import FeaturedCollection, FeaturedItem
from storefront.database.models.cart import Cart, CartItem, CartStatus
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
)
from storefront.database.models.payment import (
    Payment,
    PaymentLog,
    PaymentLogType,
    PaymentStatus,
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Product",
    "ProductVariant",
    "FeaturedCollection",
    "FeaturedItem",
    "Cart",
    "CartItem",
    "CartStatus",
    "Order",
    "OrderItem",
    "OrderPaymentStatus",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentMethod",
    "Payment",
    "PaymentLog",
    "PaymentLogType",
    "PaymentStatus",
]
