"""
Order snapshot response schemas.

Orders are immutable once created; these schemas only read them.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from storefront.database.models.order import OrderPaymentStatus, OrderStatus, PaymentMethod
from storefront.schemas.checkout import CheckoutTotals
from storefront.schemas.payments import PaymentSummary


class OrderItemResponse(BaseModel):
    """Snapshot line item."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: Optional[UUID] = None
    product_variant_id: Optional[UUID] = None
    product_name: str
    variant_attributes: dict[str, Any] = Field(default_factory=dict)
    quantity: int
    unit_price_cents: int
    total_price_cents: int


class ShippingResponse(BaseModel):
    """Shipping details stored on the order."""

    name: str
    phone: str
    address: str
    city: str
    postal_code: Optional[str] = None
    country: str


class OrderResponse(BaseModel):
    """Order snapshot with items and payment attempts."""

    id: UUID
    order_number: str
    status: OrderStatus
    payment_status: OrderPaymentStatus
    payment_method: Optional[PaymentMethod] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    totals: CheckoutTotals
    shipping: ShippingResponse
    items: list[OrderItemResponse]
    primary_payment_id: Optional[UUID] = None
    payments: list[PaymentSummary] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order, payments=()) -> "OrderResponse":
        """Build the response from an ``Order`` row and its payment attempts."""
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            paid_at=order.paid_at,
            created_at=order.created_at,
            totals=CheckoutTotals(
                subtotal_cents=order.subtotal_cents,
                discount_cents=order.discount_cents,
                tax_cents=order.tax_cents,
                shipping_cents=order.shipping_cents,
                total_cents=order.total_cents,
                currency=order.currency,
            ),
            shipping=ShippingResponse(
                name=order.shipping_name,
                phone=order.shipping_phone,
                address=order.shipping_address,
                city=order.shipping_city,
                postal_code=order.shipping_postal_code,
                country=order.shipping_country,
            ),
            items=[OrderItemResponse.model_validate(item) for item in order.items],
            primary_payment_id=order.primary_payment_id,
            payments=[PaymentSummary.model_validate(p) for p in payments],
        )


class OrderSummary(BaseModel):
    """Order history row without line items."""

    id: UUID
    order_number: str
    status: OrderStatus
    payment_status: OrderPaymentStatus
    payment_method: Optional[PaymentMethod] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    item_count: int
    totals: CheckoutTotals

    @classmethod
    def from_order(cls, order) -> "OrderSummary":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            paid_at=order.paid_at,
            created_at=order.created_at,
            item_count=sum(item.quantity for item in order.items),
            totals=CheckoutTotals(
                subtotal_cents=order.subtotal_cents,
                discount_cents=order.discount_cents,
                tax_cents=order.tax_cents,
                shipping_cents=order.shipping_cents,
                total_cents=order.total_cents,
                currency=order.currency,
            ),
        )


class OrderListResponse(BaseModel):
    """A page of the caller's orders."""

    orders: list[OrderSummary]
    total_count: int
    skip: int
    limit: int
