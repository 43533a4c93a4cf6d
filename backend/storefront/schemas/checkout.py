"""
Checkout Pydantic schemas for API request/response validation.

Money is exchanged in integer minor units (``*_cents``) throughout.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.database.models.order import OrderPaymentStatus, OrderStatus, PaymentMethod


class ShippingInfo(BaseModel):
    """Shipping details copied onto the order snapshot."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255, description="Recipient name")
    phone: str = Field(..., min_length=7, max_length=32, description="Contact phone")
    address: str = Field(..., min_length=1, max_length=500, description="Street address")
    city: str = Field(..., min_length=1, max_length=120, description="City")
    postal_code: Optional[str] = Field(None, max_length=20, description="Postal code")
    country: Optional[str] = Field(None, max_length=80, description="Country, defaults to Nepal")
    email: Optional[str] = Field(None, max_length=255, description="Receipt email")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        """Require at least seven digits."""
        digits = "".join(filter(str.isdigit, v))
        if len(digits) < 7:
            raise ValueError("Phone number must contain at least 7 digits")
        return v

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate email format."""
        if v is None or v == "":
            return None
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class CheckoutRequest(BaseModel):
    """Checkout request body."""

    shipping: ShippingInfo
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.CASH_ON_DELIVERY,
        description="esewa, khalti, stripe or cash_on_delivery",
    )

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        """Accept any casing and surrounding whitespace."""
        if isinstance(v, str):
            return PaymentMethod.from_string(v)
        return v


class CheckoutTotals(BaseModel):
    """Order totals in minor units."""

    subtotal_cents: int
    discount_cents: int
    tax_cents: int
    shipping_cents: int
    total_cents: int
    currency: str


class CheckoutResponse(BaseModel):
    """Checkout result including the payment handle for online methods."""

    order_id: UUID
    order_number: str
    status: OrderStatus
    payment_status: OrderPaymentStatus
    payment_method: PaymentMethod
    payment_id: Optional[UUID] = None
    provider: Optional[str] = None
    payment_url: Optional[str] = None
    payment_data: dict[str, str] = Field(default_factory=dict)
    totals: CheckoutTotals
