"""
Payment verification schemas.

The verify endpoint is what mobile and web clients poll while a payment is
not yet terminal. ``data`` carries the provider's own return parameters
(``pidx``, ``session_id``, eSewa ``data``); only the provider reference is
read from it.
"""

from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.database.models.payment import PaymentStatus


class VerifyPaymentRequest(BaseModel):
    """Client request to re-verify a payment attempt."""

    payment_id: UUID = Field(..., description="Payment attempt returned by checkout")
    provider: str = Field(..., min_length=1, max_length=32, description="Gateway provider name")
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider return parameters; only the reference is used",
    )

    @field_validator("provider")
    @classmethod
    def normalize_provider(cls, v: str) -> str:
        """Provider names are matched case-insensitively."""
        return v.strip().lower()


class VerifyPaymentResponse(BaseModel):
    """Normalized verification result."""

    success: bool
    terminal: bool
    state: Optional[str] = Field(None, description="Raw gateway state, when the gateway answered")
    result: Literal["success", "pending", "failed"]
    payment_id: UUID
    order_id: UUID
    reason: Optional[str] = None
    idempotent: bool = False


class PaymentSummary(BaseModel):
    """Payment attempt as shown on an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    provider_ref: Optional[str] = None
    status: PaymentStatus
    amount_cents: int
    currency: str
