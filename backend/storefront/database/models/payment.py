"""
Payment attempt and payment log models.

Each call to a gateway's initiate creates (or refreshes) one Payment row. The
``(provider, provider_ref)`` pair is unique whenever the reference is set;
it is how an untrusted browser redirect or a client poll relocates the
exact attempt. PaymentLog is an append-only audit trail of what was sent to
and received from gateways. It is written for diagnosis only and never read
back for decisions.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import Base, BaseModel, JSONType, UUIDMixin, enum_type


class PaymentStatus(str, Enum):
    """
    Payment attempt status.

    Attributes:
        PENDING: Initiated, outcome unknown
        PAID: Funds captured (absorbing)
        FAILED: Terminal gateway failure (absorbing)
        REFUNDED: Refunded after capture
    """

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    @classmethod
    def from_string(cls, value: str) -> "PaymentStatus":
        """
        Create PaymentStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid payment status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions)."""
        return self is not PaymentStatus.PENDING


class PaymentLogType(str, Enum):
    """Kind of event recorded in the payment log."""

    INITIATE = "initiate"
    REDIRECT = "redirect"
    VERIFY_REQUEST = "verify-request"
    VERIFY_RESPONSE = "verify-response"
    ERROR = "error"


class Payment(BaseModel):
    """
    One payment initiation attempt for an order.

    Attributes:
        order_id: Order being paid
        provider: Gateway provider name
        provider_ref: Gateway's own identifier for the attempt
        amount_cents: Amount requested in minor units
        currency: ISO 4217 currency code
        status: Attempt status
        gateway_response: Raw initiation response, stored opaquely
    """

    __tablename__ = "payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    provider_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Gateway reference (pidx, transaction_uuid, session id)",
    )

    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NPR")

    status: Mapped[PaymentStatus] = mapped_column(
        enum_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    gateway_response: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Raw gateway initiation response",
    )

    logs: Mapped[list["PaymentLog"]] = relationship(
        "PaymentLog",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentLog.created_at",
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_payments_provider_ref"),
        Index("ix_payments_status_created", "status", "created_at"),
        CheckConstraint("amount_cents >= 0", name="ck_payments_amount_non_negative"),
    )


class PaymentLog(Base, UUIDMixin):
    """
    Append-only gateway audit record.

    Attributes:
        payment_id: Payment attempt the event belongs to
        log_type: Event kind
        payload: Opaque event payload
        created_at: When the event was recorded
    """

    __tablename__ = "payment_logs"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
    )

    log_type: Mapped[PaymentLogType] = mapped_column(
        enum_type(PaymentLogType, "payment_log_type"),
        nullable=False,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    payment: Mapped[Payment] = relationship("Payment", back_populates="logs")

    __table_args__ = (Index("ix_payment_logs_payment_created", "payment_id", "created_at"),)
