"""
Payment record store and payment log.

This module implements PaymentRepository, the durable ledger of payment
attempts, and PaymentLogRepository, the append-only gateway audit trail.
Attempts are located either by their internal id or by the
``(provider, provider_ref)`` pair a gateway echoes back. After creation only
the reconciliation engine changes an attempt's status, and it does so with a
conditional UPDATE that only matches pending rows, so a settled attempt can
never move again.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.models.payment import (
    Payment,
    PaymentLog,
    PaymentLogType,
    PaymentStatus,
)

logger = get_logger(__name__)


class PaymentRepositoryError(Exception):
    """Base exception for payment repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PaymentNotFoundError(PaymentRepositoryError):
    """Raised when payment is not found."""

    pass


class DuplicateReferenceError(PaymentRepositoryError):
    """Raised when a provider reference is already bound to another attempt."""

    pass


class PaymentRepository:
    """
    Repository for payment attempt data access.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize payment repository.

        Args:
            session: Async database session
        """
        self.session = session
        logger.debug("PaymentRepository initialized")

    async def create_payment(
        self,
        order_id: uuid.UUID,
        provider: str,
        amount_cents: int,
        currency: str,
        provider_ref: Optional[str] = None,
    ) -> Payment:
        """
        Create a pending payment attempt.

        Args:
            order_id: Order being paid
            provider: Gateway provider name
            amount_cents: Amount in minor units
            currency: ISO 4217 currency code
            provider_ref: Gateway reference, if already known

        Returns:
            Created payment record

        Raises:
            PaymentRepositoryError: If payment creation fails
        """
        try:
            payment = Payment(
                id=uuid.uuid4(),
                order_id=order_id,
                provider=provider,
                provider_ref=provider_ref,
                amount_cents=amount_cents,
                currency=currency,
                status=PaymentStatus.PENDING,
            )
            self.session.add(payment)
            await self.session.flush()

            logger.info(
                "Payment attempt created",
                payment_id=str(payment.id),
                order_id=str(order_id),
                provider=provider,
                amount_cents=amount_cents,
            )
            return payment
        except SQLAlchemyError as e:
            logger.error(
                "Failed to create payment",
                order_id=str(order_id),
                provider=provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentRepositoryError(
                "Failed to create payment record",
                order_id=str(order_id),
                provider=provider,
                error=str(e),
            ) from e

    async def get_payment_by_id(
        self,
        payment_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """
        Retrieve payment by ID.

        Args:
            payment_id: Payment identifier
            for_update: Lock the row and refresh any cached copy

        Returns:
            Payment if found, None otherwise
        """
        try:
            stmt = select(Payment).where(Payment.id == payment_id)
            if for_update:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to retrieve payment",
                payment_id=str(payment_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentRepositoryError(
                "Failed to retrieve payment",
                payment_id=str(payment_id),
            ) from e

    async def get_payment_by_reference(
        self,
        provider: str,
        provider_ref: str,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """
        Relocate an attempt from the reference a gateway echoed back.

        Args:
            provider: Gateway provider name
            provider_ref: Gateway reference
            for_update: Lock the row and refresh any cached copy

        Returns:
            Payment if found, None otherwise
        """
        try:
            stmt = select(Payment).where(
                and_(Payment.provider == provider, Payment.provider_ref == provider_ref)
            )
            if for_update:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            payment = result.scalar_one_or_none()

            if payment is None:
                logger.debug(
                    "Payment not found by reference",
                    provider=provider,
                    reference=provider_ref,
                )
            return payment
        except SQLAlchemyError as e:
            logger.error(
                "Failed to retrieve payment by reference",
                provider=provider,
                reference=provider_ref,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentRepositoryError(
                "Failed to retrieve payment",
                provider=provider,
                reference=provider_ref,
            ) from e

    async def get_payments_by_order_id(self, order_id: uuid.UUID) -> list[Payment]:
        """Retrieve every attempt made for an order, oldest first."""
        try:
            stmt = (
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.created_at)
            )
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PaymentRepositoryError(
                "Failed to retrieve payments for order",
                order_id=str(order_id),
            ) from e

    async def record_initiation(
        self,
        payment_id: uuid.UUID,
        provider_ref: str,
        gateway_response: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Bind a gateway reference to a pending attempt.

        Re-initiation (a fresh eSewa transaction uuid) overwrites the
        previous reference. Settled attempts are left untouched.

        Raises:
            DuplicateReferenceError: If the reference belongs to another attempt
            PaymentRepositoryError: If the update fails
        """
        values: dict[str, Any] = {"provider_ref": provider_ref}
        if gateway_response is not None:
            values["gateway_response"] = gateway_response

        stmt = (
            update(Payment)
            .where(and_(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING))
            .values(**values)
        )
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
        except IntegrityError as e:
            logger.error(
                "Provider reference already in use",
                payment_id=str(payment_id),
                reference=provider_ref,
            )
            raise DuplicateReferenceError(
                "Provider reference already bound to another payment",
                payment_id=str(payment_id),
                reference=provider_ref,
            ) from e
        except SQLAlchemyError as e:
            raise PaymentRepositoryError(
                "Failed to record payment initiation",
                payment_id=str(payment_id),
                error=str(e),
            ) from e

        if result.rowcount != 1:
            logger.warning(
                "Initiation not recorded on settled payment",
                payment_id=str(payment_id),
                reference=provider_ref,
            )

    async def transition_status(
        self,
        payment_id: uuid.UUID,
        new_status: PaymentStatus,
    ) -> bool:
        """
        Move a pending attempt to a settled status.

        The UPDATE only matches rows that are still pending, which makes
        settlement monotonic: ``paid`` and ``failed`` are absorbing.

        Args:
            payment_id: Payment identifier
            new_status: ``paid`` or ``failed``

        Returns:
            True if this call performed the transition, False if the attempt
            had already settled

        Raises:
            PaymentRepositoryError: If the update fails
        """
        if new_status is PaymentStatus.PENDING:
            raise ValueError("Cannot transition a payment back to pending")

        stmt = (
            update(Payment)
            .where(and_(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING))
            .values(status=new_status)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update payment status",
                payment_id=str(payment_id),
                new_status=new_status.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PaymentRepositoryError(
                "Failed to update payment status",
                payment_id=str(payment_id),
                new_status=new_status.value,
            ) from e

        changed = result.rowcount == 1
        logger.info(
            "Payment status transition",
            payment_id=str(payment_id),
            new_status=new_status.value,
            applied=changed,
        )
        return changed


class PaymentLogRepository:
    """Append-only writer for gateway audit events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        payment_id: uuid.UUID,
        log_type: PaymentLogType,
        payload: Optional[dict[str, Any]] = None,
    ) -> PaymentLog:
        """
        Append one audit record.

        Raises:
            PaymentRepositoryError: If the insert fails
        """
        entry = PaymentLog(
            id=uuid.uuid4(),
            payment_id=payment_id,
            log_type=log_type,
            payload=payload or {},
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PaymentRepositoryError(
                "Failed to append payment log",
                payment_id=str(payment_id),
                log_type=log_type.value,
            ) from e
        return entry

    async def list_for_payment(self, payment_id: uuid.UUID) -> list[PaymentLog]:
        """Read the audit trail of one attempt, oldest first."""
        result = await self.session.execute(
            select(PaymentLog)
            .where(PaymentLog.payment_id == payment_id)
            .order_by(PaymentLog.created_at)
        )
        return list(result.scalars().all())
