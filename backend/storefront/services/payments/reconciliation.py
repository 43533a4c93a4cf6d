"""
Reconciliation engine.

Every browser return and every client re-verify funnels into
``ReconciliationEngine.reconcile``:

1. resolve the attempt by ``(provider, reference)``; an unknown reference is
   reported as ``AttemptNotFound`` and nothing is written
2. append the trigger to the payment log (best effort, own transaction)
3. short-circuit attempts that already settled
4. ask the gateway for the authoritative state, outside any transaction and
   bounded by a timeout; a transport failure is reported as pending
5. on success or terminal failure, open a short transaction, re-read the
   attempt under a row lock and apply the transition only if it is still
   pending; the cart is converted or unlocked only while it is still
   ``checkout_pending`` and linked to this order

Non-terminal gateway states change nothing.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.logging import get_logger, log_performance
from storefront.database.models.order import Order
from storefront.database.models.payment import Payment, PaymentLogType, PaymentStatus
from storefront.services.cart.repository import CartRepository, CartRepositoryError
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.payments.gateways.base import GatewayError, GatewayResult, VerifyRequest
from storefront.services.payments.gateways.registry import GatewayRegistry
from storefront.services.payments.repository import (
    PaymentLogRepository,
    PaymentNotFoundError,
    PaymentRepository,
    PaymentRepositoryError,
)

logger = get_logger(__name__)

Outcome = Literal["success", "pending", "failed"]


class ReconciliationError(Exception):
    """Raised when the engine cannot read or write its state."""

    def __init__(self, message: str, reason: str = "internal_error", **context: Any):
        super().__init__(message)
        self.reason = reason
        self.context = context


class AttemptNotFound(BaseModel):
    """No payment attempt matches the reference; nothing was written."""

    model_config = ConfigDict(frozen=True)

    provider: str
    reference: Optional[str] = None
    reason: str = "payment_not_found"


class Reconciled(BaseModel):
    """Outcome of reconciling one attempt."""

    model_config = ConfigDict(frozen=True)

    status: Outcome
    payment_id: uuid.UUID
    order_id: uuid.UUID
    provider: str
    reference: Optional[str] = None
    gateway_state: Optional[str] = None
    reason: Optional[str] = None
    idempotent: bool = False

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def terminal(self) -> bool:
        return self.status != "pending"


ReconcileResult = Union[AttemptNotFound, Reconciled]


class PaymentAttemptView(BaseModel):
    """Read-only view of an attempt together with its order's owner."""

    model_config = ConfigDict(frozen=True)

    payment_id: uuid.UUID
    order_id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    provider_ref: Optional[str] = None
    status: PaymentStatus
    amount_cents: int
    currency: str


_SETTLED_OUTCOME: dict[PaymentStatus, Outcome] = {
    PaymentStatus.PAID: "success",
    PaymentStatus.REFUNDED: "success",
    PaymentStatus.FAILED: "failed",
}


class ReconciliationEngine:
    """
    Applies verified gateway state to payments, orders and carts.

    Attributes:
        session_factory: Factory for short settlement transactions
        registry: Configured payment gateways
        verify_timeout: Upper bound for one gateway verification
        cart_ttl_days: Idle expiry given to a cart reopened after failure
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: GatewayRegistry,
        verify_timeout: float = 10.0,
        cart_ttl_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.verify_timeout = verify_timeout
        self.cart_ttl_days = cart_ttl_days

        logger.info("ReconciliationEngine initialized", verify_timeout=verify_timeout)

    async def get_attempt(self, payment_id: uuid.UUID) -> Optional[PaymentAttemptView]:
        """
        Load an attempt and its order owner.

        Raises:
            ReconciliationError: If the lookup fails
        """
        try:
            async with self.session_factory() as session:
                payment = await PaymentRepository(session).get_payment_by_id(payment_id)
                if payment is None:
                    return None
                order = await session.get(Order, payment.order_id)
        except PaymentRepositoryError as e:
            raise ReconciliationError(
                "Payment lookup failed", reason="lookup_failed", payment_id=str(payment_id)
            ) from e

        if order is None:
            return None
        return self._view(payment, order.user_id)

    @staticmethod
    def _view(payment: Payment, user_id: uuid.UUID) -> PaymentAttemptView:
        return PaymentAttemptView(
            payment_id=payment.id,
            order_id=payment.order_id,
            user_id=user_id,
            provider=payment.provider,
            provider_ref=payment.provider_ref,
            status=payment.status,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
        )

    async def _append_log(
        self,
        payment_id: uuid.UUID,
        log_type: PaymentLogType,
        payload: dict[str, Any],
    ) -> None:
        """Best-effort audit write; a failure here never blocks reconciliation."""
        try:
            async with self.session_factory() as session, session.begin():
                await PaymentLogRepository(session).append(payment_id, log_type, payload)
        except Exception as e:
            logger.warning(
                "Payment log write failed",
                payment_id=str(payment_id),
                log_type=log_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _resolve(self, provider: str, reference: str) -> Optional[Payment]:
        try:
            async with self.session_factory() as session:
                return await PaymentRepository(session).get_payment_by_reference(
                    provider, reference
                )
        except PaymentRepositoryError as e:
            logger.error(
                "Payment lookup failed",
                provider=provider,
                reference=reference,
                error=str(e),
            )
            raise ReconciliationError(
                "Payment lookup failed",
                reason="lookup_failed",
                provider=provider,
                reference=reference,
            ) from e

    async def reconcile(
        self,
        provider: str,
        reference: Optional[str],
        trigger: PaymentLogType = PaymentLogType.REDIRECT,
        payload: Optional[dict[str, Any]] = None,
    ) -> ReconcileResult:
        """
        Reconcile the attempt identified by ``(provider, reference)``.

        Args:
            provider: Gateway provider name
            reference: Provider reference taken from untrusted input
            trigger: Log kind recorded for this call (redirect or verify-request)
            payload: Untrusted input, stored in the log only

        Returns:
            ``AttemptNotFound`` or ``Reconciled``

        Raises:
            UnknownProviderError: If the provider is not configured
            ReconciliationError: If the database cannot be read or written
        """
        adapter = self.registry.get(provider)
        provider = adapter.name
        reference = (reference or "").strip()
        if not reference:
            return AttemptNotFound(provider=provider, reason="missing_reference")

        payment = await self._resolve(provider, reference)
        if payment is None:
            logger.info("Reconcile for unknown reference", provider=provider, reference=reference)
            return AttemptNotFound(provider=provider, reference=reference)

        payment_id = payment.id
        order_id = payment.order_id

        await self._append_log(
            payment_id,
            trigger,
            {"reference": reference, "payload": payload or {}},
        )

        if payment.status in _SETTLED_OUTCOME:
            logger.info(
                "Payment already settled",
                payment_id=str(payment_id),
                status=payment.status.value,
            )
            outcome = _SETTLED_OUTCOME[payment.status]
            return Reconciled(
                status=outcome,
                payment_id=payment_id,
                order_id=order_id,
                provider=provider,
                reference=reference,
                reason="already_paid" if outcome == "success" else "gateway_terminal",
                idempotent=True,
            )

        request = VerifyRequest(
            reference=reference,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            data=payload or {},
        )

        try:
            with log_performance(logger, "gateway_verify", provider=provider, payment_id=str(payment_id)):
                result = await asyncio.wait_for(
                    self.registry.verify(provider, request),
                    timeout=self.verify_timeout,
                )
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning(
                "Gateway verification failed, reporting pending",
                payment_id=str(payment_id),
                provider=provider,
                reference=reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._append_log(
                payment_id,
                PaymentLogType.ERROR,
                {"stage": "verify", "error": str(e), "error_type": type(e).__name__},
            )
            return Reconciled(
                status="pending",
                payment_id=payment_id,
                order_id=order_id,
                provider=provider,
                reference=reference,
                reason="status_check_failed",
            )

        await self._append_log(
            payment_id,
            PaymentLogType.VERIFY_RESPONSE,
            {
                "success": result.success,
                "terminal": result.terminal,
                "state": result.state,
                "raw": result.raw,
            },
        )

        if not result.success and not result.terminal:
            return Reconciled(
                status="pending",
                payment_id=payment_id,
                order_id=order_id,
                provider=provider,
                reference=reference,
                gateway_state=result.state,
            )

        target = PaymentStatus.PAID if result.success else PaymentStatus.FAILED
        final_status, applied = await self._settle(payment_id, order_id, target, result)

        outcome = _SETTLED_OUTCOME.get(final_status, "pending")
        reason = None
        if outcome == "failed":
            reason = "gateway_terminal"
        elif outcome == "success" and not applied:
            reason = "already_paid"

        return Reconciled(
            status=outcome,
            payment_id=payment_id,
            order_id=order_id,
            provider=provider,
            reference=reference,
            gateway_state=result.state,
            reason=reason,
            idempotent=not applied,
        )

    async def _settle(
        self,
        payment_id: uuid.UUID,
        order_id: uuid.UUID,
        target: PaymentStatus,
        result: GatewayResult,
    ) -> tuple[PaymentStatus, bool]:
        """
        Apply a settlement in one short transaction.

        Returns:
            ``(stored status after the call, whether this call changed it)``

        Raises:
            ReconciliationError: If the transaction fails
        """
        try:
            with log_performance(logger, "settle_payment", payment_id=str(payment_id), target=target.value):
                async with self.session_factory() as session, session.begin():
                    payments = PaymentRepository(session)
                    current = await payments.get_payment_by_id(payment_id, for_update=True)
                    if current is None:
                        raise PaymentNotFoundError(
                            "Payment disappeared during settlement",
                            payment_id=str(payment_id),
                        )
                    if current.status is not PaymentStatus.PENDING:
                        logger.info(
                            "Settlement skipped, payment already settled",
                            payment_id=str(payment_id),
                            status=current.status.value,
                        )
                        return current.status, False

                    if not await payments.transition_status(payment_id, target):
                        refreshed = await payments.get_payment_by_id(payment_id, for_update=True)
                        return refreshed.status if refreshed else current.status, False

                    orders = OrderRepository(session)
                    carts = CartRepository(session)
                    if target is PaymentStatus.PAID:
                        await orders.mark_paid(
                            order_id,
                            paid_at=datetime.now(timezone.utc),
                            note=f"Payment captured ({result.state})",
                        )
                        converted = await carts.convert_checkout_cart(order_id)
                        if converted == 0:
                            logger.warning(
                                "Paid order had no locked cart to convert",
                                order_id=str(order_id),
                                payment_id=str(payment_id),
                            )
                    else:
                        await orders.mark_payment_failed(
                            order_id, note=f"Gateway reported {result.state}"
                        )
                        await carts.unlock_checkout_cart(order_id, ttl_days=self.cart_ttl_days)

            logger.info(
                "Payment settled",
                payment_id=str(payment_id),
                order_id=str(order_id),
                status=target.value,
                gateway_state=result.state,
            )
            return target, True
        except (PaymentRepositoryError, OrderRepositoryError, CartRepositoryError) as e:
            logger.error(
                "Settlement transaction failed",
                payment_id=str(payment_id),
                order_id=str(order_id),
                target=target.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ReconciliationError(
                "Settlement failed",
                payment_id=str(payment_id),
                order_id=str(order_id),
            ) from e
