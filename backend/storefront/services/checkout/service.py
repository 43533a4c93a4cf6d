"""
Checkout service: order snapshot builder.

Turns an owner's single active cart into an immutable priced order. The
active cart row is locked first (the per-owner checkout mutex), then priced,
and the order, its items, the cart transition and (for online methods) the
pending payment attempt are written in one transaction. Gateway initiation
happens only after that transaction has committed, so no database lock is
ever held across a provider round-trip.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.logging import get_logger, log_performance
from storefront.database.models.order import Order, OrderStatus, PaymentMethod
from storefront.database.models.payment import PaymentLogType, PaymentStatus
from storefront.schemas.checkout import CheckoutResponse, CheckoutTotals, ShippingInfo
from storefront.services.cart.repository import CartRepository
from storefront.services.cart.state_machine import NoActiveCartError
from storefront.services.orders.order_numbers import ORDER_NUMBER_ATTEMPTS, generate_order_number
from storefront.services.orders.repository import (
    OrderCreationError,
    OrderNumberConflictError,
    OrderRepository,
)
from storefront.services.payments.gateways.base import (
    GatewayError,
    InitiateRequest,
    InitiateResult,
)
from storefront.services.payments.gateways.registry import GatewayRegistry
from storefront.services.payments.repository import (
    PaymentLogRepository,
    PaymentNotFoundError,
    PaymentRepository,
    PaymentRepositoryError,
)
from storefront.services.pricing.engine import EmptyCartError, PricedCart, PricingEngine
from storefront.services.pricing.repository import PromotionRepository

logger = get_logger(__name__)


class CheckoutError(Exception):
    """Base exception for checkout errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class UnsupportedPaymentMethodError(CheckoutError):
    """Raised when the chosen online method has no configured gateway."""

    pass


class PaymentInitiationError(CheckoutError):
    """Raised when the gateway could not start the payment."""

    pass


class PaymentRestart(BaseModel):
    """Result of re-initiating an attempt; ``initiation`` is None when it already settled."""

    payment_id: uuid.UUID
    order_id: uuid.UUID
    provider: str
    status: PaymentStatus
    initiation: Optional[InitiateResult] = None


class CheckoutService:
    """
    Builds order snapshots from carts and starts online payments.

    Attributes:
        session_factory: Factory for short, explicit transactions
        registry: Configured payment gateways
        pricing_engine: Promotion-aware pricing
        settings: Application settings
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: GatewayRegistry,
        settings: Settings,
        pricing_engine: Optional[PricingEngine] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings
        self.pricing_engine = pricing_engine or PricingEngine()

        logger.info("CheckoutService initialized", providers=registry.providers())

    def _validate_method(self, payment_method: PaymentMethod) -> None:
        if payment_method.is_online and payment_method.value not in self.registry:
            raise UnsupportedPaymentMethodError(
                f"Payment method {payment_method.value} is not available",
                payment_method=payment_method.value,
                available=self.registry.providers(),
            )

    async def _create_order(
        self,
        orders: OrderRepository,
        user_id: uuid.UUID,
        cart_id: uuid.UUID,
        priced: PricedCart,
        shipping: ShippingInfo,
        payment_method: PaymentMethod,
        status: OrderStatus,
    ) -> Order:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            order_number = generate_order_number(
                user_id,
                self.settings.secret_key,
                self.settings.order_number_prefix,
            )
            try:
                return await orders.create_order_with_items(
                    user_id=user_id,
                    cart_id=cart_id,
                    order_number=order_number,
                    priced=priced,
                    shipping=shipping.model_dump(exclude={"email"}),
                    payment_method=payment_method,
                    status=status,
                    currency=self.settings.currency,
                )
            except OrderNumberConflictError:
                logger.warning("Retrying order number", attempt=attempt + 1)

        raise OrderCreationError(
            "Could not allocate a unique order number",
            attempts=ORDER_NUMBER_ATTEMPTS,
        )

    async def checkout(
        self,
        user_id: uuid.UUID,
        shipping: ShippingInfo,
        payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        now: Optional[datetime] = None,
    ) -> CheckoutResponse:
        """
        Create an order from the owner's active cart.

        Cash on delivery converts the cart immediately. Online methods lock
        the cart to the new order, create a pending payment attempt and
        initiate it with the gateway.

        Args:
            user_id: Cart owner
            shipping: Shipping details
            payment_method: Chosen method
            now: Pricing time, defaults to the current time

        Returns:
            Checkout response with the payment handle for online methods

        Raises:
            UnsupportedPaymentMethodError: If no gateway serves the method
            NoActiveCartError: If the owner has no active cart
            EmptyCartError: If the cart is empty
            InvalidPricingError: If pricing violates the money invariants
            CartNotActiveError: If the cart moved on during checkout
            PaymentInitiationError: If the gateway could not start the payment
        """
        self._validate_method(payment_method)
        online = payment_method.is_online

        with log_performance(logger, "checkout", user_id=str(user_id), method=payment_method.value):
            async with self.session_factory() as session, session.begin():
                carts = CartRepository(session)
                orders = OrderRepository(session)

                cart = await carts.lock_active_cart(user_id)
                if cart is None:
                    raise NoActiveCartError("No active cart", user_id=str(user_id))

                lines = carts.to_cart_lines(cart)
                if not lines:
                    raise EmptyCartError("Cart is empty", cart_id=str(cart.id))

                candidates = await PromotionRepository(session).list_candidates(
                    product_ids=[line.product_id for line in lines],
                    variant_ids=[line.product_variant_id for line in lines],
                )
                priced = self.pricing_engine.price_cart(lines, candidates, now=now)

                status = OrderStatus.AWAITING_PAYMENT if online else OrderStatus.PENDING
                order = await self._create_order(
                    orders, user_id, cart.id, priced, shipping, payment_method, status
                )

                payment_id: Optional[uuid.UUID] = None
                if online:
                    await carts.begin_checkout(cart.id, order.id)
                    payment = await PaymentRepository(session).create_payment(
                        order_id=order.id,
                        provider=payment_method.value,
                        amount_cents=priced.total_cents,
                        currency=order.currency,
                    )
                    payment_id = payment.id
                    await orders.set_primary_payment(order, payment.id)
                else:
                    await carts.convert_active_cart(cart.id)

            logger.info(
                "Order snapshot created",
                order_id=str(order.id),
                order_number=order.order_number,
                cart_id=str(cart.id),
                total_cents=order.total_cents,
                payment_method=payment_method.value,
            )

            response = CheckoutResponse(
                order_id=order.id,
                order_number=order.order_number,
                status=order.status,
                payment_status=order.payment_status,
                payment_method=payment_method,
                payment_id=payment_id,
                provider=payment_method.value if online else None,
                totals=CheckoutTotals(
                    subtotal_cents=order.subtotal_cents,
                    discount_cents=order.discount_cents,
                    tax_cents=order.tax_cents,
                    shipping_cents=order.shipping_cents,
                    total_cents=order.total_cents,
                    currency=order.currency,
                ),
            )
            if not online:
                return response

            request = InitiateRequest(
                payment_id=payment_id,
                order_id=order.id,
                order_number=order.order_number,
                amount_cents=order.total_cents,
                currency=order.currency,
                customer_name=shipping.name,
                customer_email=shipping.email,
                customer_phone=shipping.phone,
            )
            initiation = await self._initiate(payment_method.value, request)

            response.payment_url = initiation.payment_url
            response.payment_data = dict(initiation.form_fields)
            return response

    async def _initiate(self, provider: str, request: InitiateRequest) -> InitiateResult:
        try:
            initiation = await self.registry.initiate(provider, request)
        except GatewayError as e:
            logger.error(
                "Payment initiation failed",
                payment_id=str(request.payment_id),
                provider=provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._abandon_attempt(request, e, stage="initiate")
            raise PaymentInitiationError(
                "Payment gateway could not start the payment",
                payment_id=str(request.payment_id),
                order_id=str(request.order_id),
                provider=provider,
            ) from e

        try:
            async with self.session_factory() as session, session.begin():
                await PaymentRepository(session).record_initiation(
                    request.payment_id,
                    initiation.reference,
                    initiation.raw,
                )
                await PaymentLogRepository(session).append(
                    request.payment_id,
                    PaymentLogType.INITIATE,
                    {
                        "reference": initiation.reference,
                        "payment_url": initiation.payment_url,
                        "response": initiation.raw,
                    },
                )
        except (PaymentRepositoryError, SQLAlchemyError) as e:
            # Without a stored reference no return or verify can find the attempt
            logger.error(
                "Payment initiation could not be recorded",
                payment_id=str(request.payment_id),
                provider=provider,
                reference=initiation.reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._abandon_attempt(request, e, stage="record_initiation")
            raise PaymentInitiationError(
                "Payment initiation could not be recorded",
                payment_id=str(request.payment_id),
                order_id=str(request.order_id),
                provider=provider,
            ) from e

        logger.info(
            "Payment initiated",
            payment_id=str(request.payment_id),
            provider=provider,
            reference=initiation.reference,
        )
        return initiation

    async def _abandon_attempt(
        self, request: InitiateRequest, error: Exception, stage: str
    ) -> None:
        """Fail an attempt that never reached the user and reopen the cart."""
        context = getattr(error, "context", {}) or {}
        async with self.session_factory() as session, session.begin():
            await PaymentLogRepository(session).append(
                request.payment_id,
                PaymentLogType.ERROR,
                {
                    "stage": stage,
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "context": {k: str(v) for k, v in context.items()},
                },
            )
            if await PaymentRepository(session).transition_status(
                request.payment_id, PaymentStatus.FAILED
            ):
                await OrderRepository(session).mark_payment_failed(
                    request.order_id, note="Payment initiation failed"
                )
                await CartRepository(session).unlock_checkout_cart(
                    request.order_id, ttl_days=self.settings.cart_ttl_days
                )


    async def restart_payment(
        self,
        payment_id: uuid.UUID,
        provider: Optional[str] = None,
    ) -> PaymentRestart:
        """
        Re-initiate a pending attempt with a fresh provider reference.

        Used when the user comes back to a form-based gateway (eSewa) after
        leaving it; the new reference replaces the old one on the attempt.

        Raises:
            PaymentNotFoundError: If the attempt or its order does not exist, or
                the attempt belongs to a different provider than ``provider``
            PaymentInitiationError: If the gateway could not start the payment
        """
        async with self.session_factory() as session:
            payment = await PaymentRepository(session).get_payment_by_id(payment_id)
            order = await session.get(Order, payment.order_id) if payment else None

        if payment is None or order is None or (
            provider is not None and payment.provider != provider.strip().lower()
        ):
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment_id))

        restart = PaymentRestart(
            payment_id=payment.id,
            order_id=order.id,
            provider=payment.provider,
            status=payment.status,
        )
        if payment.status is not PaymentStatus.PENDING:
            logger.info(
                "Restart skipped for settled payment",
                payment_id=str(payment_id),
                status=payment.status.value,
            )
            return restart

        request = InitiateRequest(
            payment_id=payment.id,
            order_id=order.id,
            order_number=order.order_number,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            customer_name=order.shipping_name,
            customer_phone=order.shipping_phone,
        )
        initiation = await self._initiate(payment.provider, request)
        return restart.model_copy(update={"initiation": initiation})
