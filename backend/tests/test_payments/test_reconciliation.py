"""
Tests for the reconciliation engine.

Covers the happy path, pending retries, terminal failures, idempotent
re-verification, gateway outages and the guard that keeps a late settlement
from touching a cart that has moved on.
"""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from storefront.database.models import (
    Cart,
    CartStatus,
    OrderPaymentStatus,
    OrderStatus,
    OrderStatusHistory,
    PaymentLogType,
    PaymentMethod,
    PaymentStatus,
)
from storefront.services.payments.gateways.base import (
    GatewayTransportError,
    UnknownProviderError,
    VerifyRequest,
)
from storefront.services.payments.gateways.registry import GatewayRegistry
from storefront.services.payments.reconciliation import (
    AttemptNotFound,
    Reconciled,
    ReconciliationEngine,
)
from storefront.services.checkout.service import CheckoutService
from storefront.services.payments.repository import PaymentLogRepository, PaymentRepository

from fakes import EXPIRED, PAID, PENDING, FakeGateway

REFERENCE = "khalti-ref-1"


def log_types(logs) -> list[PaymentLogType]:
    return [log.log_type for log in logs]


# ============================================================================
# Settlement
# ============================================================================


class TestSettlement:
    """Test the transitions applied from verified gateway state."""

    @pytest.mark.asyncio
    async def test_pending_then_success(
        self, seed, online_checkout, fake_gateway, reconciliation_engine
    ):
        # Arrange
        response, cart = online_checkout
        fake_gateway.verify_results = [PENDING, PAID]

        # Act
        first = await reconciliation_engine.reconcile("khalti", REFERENCE, payload={"pidx": REFERENCE})

        # Assert: pending changes nothing
        assert isinstance(first, Reconciled)
        assert first.status == "pending"
        assert first.gateway_state == "Pending"
        assert not first.terminal
        assert (await seed.payment(response.payment_id)).status is PaymentStatus.PENDING
        assert (await seed.cart_of(cart.id)).status is CartStatus.CHECKOUT_PENDING

        # Act
        second = await reconciliation_engine.reconcile("khalti", REFERENCE)

        # Assert: settled
        assert second.status == "success"
        assert second.success and second.terminal
        assert second.idempotent is False
        assert second.reason is None
        assert second.payment_id == response.payment_id
        assert second.order_id == response.order_id

        payment = await seed.payment(response.payment_id)
        assert payment.status is PaymentStatus.PAID

        order = await seed.order(response.order_id)
        assert order.status is OrderStatus.PROCESSING
        assert order.payment_status is OrderPaymentStatus.PAID
        assert order.paid_at is not None

        stored_cart = await seed.cart_of(cart.id)
        assert stored_cart.status is CartStatus.CONVERTED
        assert stored_cart.checkout_order_id is None

        assert log_types(await seed.logs(payment.id)) == [
            PaymentLogType.INITIATE,
            PaymentLogType.REDIRECT,
            PaymentLogType.VERIFY_RESPONSE,
            PaymentLogType.REDIRECT,
            PaymentLogType.VERIFY_RESPONSE,
        ]

    @pytest.mark.asyncio
    async def test_verify_uses_stored_amount(self, online_checkout, fake_gateway, reconciliation_engine):
        fake_gateway.verify_results = [PAID]

        await reconciliation_engine.reconcile("khalti", REFERENCE, payload={"amount": 1})

        request: VerifyRequest = fake_gateway.verified[0]
        assert request.reference == REFERENCE
        assert request.amount_cents == 50000
        assert request.currency == "NPR"

    @pytest.mark.asyncio
    async def test_terminal_failure_reopens_cart(
        self, seed, online_checkout, fake_gateway, reconciliation_engine
    ):
        # Arrange
        response, cart = online_checkout
        fake_gateway.verify_results = [EXPIRED]

        # Act
        result = await reconciliation_engine.reconcile("khalti", REFERENCE)

        # Assert
        assert result.status == "failed"
        assert result.terminal and not result.success
        assert result.reason == "gateway_terminal"
        assert result.gateway_state == "Expired"

        assert (await seed.payment(response.payment_id)).status is PaymentStatus.FAILED
        order = await seed.order(response.order_id)
        assert order.status is OrderStatus.PAYMENT_FAILED
        assert order.payment_status is OrderPaymentStatus.FAILED

        stored_cart = await seed.cart_of(cart.id)
        assert stored_cart.status is CartStatus.ACTIVE
        assert stored_cart.checkout_order_id is None
        assert not stored_cart.is_expired()

    @pytest.mark.asyncio
    async def test_provider_name_is_case_insensitive(self, online_checkout, fake_gateway, reconciliation_engine):
        fake_gateway.verify_results = [PAID]

        result = await reconciliation_engine.reconcile(" Khalti ", f"  {REFERENCE} ")

        assert result.status == "success"
        assert result.provider == "khalti"


# ============================================================================
# Idempotency
# ============================================================================


class TestIdempotency:
    """Test repeated reconciliation of settled attempts."""

    @pytest.mark.asyncio
    async def test_success_is_absorbing(self, seed, online_checkout, fake_gateway, reconciliation_engine):
        # Arrange
        response, _ = online_checkout
        fake_gateway.verify_results = [PAID]
        await reconciliation_engine.reconcile("khalti", REFERENCE)
        fake_gateway.verify_results = [EXPIRED]

        # Act
        again = await reconciliation_engine.reconcile("khalti", REFERENCE)

        # Assert
        assert again.status == "success"
        assert again.idempotent is True
        assert again.reason == "already_paid"
        assert len(fake_gateway.verified) == 1
        assert (await seed.payment(response.payment_id)).status is PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_failure_is_absorbing(self, seed, online_checkout, fake_gateway, reconciliation_engine):
        response, _ = online_checkout
        fake_gateway.verify_results = [EXPIRED]
        await reconciliation_engine.reconcile("khalti", REFERENCE)
        fake_gateway.verify_results = [PAID]

        again = await reconciliation_engine.reconcile("khalti", REFERENCE)

        assert again.status == "failed"
        assert again.idempotent is True
        assert again.reason == "gateway_terminal"
        assert len(fake_gateway.verified) == 1
        assert (await seed.payment(response.payment_id)).status is PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_settled_between_verify_and_settle(
        self, seed, session_factory, online_checkout, settings
    ):
        # Arrange: the gateway call races with another request that settles first
        response, _ = online_checkout

        class RacingGateway(FakeGateway):
            async def verify(self, request):
                async with session_factory() as session, session.begin():
                    await PaymentRepository(session).transition_status(
                        response.payment_id, PaymentStatus.PAID
                    )
                return await super().verify(request)

        engine = ReconciliationEngine(
            session_factory, GatewayRegistry([RacingGateway("khalti", [PAID])])
        )

        # Act
        result = await engine.reconcile("khalti", REFERENCE)

        # Assert
        assert result.status == "success"
        assert result.idempotent is True
        assert result.reason == "already_paid"
        order = await seed.order(response.order_id)
        assert order.payment_status is OrderPaymentStatus.PENDING


# ============================================================================
# Gateway Outages
# ============================================================================


class TestGatewayOutage:
    """Test that an unreachable gateway never settles an attempt."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            GatewayTransportError("lookup failed", provider="khalti"),
            asyncio.TimeoutError(),
        ],
    )
    async def test_failed_status_check_reports_pending(
        self, seed, online_checkout, fake_gateway, reconciliation_engine, error
    ):
        response, cart = online_checkout
        fake_gateway.verify_error = error

        result = await reconciliation_engine.reconcile("khalti", REFERENCE)

        assert result.status == "pending"
        assert result.reason == "status_check_failed"
        assert (await seed.payment(response.payment_id)).status is PaymentStatus.PENDING
        assert (await seed.cart_of(cart.id)).status is CartStatus.CHECKOUT_PENDING

        logs = await seed.logs(response.payment_id)
        assert log_types(logs)[-1] is PaymentLogType.ERROR
        assert logs[-1].payload["stage"] == "verify"

    @pytest.mark.asyncio
    async def test_slow_gateway_is_bounded(self, session_factory, online_checkout):
        class SlowGateway(FakeGateway):
            async def verify(self, request):
                await asyncio.sleep(5)
                return await super().verify(request)

        engine = ReconciliationEngine(
            session_factory,
            GatewayRegistry([SlowGateway("khalti", [PAID])]),
            verify_timeout=0.05,
        )

        result = await engine.reconcile("khalti", REFERENCE)

        assert result.status == "pending"
        assert result.reason == "status_check_failed"


# ============================================================================
# Lookup
# ============================================================================


class TestLookup:
    """Test attempt resolution from untrusted references."""

    @pytest.mark.asyncio
    async def test_unknown_reference(self, online_checkout, fake_gateway, reconciliation_engine):
        result = await reconciliation_engine.reconcile("khalti", "forged-ref")

        assert isinstance(result, AttemptNotFound)
        assert result.reason == "payment_not_found"
        assert result.reference == "forged-ref"
        assert fake_gateway.verified == []

    @pytest.mark.asyncio
    async def test_blank_reference(self, reconciliation_engine):
        result = await reconciliation_engine.reconcile("khalti", "   ")

        assert isinstance(result, AttemptNotFound)
        assert result.reason == "missing_reference"

    @pytest.mark.asyncio
    async def test_reference_of_other_provider_is_not_found(
        self, online_checkout, session_factory, settings
    ):
        engine = ReconciliationEngine(
            session_factory,
            GatewayRegistry([FakeGateway("khalti"), FakeGateway("esewa", [PAID])]),
        )

        result = await engine.reconcile("esewa", REFERENCE)

        assert isinstance(result, AttemptNotFound)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, reconciliation_engine):
        with pytest.raises(UnknownProviderError):
            await reconciliation_engine.reconcile("paypal", "abc")

    @pytest.mark.asyncio
    async def test_get_attempt(self, online_checkout, reconciliation_engine, user_id):
        response, _ = online_checkout

        attempt = await reconciliation_engine.get_attempt(response.payment_id)

        assert attempt.user_id == user_id
        assert attempt.order_id == response.order_id
        assert attempt.provider_ref == REFERENCE
        assert attempt.status is PaymentStatus.PENDING
        assert await reconciliation_engine.get_attempt(uuid4()) is None


# ============================================================================
# Cart Guard
# ============================================================================


class TestCartGuard:
    """Test that settlement only moves the cart still locked to its order."""

    @pytest.mark.asyncio
    async def test_success_leaves_relinked_cart_alone(
        self, seed, session_factory, online_checkout, fake_gateway, reconciliation_engine
    ):
        # Arrange: the cart is now held by a different order
        response, cart = online_checkout
        other_order = uuid4()
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Cart).where(Cart.id == cart.id).values(checkout_order_id=other_order)
            )
        fake_gateway.verify_results = [PAID]

        # Act
        result = await reconciliation_engine.reconcile("khalti", REFERENCE)

        # Assert
        assert result.status == "success"
        assert (await seed.order(response.order_id)).payment_status is OrderPaymentStatus.PAID
        stored_cart = await seed.cart_of(cart.id)
        assert stored_cart.status is CartStatus.CHECKOUT_PENDING
        assert stored_cart.checkout_order_id == other_order

    @pytest.mark.asyncio
    async def test_failure_leaves_converted_cart_alone(
        self, seed, session_factory, online_checkout, fake_gateway, reconciliation_engine
    ):
        response, cart = online_checkout
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Cart)
                .where(Cart.id == cart.id)
                .values(status=CartStatus.CONVERTED, checkout_order_id=None)
            )
        fake_gateway.verify_results = [EXPIRED]

        result = await reconciliation_engine.reconcile("khalti", REFERENCE)

        assert result.status == "failed"
        assert (await seed.cart_of(cart.id)).status is CartStatus.CONVERTED


# ============================================================================
# Audit Trail
# ============================================================================


class TestAuditTrail:
    """Test the payment log written around each gateway call."""

    @pytest.mark.asyncio
    async def test_client_verify_is_logged_with_its_payload(
        self, session_factory, online_checkout, fake_gateway, reconciliation_engine
    ):
        response, _ = online_checkout
        fake_gateway.verify_results = [PAID]

        await reconciliation_engine.reconcile(
            "khalti",
            REFERENCE,
            trigger=PaymentLogType.VERIFY_REQUEST,
            payload={"pidx": REFERENCE},
        )

        async with session_factory() as session:
            logs = await PaymentLogRepository(session).list_for_payment(response.payment_id)

        assert log_types(logs) == [
            PaymentLogType.INITIATE,
            PaymentLogType.VERIFY_REQUEST,
            PaymentLogType.VERIFY_RESPONSE,
        ]
        assert logs[0].payload["reference"] == REFERENCE
        assert logs[1].payload == {"reference": REFERENCE, "payload": {"pidx": REFERENCE}}
        assert logs[2].payload["state"] == "Completed"
        assert logs[2].payload["success"] is True

    @pytest.mark.asyncio
    async def test_settled_attempt_logs_trigger_only(
        self, seed, online_checkout, fake_gateway, reconciliation_engine
    ):
        response, _ = online_checkout
        fake_gateway.verify_results = [PAID]
        await reconciliation_engine.reconcile("khalti", REFERENCE)

        await reconciliation_engine.reconcile("khalti", REFERENCE)

        assert log_types(await seed.logs(response.payment_id)) == [
            PaymentLogType.INITIATE,
            PaymentLogType.REDIRECT,
            PaymentLogType.VERIFY_RESPONSE,
            PaymentLogType.REDIRECT,
        ]


# ============================================================================
# Concurrent Reconciliation
# ============================================================================


class GatedGateway(FakeGateway):
    """Holds every status check until ``parties`` callers are waiting."""

    def __init__(self, parties: int, verify_results):
        super().__init__("khalti", verify_results)
        self.parties = parties
        self.released = asyncio.Event()

    async def verify(self, request):
        self.verified.append(request)
        if len(self.verified) >= self.parties:
            self.released.set()
        await self.released.wait()
        return self.verify_results[0].model_copy(update={"reference": request.reference})


class TestConcurrentReconcile:
    """Test a duplicate redirect racing a client poll for the same attempt."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "verdict,payment_status,order_status,cart_status",
        [
            (PAID, PaymentStatus.PAID, OrderStatus.PROCESSING, CartStatus.CONVERTED),
            (EXPIRED, PaymentStatus.FAILED, OrderStatus.PAYMENT_FAILED, CartStatus.ACTIVE),
        ],
    )
    async def test_settles_exactly_once(
        self,
        concurrent_seed,
        concurrent_session_factory,
        settings,
        shipping,
        user_id,
        verdict,
        payment_status,
        order_status,
        cart_status,
    ):
        # Arrange
        gateway = GatedGateway(parties=2, verify_results=[verdict])
        registry = GatewayRegistry([gateway])
        checkout = CheckoutService(concurrent_session_factory, registry, settings)
        variant = await concurrent_seed.variant(price_cents=25000)
        cart = await concurrent_seed.cart(user_id, [(variant, 1)])
        response = await checkout.checkout(user_id, shipping, PaymentMethod.KHALTI)
        engine = ReconciliationEngine(concurrent_session_factory, registry, verify_timeout=10)

        # Act
        results = await asyncio.gather(
            engine.reconcile("khalti", REFERENCE, trigger=PaymentLogType.REDIRECT),
            engine.reconcile("khalti", REFERENCE, trigger=PaymentLogType.VERIFY_REQUEST),
        )

        # Assert: both callers saw the verdict, one of them applied it
        assert len(gateway.verified) == 2
        assert {result.status for result in results} == {"success" if verdict.success else "failed"}
        assert sorted(result.idempotent for result in results) == [False, True]

        assert (await concurrent_seed.payment(response.payment_id)).status is payment_status
        assert (await concurrent_seed.order(response.order_id)).status is order_status
        assert (await concurrent_seed.cart_of(cart.id)).status is cart_status

        async with concurrent_session_factory() as session:
            history = await session.execute(
                select(OrderStatusHistory).where(
                    OrderStatusHistory.order_id == response.order_id,
                    OrderStatusHistory.new_status == order_status,
                )
            )
            assert len(history.scalars().all()) == 1
