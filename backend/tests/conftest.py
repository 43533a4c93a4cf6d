"""
Pytest configuration and shared test fixtures.

Tests run against an in-memory SQLite database through aiosqlite. The engine
uses a single static connection and the SAVEPOINT recipe so that nested
transactions behave as they do on PostgreSQL. Payment providers are replaced
by ``FakeGateway`` unless a test exercises a real adapter over
``httpx.MockTransport``.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite://")

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront.core.config import Settings
from storefront.database.base import Base
from storefront.database.connection import build_session_factory
from storefront.database.models import (
    Cart,
    CartItem,
    CartStatus,
    FeaturedCollection,
    FeaturedItem,
    Order,
    Payment,
    PaymentLog,
    PaymentMethod,
    Product,
    ProductVariant,
)
from storefront.schemas.checkout import ShippingInfo
from storefront.services.checkout.service import CheckoutService
from storefront.services.payments.gateways.registry import GatewayRegistry
from storefront.services.payments.reconciliation import ReconciliationEngine
from storefront.services.payments.repository import PaymentLogRepository

from fakes import FakeGateway

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def concurrent_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine with one connection per session.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers
    queue on the database lock instead of failing, which stands in for the
    row locks PostgreSQL takes.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def concurrent_session_factory(concurrent_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(concurrent_engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite://",
        secret_key=TEST_SECRET_KEY,
        cart_ttl_days=7,
        gateway_verify_timeout_seconds=2.0,
        frontend_url="https://shop.example.com/",
        app_deep_link_scheme="storefront",
    )


@pytest.fixture
def shipping() -> ShippingInfo:
    return ShippingInfo(
        name="Sita Sharma",
        phone="+977 9800000000",
        address="Lazimpat 2",
        city="Kathmandu",
        email="sita@example.com",
    )


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


# ============================================================================
# Seed Helpers
# ============================================================================


class Seeder:
    """Writes catalog, cart and promotion rows in their own transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def variant(
        self,
        price_cents: int = 10000,
        name: str = "Pashmina Shawl",
        attributes: Optional[dict] = None,
    ) -> ProductVariant:
        async with self.session_factory() as session, session.begin():
            product = Product(id=uuid.uuid4(), name=name)
            variant = ProductVariant(
                id=uuid.uuid4(),
                product_id=product.id,
                price_cents=price_cents,
                attributes=attributes or {"color": "red"},
            )
            session.add_all([product, variant])
        return variant

    async def cart(
        self,
        user_id: uuid.UUID,
        lines: list[tuple[ProductVariant, int]] = (),
        status: CartStatus = CartStatus.ACTIVE,
        checkout_order_id: Optional[uuid.UUID] = None,
        expires_at: Optional[datetime] = None,
    ) -> Cart:
        async with self.session_factory() as session, session.begin():
            cart = Cart(
                id=uuid.uuid4(),
                user_id=user_id,
                status=status,
                checkout_order_id=checkout_order_id,
                expires_at=expires_at or datetime.now(timezone.utc) + timedelta(days=7),
            )
            session.add(cart)
            for variant, quantity in lines:
                session.add(
                    CartItem(
                        cart_id=cart.id,
                        product_variant_id=variant.id,
                        quantity=quantity,
                        price_cents=variant.price_cents,
                    )
                )
        return cart

    async def promotion(
        self,
        product_id: Optional[uuid.UUID] = None,
        product_variant_id: Optional[uuid.UUID] = None,
        deal_price_cents: Optional[int] = None,
        deal_percent: Optional[int] = None,
        is_active: bool = True,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        collection_active: bool = True,
    ) -> FeaturedItem:
        async with self.session_factory() as session, session.begin():
            collection = FeaturedCollection(
                id=uuid.uuid4(),
                title="Festival deals",
                is_active=collection_active,
            )
            item = FeaturedItem(
                id=uuid.uuid4(),
                collection_id=collection.id,
                product_id=product_id,
                product_variant_id=product_variant_id,
                deal_price_cents=deal_price_cents,
                deal_percent=deal_percent,
                is_active=is_active,
                starts_at=starts_at,
                ends_at=ends_at,
            )
            session.add_all([collection, item])
        return item

    async def get(self, model, ident: uuid.UUID):
        async with self.session_factory() as session:
            return await session.get(model, ident)

    async def cart_of(self, cart_id: uuid.UUID) -> Cart:
        return await self.get(Cart, cart_id)

    async def order(self, order_id: uuid.UUID) -> Order:
        return await self.get(Order, order_id)

    async def payment(self, payment_id: uuid.UUID) -> Payment:
        return await self.get(Payment, payment_id)

    async def logs(self, payment_id: uuid.UUID) -> list[PaymentLog]:
        async with self.session_factory() as session:
            return await PaymentLogRepository(session).list_for_payment(payment_id)


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def concurrent_seed(concurrent_session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(concurrent_session_factory)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway("khalti")


@pytest.fixture
def registry(fake_gateway: FakeGateway) -> GatewayRegistry:
    return GatewayRegistry([fake_gateway])


@pytest.fixture
def checkout_service(session_factory, registry, settings) -> CheckoutService:
    return CheckoutService(session_factory, registry, settings)


@pytest.fixture
def reconciliation_engine(session_factory, registry, settings) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory,
        registry,
        verify_timeout=settings.gateway_verify_timeout_seconds,
        cart_ttl_days=settings.cart_ttl_days,
    )


@pytest.fixture
async def online_checkout(seed, checkout_service, shipping, user_id):
    """A completed Khalti checkout awaiting payment: ``(response, cart)``."""
    variant = await seed.variant(price_cents=25000)
    cart = await seed.cart(user_id, [(variant, 2)])
    response = await checkout_service.checkout(user_id, shipping, PaymentMethod.KHALTI)
    return response, cart


# ============================================================================
# HTTP Fixtures
# ============================================================================


@pytest.fixture
async def api_client(session_factory, registry) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    ASGI client bound to the test database and gateway registry.

    The lifespan does not run; the state it would set up is assigned here.
    """
    from storefront.core.rate_limit import limiter
    from storefront.database.connection import get_db
    from storefront.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.state.session_factory = session_factory
    app.state.gateway_registry = registry
    app.state.outcome_responder = None
    app.dependency_overrides[get_db] = override_get_db
    limiter.enabled = False

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.session_factory = None
    app.state.gateway_registry = None
    app.state.outcome_responder = None
    limiter.enabled = True


@pytest.fixture
def auth_headers(user_id: uuid.UUID) -> dict[str, str]:
    from storefront.core.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user_id)}"}
