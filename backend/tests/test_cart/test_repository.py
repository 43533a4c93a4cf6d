"""
Tests for CartRepository guarded transitions against SQLite.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from storefront.database.models.cart import CartStatus
from storefront.services.cart.repository import CartRepository
from storefront.services.cart.state_machine import CartNotActiveError


# ============================================================================
# Locking and Reading
# ============================================================================


class TestActiveCart:
    """Test active cart lookup and conversion to pricing lines."""

    @pytest.mark.asyncio
    async def test_lock_active_cart_returns_cart_with_items(self, seed, session_factory, user_id):
        # Arrange
        variant = await seed.variant(price_cents=4200, attributes={"size": "L"})
        cart = await seed.cart(user_id, [(variant, 3)])

        # Act
        async with session_factory() as session, session.begin():
            repo = CartRepository(session)
            locked = await repo.lock_active_cart(user_id)
            lines = repo.to_cart_lines(locked)

        # Assert
        assert locked.id == cart.id
        assert len(lines) == 1
        assert lines[0].product_variant_id == variant.id
        assert lines[0].product_id == variant.product_id
        assert lines[0].quantity == 3
        assert lines[0].list_unit_price_cents == 4200
        assert lines[0].variant_attributes == {"size": "L"}

    @pytest.mark.asyncio
    async def test_locked_cart_is_not_active(self, seed, session_factory, user_id):
        await seed.cart(user_id, status=CartStatus.CHECKOUT_PENDING, checkout_order_id=uuid4())

        async with session_factory() as session:
            assert await CartRepository(session).lock_active_cart(user_id) is None

    @pytest.mark.asyncio
    async def test_get_cart_by_order(self, seed, session_factory, user_id):
        order_id = uuid4()
        cart = await seed.cart(user_id, status=CartStatus.CHECKOUT_PENDING, checkout_order_id=order_id)

        async with session_factory() as session:
            found = await CartRepository(session).get_cart_by_order(order_id)

        assert found.id == cart.id


# ============================================================================
# Guarded Transitions
# ============================================================================


class TestGuardedTransitions:
    """Test that each transition only applies from its expected state."""

    @pytest.mark.asyncio
    async def test_begin_checkout_links_order(self, seed, session_factory, user_id):
        cart = await seed.cart(user_id)
        order_id = uuid4()

        async with session_factory() as session, session.begin():
            await CartRepository(session).begin_checkout(cart.id, order_id)

        stored = await seed.cart_of(cart.id)
        assert stored.status is CartStatus.CHECKOUT_PENDING
        assert stored.checkout_order_id == order_id

    @pytest.mark.asyncio
    async def test_begin_checkout_on_locked_cart_raises(self, seed, session_factory, user_id):
        cart = await seed.cart(user_id, status=CartStatus.CHECKOUT_PENDING, checkout_order_id=uuid4())

        with pytest.raises(CartNotActiveError):
            async with session_factory() as session, session.begin():
                await CartRepository(session).begin_checkout(cart.id, uuid4())

    @pytest.mark.asyncio
    async def test_convert_active_cart(self, seed, session_factory, user_id):
        cart = await seed.cart(user_id)

        async with session_factory() as session, session.begin():
            await CartRepository(session).convert_active_cart(cart.id)

        stored = await seed.cart_of(cart.id)
        assert stored.status is CartStatus.CONVERTED
        assert stored.checkout_order_id is None

    @pytest.mark.asyncio
    async def test_convert_checkout_cart_only_for_linked_order(self, seed, session_factory, user_id):
        order_id = uuid4()
        cart = await seed.cart(user_id, status=CartStatus.CHECKOUT_PENDING, checkout_order_id=order_id)

        async with session_factory() as session, session.begin():
            repo = CartRepository(session)
            assert await repo.convert_checkout_cart(uuid4()) == 0
            assert await repo.convert_checkout_cart(order_id) == 1
            assert await repo.convert_checkout_cart(order_id) == 0

        stored = await seed.cart_of(cart.id)
        assert stored.status is CartStatus.CONVERTED
        assert stored.checkout_order_id is None

    @pytest.mark.asyncio
    async def test_unlock_checkout_cart_restarts_expiry(self, seed, session_factory, user_id):
        # Arrange
        order_id = uuid4()
        stale = datetime.now(timezone.utc) - timedelta(days=30)
        cart = await seed.cart(
            user_id,
            status=CartStatus.CHECKOUT_PENDING,
            checkout_order_id=order_id,
            expires_at=stale,
        )

        # Act
        async with session_factory() as session, session.begin():
            rows = await CartRepository(session).unlock_checkout_cart(order_id, ttl_days=7)

        # Assert
        stored = await seed.cart_of(cart.id)
        assert rows == 1
        assert stored.status is CartStatus.ACTIVE
        assert stored.checkout_order_id is None
        assert not stored.is_expired()

    @pytest.mark.asyncio
    async def test_unlock_skips_converted_cart(self, seed, session_factory, user_id):
        cart = await seed.cart(user_id, status=CartStatus.CONVERTED)

        async with session_factory() as session, session.begin():
            assert await CartRepository(session).unlock_checkout_cart(uuid4()) == 0

        assert (await seed.cart_of(cart.id)).status is CartStatus.CONVERTED


# ============================================================================
# Expiry Sweep
# ============================================================================


class TestExpirySweep:
    """Test abandoning expired carts."""

    @pytest.mark.asyncio
    async def test_sweep_abandons_only_expired_active_carts(self, seed, session_factory):
        # Arrange
        past = datetime.now(timezone.utc) - timedelta(days=1)
        expired = await seed.cart(uuid4(), expires_at=past)
        fresh = await seed.cart(uuid4())
        locked = await seed.cart(
            uuid4(),
            status=CartStatus.CHECKOUT_PENDING,
            checkout_order_id=uuid4(),
            expires_at=past,
        )

        # Act
        async with session_factory() as session, session.begin():
            abandoned = await CartRepository(session).mark_expired_as_abandoned()

        # Assert
        assert abandoned == 1
        assert (await seed.cart_of(expired.id)).status is CartStatus.ABANDONED
        assert (await seed.cart_of(fresh.id)).status is CartStatus.ACTIVE
        assert (await seed.cart_of(locked.id)).status is CartStatus.CHECKOUT_PENDING
