"""
Cart repository for data access operations.

This module implements the CartRepository class. Besides plain reads it owns
every write to a cart's ``(status, checkout_order_id)`` pair. Each write is a
conditional UPDATE whose ``WHERE`` clause restates the expected current
state, so a write that lost a race matches zero rows instead of clobbering
the winner.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.models.cart import Cart, CartStatus
from storefront.services.cart.state_machine import (
    CartNotActiveError,
    CartStateMachine,
)
from storefront.services.pricing.engine import CartLine

logger = get_logger(__name__)


class CartRepositoryError(Exception):
    """Raised when a cart database operation fails."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class CartRepository:
    """
    Repository for cart lifecycle data access.

    Guarded transitions return the number of affected rows; callers inspect
    the count rather than catching an exception for the "nothing matched"
    case.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize cart repository.

        Args:
            session: Async database session for operations
        """
        self.session = session
        self.state_machine = CartStateMachine()
        logger.debug("CartRepository initialized")

    async def get_cart_by_order(self, order_id: uuid.UUID) -> Optional[Cart]:
        """Retrieve the cart currently locked to ``order_id``, if any."""
        try:
            result = await self.session.execute(
                select(Cart).where(Cart.checkout_order_id == order_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to retrieve cart by order",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CartRepositoryError("Failed to retrieve cart", order_id=str(order_id)) from e

    async def lock_active_cart(self, user_id: uuid.UUID) -> Optional[Cart]:
        """
        Select the owner's active cart with a row-level exclusive lock.

        The lock is held until the surrounding transaction ends and
        serializes concurrent checkouts of the same owner.

        Args:
            user_id: Cart owner

        Returns:
            Locked active cart, or None if the owner has none
        """
        try:
            stmt = (
                select(Cart)
                .where(and_(Cart.user_id == user_id, Cart.status == CartStatus.ACTIVE))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(stmt)
            cart = result.scalar_one_or_none()

            logger.debug(
                "Active cart lock acquired" if cart else "No active cart to lock",
                user_id=str(user_id),
                cart_id=str(cart.id) if cart else None,
            )
            return cart
        except SQLAlchemyError as e:
            logger.error(
                "Failed to lock active cart",
                user_id=str(user_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CartRepositoryError("Failed to lock active cart", user_id=str(user_id)) from e

    @staticmethod
    def to_cart_lines(cart: Cart) -> list[CartLine]:
        """
        Read a cart's items as pricing input at current catalog prices.

        Args:
            cart: Cart with items, variants and products loaded

        Returns:
            Cart lines with list prices taken from the variants
        """
        lines = []
        for item in cart.items:
            variant = item.variant
            lines.append(
                CartLine(
                    product_id=variant.product_id,
                    product_variant_id=variant.id,
                    product_name=variant.product.name,
                    variant_attributes=dict(variant.attributes or {}),
                    quantity=item.quantity,
                    list_unit_price_cents=variant.price_cents,
                )
            )
        return lines

    async def _execute_guarded(self, stmt, operation: str, **context) -> int:
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Guarded cart update failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise CartRepositoryError(f"Cart {operation} failed", **context) from e

        rowcount = result.rowcount
        logger.info("Guarded cart update", operation=operation, rows=rowcount, **context)
        return rowcount

    async def begin_checkout(self, cart_id: uuid.UUID, order_id: uuid.UUID) -> None:
        """
        Lock an active cart to an order awaiting online payment.

        Raises:
            CartNotActiveError: If the cart is no longer active
        """
        self.state_machine.validate_transition(
            CartStatus.ACTIVE, CartStatus.CHECKOUT_PENDING, order_id
        )
        stmt = (
            update(Cart)
            .where(and_(Cart.id == cart_id, Cart.status == CartStatus.ACTIVE))
            .values(status=CartStatus.CHECKOUT_PENDING, checkout_order_id=order_id)
        )
        rows = await self._execute_guarded(
            stmt, "begin_checkout", cart_id=str(cart_id), order_id=str(order_id)
        )
        if rows != 1:
            raise CartNotActiveError(
                "Cart is no longer active", cart_id=str(cart_id), order_id=str(order_id)
            )

    async def convert_active_cart(self, cart_id: uuid.UUID) -> None:
        """
        Convert an active cart directly (cash on delivery).

        Raises:
            CartNotActiveError: If the cart is no longer active
        """
        self.state_machine.validate_transition(CartStatus.ACTIVE, CartStatus.CONVERTED)
        stmt = (
            update(Cart)
            .where(and_(Cart.id == cart_id, Cart.status == CartStatus.ACTIVE))
            .values(status=CartStatus.CONVERTED, checkout_order_id=None)
        )
        rows = await self._execute_guarded(stmt, "convert_active", cart_id=str(cart_id))
        if rows != 1:
            raise CartNotActiveError("Cart is no longer active", cart_id=str(cart_id))

    async def convert_checkout_cart(self, order_id: uuid.UUID) -> int:
        """
        Convert the cart locked to ``order_id`` after a successful payment.

        Returns:
            Number of carts converted (0 when the cart already moved on)
        """
        self.state_machine.validate_transition(CartStatus.CHECKOUT_PENDING, CartStatus.CONVERTED)
        stmt = (
            update(Cart)
            .where(
                and_(
                    Cart.checkout_order_id == order_id,
                    Cart.status == CartStatus.CHECKOUT_PENDING,
                )
            )
            .values(status=CartStatus.CONVERTED, checkout_order_id=None)
        )
        return await self._execute_guarded(stmt, "convert_checkout", order_id=str(order_id))

    async def unlock_checkout_cart(
        self,
        order_id: uuid.UUID,
        ttl_days: Optional[int] = None,
    ) -> int:
        """
        Return the cart locked to ``order_id`` to active after a terminal failure.

        Args:
            order_id: Order holding the lock
            ttl_days: When set, restart the idle expiry of the reopened cart

        Returns:
            Number of carts unlocked (0 when the cart already moved on)
        """
        self.state_machine.validate_transition(CartStatus.CHECKOUT_PENDING, CartStatus.ACTIVE)
        values: dict = {"status": CartStatus.ACTIVE, "checkout_order_id": None}
        if ttl_days is not None:
            values["expires_at"] = datetime.now(timezone.utc) + timedelta(days=ttl_days)

        stmt = (
            update(Cart)
            .where(
                and_(
                    Cart.checkout_order_id == order_id,
                    Cart.status == CartStatus.CHECKOUT_PENDING,
                )
            )
            .values(**values)
        )
        return await self._execute_guarded(stmt, "unlock_checkout", order_id=str(order_id))

    async def mark_expired_as_abandoned(self, now: Optional[datetime] = None) -> int:
        """
        Abandon active carts whose idle expiry has passed.

        Carts awaiting payment are never touched.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            Number of carts abandoned
        """
        now = now or datetime.now(timezone.utc)
        self.state_machine.validate_transition(CartStatus.ACTIVE, CartStatus.ABANDONED)
        stmt = (
            update(Cart)
            .where(
                and_(
                    Cart.status == CartStatus.ACTIVE,
                    Cart.expires_at.is_not(None),
                    Cart.expires_at <= now,
                )
            )
            .values(status=CartStatus.ABANDONED)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_guarded(stmt, "abandon_expired")
