"""
Order data access repository.

This module implements the OrderRepository class: creating an order snapshot
together with its items and first status history row, reading one order or a
page of orders for their owner, and the two settlement writes (paid, payment
failed) that the reconciliation engine applies. Every status change appends a history row.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
)
from storefront.services.pricing.engine import PricedCart

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderNotFoundError(OrderRepositoryError):
    """Raised when order is not found."""

    pass


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""

    pass


class OrderNumberConflictError(OrderCreationError):
    """Raised when a generated order number is already taken."""

    pass


class OrderUpdateError(OrderRepositoryError):
    """Raised when order update fails."""

    pass


class OrderRepository:
    """
    Repository for order data access operations.

    Monetary columns are written once at creation and never updated.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def create_order_with_items(
        self,
        user_id: uuid.UUID,
        cart_id: uuid.UUID,
        order_number: str,
        priced: PricedCart,
        shipping: dict[str, Any],
        payment_method: PaymentMethod,
        status: OrderStatus,
        currency: str,
    ) -> Order:
        """
        Create order with items and initial history atomically.

        The inserts run inside a savepoint so that an order number collision
        can be retried without abandoning the caller's transaction (and the
        cart lock it holds).

        Args:
            user_id: Order owner
            cart_id: Cart the snapshot is taken from
            order_number: Human-readable order number
            priced: Priced cart snapshot
            shipping: Shipping fields (name, phone, address, city, postal_code, country)
            payment_method: Method chosen at checkout
            status: Initial order status
            currency: Order currency

        Returns:
            Created order with items

        Raises:
            OrderNumberConflictError: If the order number is already taken
            OrderCreationError: If order creation fails
        """
        logger.info(
            "Creating order with items",
            user_id=str(user_id),
            cart_id=str(cart_id),
            order_number=order_number,
            item_count=len(priced.lines),
        )

        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            cart_id=cart_id,
            order_number=order_number,
            status=status,
            payment_status=OrderPaymentStatus.PENDING,
            payment_method=payment_method,
            shipping_name=shipping["name"],
            shipping_phone=shipping["phone"],
            shipping_address=shipping["address"],
            shipping_city=shipping["city"],
            shipping_postal_code=shipping.get("postal_code"),
            shipping_country=shipping.get("country") or "Nepal",
            subtotal_cents=priced.subtotal_cents,
            discount_cents=priced.discount_cents,
            tax_cents=priced.tax_cents,
            shipping_cents=priced.shipping_cents,
            total_cents=priced.total_cents,
            currency=currency,
        )
        order.items = [
            OrderItem(
                product_id=line.product_id,
                product_variant_id=line.product_variant_id,
                product_name=line.product_name,
                variant_attributes=line.variant_attributes,
                quantity=line.quantity,
                unit_price_cents=line.final_unit_price_cents,
                total_price_cents=line.line_total_cents,
            )
            for line in priced.lines
        ]

        try:
            async with self.session.begin_nested():
                self.session.add(order)
                await self.session.flush()
                self.session.add(
                    OrderStatusHistory(
                        order_id=order.id,
                        old_status=None,
                        new_status=status,
                        note="Order created",
                    )
                )
                await self.session.flush()
        except IntegrityError as e:
            if "order_number" in str(e.orig):
                logger.warning("Order number collision", order_number=order_number)
                raise OrderNumberConflictError(
                    "Order number already exists",
                    order_number=order_number,
                ) from e
            logger.error(
                "Order creation failed - integrity error",
                order_number=order_number,
                error=str(e),
            )
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Order creation failed - database error",
                order_number=order_number,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise OrderCreationError(
                "Order creation failed due to database error",
                order_number=order_number,
                error=str(e),
            ) from e

        logger.info(
            "Order created successfully",
            order_id=str(order.id),
            order_number=order_number,
            total_cents=order.total_cents,
        )
        return order

    async def get_order_by_id(
        self,
        order_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Get order by ID with items.

        Args:
            order_id: Order identifier
            for_update: Lock the row for the rest of the transaction

        Returns:
            Order if found, None otherwise

        Raises:
            OrderRepositoryError: If query fails
        """
        try:
            stmt = select(Order).where(Order.id == order_id)
            if for_update:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            ) from e

    async def get_order_for_user(
        self,
        order_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Optional[Order]:
        """Get an order only if it belongs to ``user_id``."""
        order = await self.get_order_by_id(order_id)
        if order is None or order.user_id != user_id:
            logger.debug("Order not visible to user", order_id=str(order_id), user_id=str(user_id))
            return None
        return order

    async def get_user_orders(
        self,
        user_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[Sequence[Order], int]:
        """
        Get a page of the owner's orders, newest first.

        Args:
            user_id: Order owner
            status: Optional status filter
            skip: Number of records to skip
            limit: Maximum number of records to return

        Returns:
            Tuple of (orders, total_count)

        Raises:
            OrderRepositoryError: If query fails
        """
        conditions = [Order.user_id == user_id]
        if status is not None:
            conditions.append(Order.status == status)

        stmt = (
            select(Order)
            .where(and_(*conditions))
            .order_by(Order.created_at.desc(), Order.order_number.desc())
            .offset(skip)
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(Order).where(and_(*conditions))

        try:
            orders = (await self.session.execute(stmt)).scalars().all()
            total_count = (await self.session.execute(count_stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch user orders", user_id=str(user_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch user orders",
                user_id=str(user_id),
                error=str(e),
            ) from e

        logger.debug(
            "User orders fetched",
            user_id=str(user_id),
            count=len(orders),
            total=total_count,
        )
        return orders, total_count

    async def set_primary_payment(self, order: Order, payment_id: uuid.UUID) -> None:
        """Record the payment attempt created at checkout."""
        order.primary_payment_id = payment_id
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            raise OrderUpdateError(
                "Failed to link payment to order",
                order_id=str(order.id),
                payment_id=str(payment_id),
            ) from e

    async def _set_status(
        self,
        order: Order,
        new_status: OrderStatus,
        payment_status: OrderPaymentStatus,
        note: str,
        paid_at: Optional[datetime] = None,
    ) -> None:
        old_status = order.status
        order.status = new_status
        order.payment_status = payment_status
        if paid_at is not None:
            order.paid_at = paid_at

        self.session.add(
            OrderStatusHistory(
                order_id=order.id,
                old_status=old_status,
                new_status=new_status,
                note=note,
            )
        )

        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            )
            raise OrderUpdateError(
                "Failed to update order status",
                order_id=str(order.id),
                error=str(e),
            ) from e

        logger.info(
            "Order status updated",
            order_id=str(order.id),
            old_status=old_status.value,
            new_status=new_status.value,
            payment_status=payment_status.value,
        )

    async def mark_paid(
        self,
        order_id: uuid.UUID,
        paid_at: datetime,
        note: str = "Payment captured",
    ) -> bool:
        """
        Mark an order paid and move it to processing.

        Args:
            order_id: Order identifier
            paid_at: Settlement timestamp
            note: History note

        Returns:
            False if the order was already paid, True otherwise

        Raises:
            OrderNotFoundError: If order not found
            OrderUpdateError: If update fails
        """
        order = await self.get_order_by_id(order_id, for_update=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        if order.payment_status is OrderPaymentStatus.PAID:
            return False

        await self._set_status(
            order,
            OrderStatus.PROCESSING,
            OrderPaymentStatus.PAID,
            note,
            paid_at=paid_at,
        )
        return True

    async def mark_payment_failed(
        self,
        order_id: uuid.UUID,
        note: str = "Payment failed",
    ) -> bool:
        """
        Mark an order's payment as terminally failed.

        A paid order is never downgraded.

        Returns:
            False if nothing changed, True otherwise

        Raises:
            OrderNotFoundError: If order not found
            OrderUpdateError: If update fails
        """
        order = await self.get_order_by_id(order_id, for_update=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        if order.payment_status is not OrderPaymentStatus.PENDING:
            return False

        await self._set_status(
            order,
            OrderStatus.PAYMENT_FAILED,
            OrderPaymentStatus.FAILED,
            note,
        )
        return True
