"""
Order read endpoints.

Shoppers page through their order history, and clients poll a single order
while a payment is pending; the snapshot itself never changes, only its
status fields do.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from storefront.api.deps import CurrentUserId, DatabaseSession
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderStatus
from storefront.schemas.orders import OrderListResponse, OrderResponse, OrderSummary
from storefront.services.orders.repository import OrderRepository, OrderRepositoryError
from storefront.services.payments.repository import PaymentRepository, PaymentRepositoryError

logger = get_logger(__name__)

router = APIRouter(prefix="/store/orders", tags=["orders"])


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="Paginated order history of the caller, newest first",
)
async def list_orders(
    user_id: CurrentUserId,
    db: DatabaseSession,
    status_filter: Optional[OrderStatus] = Query(
        None, alias="status", description="Filter by order status"
    ),
    skip: int = Query(0, ge=0, description="Number of records to skip"),
    limit: int = Query(20, ge=1, le=100, description="Maximum number of records to return"),
) -> OrderListResponse:
    """
    List the caller's orders.

    Raises:
        HTTPException: 500 if retrieval fails
    """
    try:
        orders, total_count = await OrderRepository(db).get_user_orders(
            user_id, status=status_filter, skip=skip, limit=limit
        )
    except OrderRepositoryError as e:
        logger.error(
            "Failed to list orders",
            user_id=str(user_id),
            error=str(e),
            context=e.context,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Failed to retrieve orders",
                "code": "ORDER_RETRIEVAL_FAILED",
                "context": {},
            },
        ) from e

    logger.info(
        "Orders listed",
        user_id=str(user_id),
        count=len(orders),
        total_count=total_count,
    )
    return OrderListResponse(
        orders=[OrderSummary.from_order(order) for order in orders],
        total_count=total_count,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Order snapshot with items and payment attempts, owner only",
)
async def get_order(
    order_id: UUID,
    user_id: CurrentUserId,
    db: DatabaseSession,
) -> OrderResponse:
    """
    Retrieve one of the caller's orders.

    Raises:
        HTTPException: 404 if the order does not exist or belongs to someone else
    """
    try:
        order = await OrderRepository(db).get_order_for_user(order_id, user_id)
        if order is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "message": "Order not found",
                    "code": "ORDER_NOT_FOUND",
                    "context": {"order_id": str(order_id)},
                },
            )
        payments = await PaymentRepository(db).get_payments_by_order_id(order.id)

    except (OrderRepositoryError, PaymentRepositoryError) as e:
        logger.error(
            "Failed to load order",
            order_id=str(order_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Failed to retrieve order",
                "code": "ORDER_RETRIEVAL_FAILED",
                "context": {},
            },
        )

    return OrderResponse.from_order(order, payments)
