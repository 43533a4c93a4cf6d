"""
Checkout API endpoint.

Turns the caller's active cart into an order snapshot and, for online
methods, returns the handle (redirect URL or signed form) the client uses to
reach the gateway.
"""

from fastapi import APIRouter, HTTPException, Request, status

from storefront.api.deps import Checkout, CurrentUserId
from storefront.core.logging import get_logger
from storefront.core.rate_limit import CHECKOUT_RATE_LIMIT, limiter
from storefront.schemas.checkout import CheckoutRequest, CheckoutResponse
from storefront.services.cart.repository import CartRepositoryError
from storefront.services.cart.state_machine import CartNotActiveError, NoActiveCartError
from storefront.services.checkout.service import (
    PaymentInitiationError,
    UnsupportedPaymentMethodError,
)
from storefront.services.orders.repository import OrderRepositoryError
from storefront.services.payments.repository import PaymentRepositoryError
from storefront.services.pricing.engine import EmptyCartError, InvalidPricingError, PricingError

logger = get_logger(__name__)

router = APIRouter(prefix="/store", tags=["checkout"])


def _error(status_code: int, code: str, e: Exception) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={
            "message": str(e),
            "code": code,
            "context": {k: str(v) for k, v in getattr(e, "context", {}).items()},
        },
    )


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check out the active cart",
    description="Create an order from the caller's active cart and start payment",
)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def checkout(
    request: Request,
    body: CheckoutRequest,
    user_id: CurrentUserId,
    service: Checkout,
) -> CheckoutResponse:
    """
    Create an order snapshot from the active cart.

    Raises:
        HTTPException: 400 unsupported method, 404 no active cart, 409 cart
            changed concurrently, 422 empty cart or invalid pricing, 502
            gateway could not start the payment, 500 storage failure
    """
    logger.info(
        "Checkout requested",
        user_id=str(user_id),
        payment_method=body.payment_method.value,
    )

    try:
        return await service.checkout(
            user_id=user_id,
            shipping=body.shipping,
            payment_method=body.payment_method,
        )

    except UnsupportedPaymentMethodError as e:
        logger.warning("Unsupported payment method", user_id=str(user_id), context=e.context)
        raise _error(status.HTTP_400_BAD_REQUEST, "UNSUPPORTED_PAYMENT_METHOD", e)

    except NoActiveCartError as e:
        logger.info("Checkout without active cart", user_id=str(user_id))
        raise _error(status.HTTP_404_NOT_FOUND, "NO_ACTIVE_CART", e)

    except CartNotActiveError as e:
        logger.warning("Cart changed during checkout", user_id=str(user_id), context=e.context)
        raise _error(status.HTTP_409_CONFLICT, "CART_NOT_ACTIVE", e)

    except EmptyCartError as e:
        raise _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "EMPTY_CART", e)

    except InvalidPricingError as e:
        logger.error("Checkout rejected by pricing invariants", user_id=str(user_id), context=e.context)
        raise _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_PRICING", e)

    except PaymentInitiationError as e:
        raise _error(status.HTTP_502_BAD_GATEWAY, "PAYMENT_INITIATION_FAILED", e)

    except (
        PricingError,
        CartRepositoryError,
        OrderRepositoryError,
        PaymentRepositoryError,
    ) as e:
        logger.error(
            "Checkout failed",
            user_id=str(user_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Checkout failed",
                "code": "CHECKOUT_FAILED",
                "context": {},
            },
        )
