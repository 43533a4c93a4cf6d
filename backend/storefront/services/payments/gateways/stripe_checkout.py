"""
Stripe Checkout adapter.

Initiation creates a Checkout Session in payment mode and hands the user the
hosted session URL; the session id is the provider reference. Verification
retrieves the session: ``payment_status == "paid"`` settles the attempt and
an expired session is a terminal failure. The Stripe SDK is synchronous, so
calls run in a worker thread bounded by the configured timeouts.
"""

import asyncio
from typing import Any, Callable, Mapping, Optional

import stripe

from storefront.core.logging import get_logger
from storefront.services.payments.gateways.base import (
    GatewayConfigurationError,
    GatewayResponseError,
    GatewayResult,
    GatewayTransportError,
    InitiateRequest,
    InitiateResult,
    PaymentGateway,
    VerifyRequest,
)

logger = get_logger(__name__)

RETRYABLE_ERRORS = (stripe.APIConnectionError,)
TRANSPORT_ERRORS = (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)


def map_session(payment_status: Optional[str], status: Optional[str]) -> tuple[bool, bool, str]:
    """Map a Checkout Session to ``(success, terminal, state)``."""
    if payment_status == "paid":
        return True, True, "paid"
    if status == "expired":
        return False, True, "expired"
    return False, False, payment_status or status or "unknown"


def _session_summary(session: Any) -> dict[str, Any]:
    return {
        "id": getattr(session, "id", None),
        "status": getattr(session, "status", None),
        "payment_status": getattr(session, "payment_status", None),
        "amount_total": getattr(session, "amount_total", None),
        "currency": getattr(session, "currency", None),
        "payment_intent": getattr(session, "payment_intent", None),
    }


class StripeGateway(PaymentGateway):
    """Stripe Checkout Session adapter with retry on connection failures."""

    name = "stripe"

    def __init__(
        self,
        api_key: str,
        success_url: str,
        cancel_url: str,
        initiate_timeout: float = 15.0,
        verify_timeout: float = 10.0,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
        session_api: Optional[Any] = None,
    ):
        if not api_key:
            raise GatewayConfigurationError("Stripe requires a secret key", provider=self.name)
        self.api_key = api_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.initiate_timeout = initiate_timeout
        self.verify_timeout = verify_timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.session_api = session_api or stripe.checkout.Session

        logger.info("Stripe gateway initialized", max_retries=max_retries)

    def _calculate_backoff(self, attempt: int) -> float:
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    async def _call(self, operation: str, timeout: float, func: Callable, *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Stripe call timed out", operation=operation, timeout_seconds=timeout)
            raise GatewayTransportError(
                f"Stripe {operation} timed out", provider=self.name, operation=operation
            ) from e

    def _translate(self, operation: str, error: "stripe.StripeError") -> Exception:
        if isinstance(error, TRANSPORT_ERRORS):
            logger.warning(
                "Stripe transport error",
                operation=operation,
                error=str(error),
                error_type=type(error).__name__,
            )
            return GatewayTransportError(
                f"Stripe {operation} failed: {error}",
                provider=self.name,
                operation=operation,
                code=getattr(error, "code", None),
            )
        logger.error(
            "Stripe rejected request",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
        )
        return GatewayResponseError(
            f"Stripe {operation} rejected: {error}",
            provider=self.name,
            operation=operation,
            code=getattr(error, "code", None),
        )

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        success_url = self.success_url
        separator = "&" if "?" in success_url else "?"
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": request.currency.lower(),
                        "unit_amount": request.amount_cents,
                        "product_data": {"name": f"Order {request.order_number}"},
                    },
                }
            ],
            "success_url": f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.cancel_url}{separator}session_id={{CHECKOUT_SESSION_ID}}",
            "client_reference_id": str(request.payment_id),
            "metadata": {
                "payment_id": str(request.payment_id),
                "order_id": str(request.order_id),
                "order_number": request.order_number,
            },
            "api_key": self.api_key,
            "idempotency_key": f"checkout-{request.payment_id}",
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email

        for attempt in range(self.max_retries + 1):
            try:
                session = await self._call(
                    "create_session", self.initiate_timeout, self.session_api.create, **params
                )
                break
            except RETRYABLE_ERRORS as e:
                if attempt >= self.max_retries:
                    raise self._translate("create_session", e) from e
                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Stripe connection error, retrying",
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
            except stripe.StripeError as e:
                raise self._translate("create_session", e) from e

        logger.info(
            "Stripe checkout session created",
            payment_id=str(request.payment_id),
            reference=session.id,
        )
        return InitiateResult(
            provider=self.name,
            reference=session.id,
            payment_url=session.url,
            raw=_session_summary(session),
        )

    async def verify(self, request: VerifyRequest) -> GatewayResult:
        try:
            session = await self._call(
                "retrieve_session",
                self.verify_timeout,
                self.session_api.retrieve,
                request.reference,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise self._translate("retrieve_session", e) from e

        summary = _session_summary(session)
        success, terminal, state = map_session(summary["payment_status"], summary["status"])

        logger.info(
            "Stripe session checked",
            reference=request.reference,
            state=state,
            success=success,
            terminal=terminal,
        )
        return GatewayResult(
            success=success,
            terminal=terminal,
            state=state,
            reference=request.reference,
            raw=summary,
        )

    def extract_reference(self, params: Mapping[str, Any]) -> Optional[str]:
        value = params.get("session_id")
        if value is None:
            return None
        value = str(value).strip()
        if not value or value == "{CHECKOUT_SESSION_ID}":
            return None
        return value
