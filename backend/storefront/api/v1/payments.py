"""
Payment verification and gateway return endpoints.

Two kinds of callers reach this router:

- API clients (mobile app, web frontend) poll ``POST /store/payments/verify``
  and get JSON with regular error statuses.
- Browsers come back from a gateway to the ``*/return`` endpoints. Those
  never answer with an error status: every outcome, including storage
  failures and unexpected exceptions, becomes an outcome page that hands the
  result to the app or the web frontend.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import HTMLResponse

from storefront.api.deps import Checkout, CurrentUserId, Reconciler, Registry, Responder
from storefront.core.logging import get_logger
from storefront.core.rate_limit import VERIFY_RATE_LIMIT, limiter
from storefront.database.models.payment import PaymentLogType, PaymentStatus
from storefront.schemas.payments import VerifyPaymentRequest, VerifyPaymentResponse
from storefront.services.checkout.service import PaymentInitiationError
from storefront.services.payments.gateways.base import UnknownProviderError
from storefront.services.payments.gateways.esewa import EsewaGateway, InvalidReturnPayloadError
from storefront.services.payments.reconciliation import (
    AttemptNotFound,
    ReconciliationEngine,
    ReconciliationError,
)
from storefront.services.payments.repository import PaymentNotFoundError, PaymentRepositoryError
from storefront.services.payments.responder import OutcomeResponder

logger = get_logger(__name__)

router = APIRouter(prefix="/store/payments", tags=["payments"])


def _not_found(payment_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "message": "Payment not found",
            "code": "PAYMENT_NOT_FOUND",
            "context": {"payment_id": str(payment_id)},
        },
    )


@router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify payment",
    description="Ask the gateway for the authoritative state of a payment attempt",
)
@limiter.limit(VERIFY_RATE_LIMIT)
async def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    user_id: CurrentUserId,
    engine: Reconciler,
    registry: Registry,
) -> VerifyPaymentResponse:
    """
    Reconcile one of the caller's payment attempts.

    Safe to call repeatedly. The reference is the one stored on the attempt;
    a reference found in ``data`` is used only when the attempt has none.

    Raises:
        HTTPException: 404 unknown attempt or not the caller's, 400 provider
            mismatch or unknown provider, 500 storage failure
    """
    try:
        attempt = await engine.get_attempt(body.payment_id)
        if attempt is None or attempt.user_id != user_id:
            logger.warning(
                "Verify for unknown or foreign payment",
                payment_id=str(body.payment_id),
                user_id=str(user_id),
            )
            raise _not_found(body.payment_id)

        if attempt.provider != body.provider:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": "Provider does not match the payment",
                    "code": "PROVIDER_MISMATCH",
                    "context": {"payment_id": str(body.payment_id), "provider": body.provider},
                },
            )

        adapter = registry.get(body.provider)
        hinted = adapter.extract_reference(body.data)
        if hinted and attempt.provider_ref and hinted != attempt.provider_ref:
            logger.info(
                "Ignoring stale client reference",
                payment_id=str(attempt.payment_id),
                hinted=hinted,
            )
        reference = attempt.provider_ref or hinted

        outcome = await engine.reconcile(
            adapter.name,
            reference,
            trigger=PaymentLogType.VERIFY_REQUEST,
            payload={"data": body.data},
        )

    except UnknownProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": str(e),
                "code": "UNKNOWN_PROVIDER",
                "context": {"provider": body.provider},
            },
        )

    except ReconciliationError as e:
        logger.error(
            "Verify failed",
            payment_id=str(body.payment_id),
            reason=e.reason,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "Payment verification failed",
                "code": "VERIFICATION_FAILED",
                "context": {"reason": e.reason},
            },
        )

    if isinstance(outcome, AttemptNotFound) or outcome.payment_id != attempt.payment_id:
        raise _not_found(body.payment_id)

    return VerifyPaymentResponse(
        success=outcome.success,
        terminal=outcome.terminal,
        state=outcome.gateway_state,
        result=outcome.status,
        payment_id=outcome.payment_id,
        order_id=outcome.order_id,
        reason=outcome.reason,
        idempotent=outcome.idempotent,
    )


async def _reconcile_return(
    engine: ReconciliationEngine,
    responder: OutcomeResponder,
    provider: str,
    reference: Optional[str],
    payload: dict,
    reason: Optional[str] = None,
) -> HTMLResponse:
    """Reconcile a browser return, turning every failure into an outcome page."""
    try:
        outcome = await engine.reconcile(
            provider, reference, trigger=PaymentLogType.REDIRECT, payload=payload
        )
        return responder.from_result(outcome, reason=reason)
    except ReconciliationError as e:
        logger.error(
            "Return reconciliation failed",
            provider=provider,
            reference=reference,
            reason=e.reason,
            error=str(e),
        )
        return responder.render("pending", provider=provider, ref=reference, reason=e.reason)
    except UnknownProviderError:
        logger.error("Return for unconfigured provider", provider=provider)
        return responder.render("failed", provider=provider, ref=reference, reason="internal_error")
    except Exception as e:
        logger.error(
            "Unexpected error during return reconciliation",
            provider=provider,
            reference=reference,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return responder.render("pending", provider=provider, ref=reference, reason="internal_error")


@router.get(
    "/esewa/return",
    response_class=HTMLResponse,
    summary="eSewa browser return",
)
async def esewa_return(
    engine: Reconciler,
    registry: Registry,
    responder: Responder,
    data: Optional[str] = None,
    result: Optional[str] = None,
) -> HTMLResponse:
    """
    Handle eSewa's success or failure redirect.

    The signed ``data`` payload is decoded for its transaction uuid; a bad
    signature is recorded but the status check still decides the outcome.
    """
    adapter = registry.find("esewa")
    if not isinstance(adapter, EsewaGateway):
        logger.error("eSewa return received but eSewa is not configured")
        return responder.render("failed", provider="esewa", reason="internal_error")

    try:
        payload = adapter.parse_return_payload(data or "")
    except InvalidReturnPayloadError as e:
        logger.warning("Rejected eSewa return payload", reason=e.reason, error=str(e))
        return responder.render(
            "failed",
            provider="esewa",
            ref=e.context.get("transaction_uuid"),
            reason=e.reason,
        )
    except Exception as e:
        logger.error(
            "Unexpected error decoding eSewa return payload",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return responder.render("failed", provider="esewa", reason="invalid_payload")

    signature_ok = adapter.verify_return_signature(payload)
    if not signature_ok:
        logger.warning(
            "eSewa return signature mismatch",
            reference=payload.transaction_uuid,
        )

    return await _reconcile_return(
        engine,
        responder,
        "esewa",
        payload.transaction_uuid,
        payload={
            "result": (result or "").strip().lower() or None,
            "signature_valid": signature_ok,
            "data": payload.raw,
        },
        reason=None if signature_ok else "bad_signature",
    )


@router.get(
    "/khalti/return",
    response_class=HTMLResponse,
    summary="Khalti browser return",
)
async def khalti_return(
    request: Request,
    engine: Reconciler,
    registry: Registry,
    responder: Responder,
) -> HTMLResponse:
    """Handle Khalti's redirect; only ``pidx`` (or ``txnId``) is read from it."""
    params = dict(request.query_params)
    adapter = registry.find("khalti")
    if adapter is None:
        logger.error("Khalti return received but Khalti is not configured")
        return responder.render("failed", provider="khalti", reason="internal_error")

    reference = adapter.extract_reference(params)
    if not reference:
        return responder.render("failed", provider="khalti", reason="missing_reference")

    return await _reconcile_return(engine, responder, "khalti", reference, payload=params)


@router.get(
    "/stripe/return",
    response_class=HTMLResponse,
    summary="Stripe Checkout browser return",
)
async def stripe_return(
    request: Request,
    engine: Reconciler,
    registry: Registry,
    responder: Responder,
) -> HTMLResponse:
    """Handle the Stripe Checkout success or cancel redirect."""
    params = dict(request.query_params)
    adapter = registry.find("stripe")
    if adapter is None:
        logger.error("Stripe return received but Stripe is not configured")
        return responder.render("failed", provider="stripe", reason="internal_error")

    reference = adapter.extract_reference(params)
    if not reference:
        return responder.render("failed", provider="stripe", reason="missing_reference")

    return await _reconcile_return(engine, responder, "stripe", reference, payload=params)


@router.get(
    "/esewa/start",
    response_class=HTMLResponse,
    summary="Start or restart an eSewa payment",
)
async def esewa_start(
    service: Checkout,
    responder: Responder,
    payment_id: Optional[str] = None,
) -> HTMLResponse:
    """
    Re-initiate an eSewa attempt and auto-submit the signed form.

    Each call signs a fresh transaction uuid so that eSewa does not reject a
    reused one. A settled attempt renders its outcome page instead.
    """
    try:
        parsed_id = uuid.UUID((payment_id or "").strip())
    except ValueError:
        return responder.render("failed", provider="esewa", reason="missing_reference")

    try:
        restart = await service.restart_payment(parsed_id, provider="esewa")
    except PaymentNotFoundError:
        return responder.render(
            "failed", provider="esewa", payment_id=parsed_id, reason="payment_not_found"
        )
    except PaymentInitiationError as e:
        return responder.render(
            "failed",
            provider="esewa",
            payment_id=parsed_id,
            order_id=e.context.get("order_id"),
            reason="internal_error",
        )
    except PaymentRepositoryError as e:
        logger.error("eSewa start lookup failed", payment_id=str(parsed_id), error=str(e))
        return responder.render(
            "pending", provider="esewa", payment_id=parsed_id, reason="lookup_failed"
        )
    except Exception as e:
        logger.error(
            "Unexpected error during eSewa start",
            payment_id=str(parsed_id),
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return responder.render(
            "pending", provider="esewa", payment_id=parsed_id, reason="internal_error"
        )

    if restart.status is PaymentStatus.PAID or restart.status is PaymentStatus.REFUNDED:
        return responder.render(
            "success",
            provider="esewa",
            payment_id=restart.payment_id,
            order_id=restart.order_id,
            reason="already_paid",
        )
    if restart.initiation is None:
        return responder.render(
            "failed",
            provider="esewa",
            payment_id=restart.payment_id,
            order_id=restart.order_id,
            reason="gateway_terminal",
        )

    return responder.render_auto_post_form(
        restart.initiation.payment_url,
        restart.initiation.form_fields,
    )
