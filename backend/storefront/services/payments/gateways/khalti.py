"""
Khalti ePayment v2 adapter.

Initiation POSTs the order to Khalti and receives a ``pidx`` (the provider
reference) plus a hosted payment URL. Verification uses the lookup API,
which answers HTTP 400 with a regular status body for some terminal states
(expired, user canceled), so both 200 and 400 bodies are decoded.
"""

from typing import Any, Mapping, Optional

import httpx

from storefront.core.logging import get_logger
from storefront.services.payments.gateways.base import (
    GatewayConfigurationError,
    GatewayResponseError,
    GatewayResult,
    GatewayTransportError,
    HttpGateway,
    InitiateRequest,
    InitiateResult,
    VerifyRequest,
)

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://dev.khalti.com/api/v2"
LIVE_BASE_URL = "https://khalti.com/api/v2"

INITIATE_PATH = "/epayment/initiate/"
LOOKUP_PATH = "/epayment/lookup/"

SUCCESS_STATES = frozenset({"completed"})
FAILED_STATES = frozenset({"expired", "user canceled", "refunded", "partially refunded"})


def map_status(state: str) -> tuple[bool, bool]:
    """Map a Khalti status (case-insensitive) to ``(success, terminal)``."""
    key = state.strip().lower()
    if key in SUCCESS_STATES:
        return True, True
    if key in FAILED_STATES:
        return False, True
    return False, False


class KhaltiGateway(HttpGateway):
    """Khalti ePayment v2 adapter."""

    name = "khalti"

    def __init__(
        self,
        secret_key: str,
        return_url: str,
        website_url: str,
        test_mode: bool = True,
        initiate_timeout: float = 15.0,
        verify_timeout: float = 10.0,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **backoff: Any,
    ):
        if not secret_key:
            raise GatewayConfigurationError("Khalti requires a secret key", provider=self.name)
        super().__init__(
            base_url=SANDBOX_BASE_URL if test_mode else LIVE_BASE_URL,
            initiate_timeout=initiate_timeout,
            verify_timeout=verify_timeout,
            max_retries=max_retries,
            transport=transport,
            **backoff,
        )
        self.secret_key = secret_key
        self.return_url = return_url
        self.website_url = website_url

        logger.info("Khalti gateway initialized", test_mode=test_mode)

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"key {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        payload = {
            "return_url": self.return_url,
            "website_url": self.website_url,
            "amount": request.amount_cents,
            "purchase_order_id": str(request.payment_id),
            "purchase_order_name": f"Order {request.order_number}",
            "customer_info": {
                "name": request.customer_name or "",
                "email": request.customer_email or "",
                "phone": request.customer_phone or "",
            },
        }

        response = await self._request_with_retry(
            "initiate",
            "POST",
            INITIATE_PATH,
            self.initiate_timeout,
            json=payload,
            headers=self._headers,
        )

        if response.status_code >= 500:
            raise GatewayTransportError(
                f"Khalti initiate returned HTTP {response.status_code}",
                provider=self.name,
                http_status=response.status_code,
            )
        if response.status_code not in (200, 201):
            logger.error(
                "Khalti initiate rejected",
                payment_id=str(request.payment_id),
                http_status=response.status_code,
                body=response.text[:500],
            )
            raise GatewayResponseError(
                f"Khalti initiate rejected with HTTP {response.status_code}",
                provider=self.name,
                http_status=response.status_code,
                body=response.text[:500],
            )

        body = self._decode_json(response, "initiate")
        pidx = str(body.get("pidx") or "").strip()
        payment_url = body.get("payment_url")
        if not pidx or not payment_url:
            raise GatewayResponseError(
                "Khalti initiate response is missing pidx or payment_url",
                provider=self.name,
                body=body,
            )

        logger.info(
            "Khalti payment initiated",
            payment_id=str(request.payment_id),
            reference=pidx,
            expires_at=body.get("expires_at"),
        )
        return InitiateResult(
            provider=self.name,
            reference=pidx,
            payment_url=payment_url,
            raw={"http_status": response.status_code, "body": body},
        )

    async def verify(self, request: VerifyRequest) -> GatewayResult:
        response = await self._request_once(
            "lookup",
            "POST",
            LOOKUP_PATH,
            self.verify_timeout,
            json={"pidx": request.reference},
            headers=self._headers,
        )

        if response.status_code not in (200, 400):
            error_cls = GatewayTransportError if response.status_code >= 500 else GatewayResponseError
            raise error_cls(
                f"Khalti lookup returned HTTP {response.status_code}",
                provider=self.name,
                http_status=response.status_code,
                body=response.text[:500],
            )

        body = self._decode_json(response, "lookup")
        state = str(body.get("status") or "").strip()
        if not state and response.status_code == 400:
            raise GatewayResponseError(
                "Khalti lookup rejected the request",
                provider=self.name,
                http_status=response.status_code,
                body=body,
            )

        success, terminal = map_status(state)
        logger.info(
            "Khalti lookup completed",
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
            raw={"http_status": response.status_code, "body": body},
        )

    def extract_reference(self, params: Mapping[str, Any]) -> Optional[str]:
        for key in ("pidx", "txnId"):
            value = params.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None
