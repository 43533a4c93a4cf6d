"""
eSewa ePay v2 adapter.

Initiation is local: the adapter signs a form that the browser POSTs to
eSewa, so no network call is made. eSewa later redirects the browser back
with a base64 JSON ``data`` parameter. That payload is untrusted. Its
signature is checked for integrity, but the attempt's state always comes from
the server-to-server status check.
"""

import base64
import binascii
import json
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, Field

from storefront.core.logging import get_logger
from storefront.core.security import hmac_sha256_base64, signatures_match
from storefront.services.payments.gateways.base import (
    GatewayConfigurationError,
    GatewayResponseError,
    GatewayResult,
    GatewayTransportError,
    HttpGateway,
    InitiateRequest,
    InitiateResult,
    VerifyRequest,
    format_major_units,
)

logger = get_logger(__name__)

SIGNED_FIELD_NAMES = "total_amount,transaction_uuid,product_code"

SANDBOX_FORM_HOST = "https://rc-epay.esewa.com.np"
SANDBOX_STATUS_HOST = "https://rc.esewa.com.np"
LIVE_FORM_HOST = "https://epay.esewa.com.np"
LIVE_STATUS_HOST = "https://esewa.com.np"

FORM_PATH = "/api/epay/main/v2/form"
STATUS_PATH = "/api/epay/transaction/status/"

SUCCESS_STATES = frozenset({"COMPLETE"})
FAILED_STATES = frozenset({"NOT_FOUND", "CANCELED", "FULL_REFUND", "PARTIAL_REFUND"})


class InvalidReturnPayloadError(GatewayResponseError):
    """Browser return payload could not be decoded or is incomplete."""

    def __init__(self, message: str, reason: str, **context: Any):
        super().__init__(message, provider="esewa", **context)
        self.reason = reason


class EsewaReturnPayload(BaseModel):
    """Decoded eSewa browser return payload."""

    transaction_uuid: str
    product_code: str
    total_amount: str
    signature: str
    status: Optional[str] = None
    transaction_code: Optional[str] = None
    signed_field_names: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


def normalize_total_amount(value: Any) -> str:
    """
    Normalize an eSewa amount (number or numeric string) to ``"100.00"`` form.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Unsupported total_amount type: {type(value).__name__}")
    try:
        amount = Decimal(str(value).strip())
        if not amount.is_finite() or amount < 0:
            raise ValueError(f"Invalid total_amount: {value!r}")
        return f"{amount.quantize(Decimal('0.01')):.2f}"
    except ArithmeticError as e:
        # InvalidOperation is raised for unparseable and out-of-precision amounts
        raise ValueError(f"Invalid total_amount: {value!r}") from e


def _optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def map_status(state: str) -> tuple[bool, bool]:
    """Map an eSewa status to ``(success, terminal)``; unknown states are non-terminal."""
    if state in SUCCESS_STATES:
        return True, True
    if state in FAILED_STATES:
        return False, True
    return False, False


class EsewaGateway(HttpGateway):
    """eSewa ePay v2 adapter (signed form initiation, status API verification)."""

    name = "esewa"

    def __init__(
        self,
        product_code: str,
        secret_key: str,
        success_url: str,
        failure_url: str,
        test_mode: bool = True,
        verify_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not product_code or not secret_key:
            raise GatewayConfigurationError(
                "eSewa requires a product code and secret key", provider=self.name
            )
        super().__init__(
            base_url=SANDBOX_STATUS_HOST if test_mode else LIVE_STATUS_HOST,
            verify_timeout=verify_timeout,
            max_retries=0,
            transport=transport,
        )
        self.product_code = product_code
        self.secret_key = secret_key
        self.success_url = success_url
        self.failure_url = failure_url
        self.form_url = (SANDBOX_FORM_HOST if test_mode else LIVE_FORM_HOST) + FORM_PATH

        logger.info("eSewa gateway initialized", test_mode=test_mode, product_code=product_code)

    def sign(self, total_amount: str, transaction_uuid: str, product_code: Optional[str] = None) -> str:
        """Compute the base64 HMAC-SHA256 signature over the signed fields."""
        message = (
            f"total_amount={total_amount},"
            f"transaction_uuid={transaction_uuid},"
            f"product_code={product_code or self.product_code}"
        )
        return hmac_sha256_base64(self.secret_key, message)

    def build_form(self, transaction_uuid: str, amount_cents: int) -> dict[str, str]:
        """Build the signed ePay v2 form fields."""
        total = format_major_units(amount_cents)
        return {
            "amount": total,
            "tax_amount": "0",
            "total_amount": total,
            "transaction_uuid": transaction_uuid,
            "product_code": self.product_code,
            "product_service_charge": "0",
            "product_delivery_charge": "0",
            "success_url": self.success_url,
            "failure_url": self.failure_url,
            "signed_field_names": SIGNED_FIELD_NAMES,
            "signature": self.sign(total, transaction_uuid),
        }

    @staticmethod
    def new_transaction_uuid(payment_id: Any, now: Optional[float] = None) -> str:
        """A transaction uuid unique per initiation of the same attempt."""
        return f"{payment_id}-{int(now if now is not None else time.time())}"

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        transaction_uuid = self.new_transaction_uuid(request.payment_id)
        fields = self.build_form(transaction_uuid, request.amount_cents)

        logger.info(
            "eSewa form prepared",
            payment_id=str(request.payment_id),
            reference=transaction_uuid,
            total_amount=fields["total_amount"],
        )
        return InitiateResult(
            provider=self.name,
            reference=transaction_uuid,
            payment_url=self.form_url,
            form_fields=fields,
            raw={"form_url": self.form_url, "transaction_uuid": transaction_uuid},
        )

    async def verify(self, request: VerifyRequest) -> GatewayResult:
        params = {
            "product_code": self.product_code,
            "total_amount": format_major_units(request.amount_cents),
            "transaction_uuid": request.reference,
        }
        response = await self._request_once(
            "status_check", "GET", STATUS_PATH, self.verify_timeout, params=params
        )

        if response.status_code >= 500:
            raise GatewayTransportError(
                f"eSewa status check returned HTTP {response.status_code}",
                provider=self.name,
                http_status=response.status_code,
            )
        if not 200 <= response.status_code < 300:
            raise GatewayResponseError(
                f"eSewa status check rejected with HTTP {response.status_code}",
                provider=self.name,
                http_status=response.status_code,
                body=response.text[:500],
            )

        body = self._decode_json(response, "status_check")
        state = str(body.get("status") or "").strip().upper()
        success, terminal = map_status(state)

        logger.info(
            "eSewa status checked",
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
        value = params.get("transaction_uuid")
        if value is None and params.get("data"):
            try:
                value = self.parse_return_payload(str(params["data"])).transaction_uuid
            except InvalidReturnPayloadError:
                return None
        value = str(value).strip() if value is not None else ""
        return value or None

    def parse_return_payload(self, data: str) -> EsewaReturnPayload:
        """
        Decode the ``data`` parameter of an eSewa browser return.

        Raises:
            InvalidReturnPayloadError: With a reason code describing what is wrong
        """
        data = (data or "").strip()
        if not data:
            raise InvalidReturnPayloadError("Missing eSewa return data", reason="missing_data")

        try:
            decoded = base64.b64decode(data + "=" * (-len(data) % 4), validate=False)
            payload = json.loads(decoded)
        except (binascii.Error, ValueError) as e:
            raise InvalidReturnPayloadError(
                "Undecodable eSewa return data", reason="invalid_payload"
            ) from e
        if not isinstance(payload, dict):
            raise InvalidReturnPayloadError("Unexpected eSewa return data", reason="invalid_payload")

        transaction_uuid = str(payload.get("transaction_uuid") or "").strip()
        product_code = str(payload.get("product_code") or "").strip()
        signature = str(payload.get("signature") or "").strip()
        if not transaction_uuid or not product_code or not signature:
            raise InvalidReturnPayloadError(
                "eSewa return data is missing required fields",
                reason="missing_reference",
                transaction_uuid=transaction_uuid or None,
            )

        try:
            total_amount = normalize_total_amount(payload.get("total_amount"))
        except ValueError as e:
            raise InvalidReturnPayloadError(
                "Invalid eSewa total amount",
                reason="invalid_total_amount",
                transaction_uuid=transaction_uuid,
            ) from e

        return EsewaReturnPayload(
            transaction_uuid=transaction_uuid,
            product_code=product_code,
            total_amount=total_amount,
            signature=signature,
            status=_optional_str(payload.get("status")),
            transaction_code=_optional_str(payload.get("transaction_code")),
            signed_field_names=_optional_str(payload.get("signed_field_names")),
            raw=payload,
        )

    def verify_return_signature(self, payload: EsewaReturnPayload) -> bool:
        """Check the return payload signature in constant time."""
        expected = self.sign(payload.total_amount, payload.transaction_uuid, payload.product_code)
        return signatures_match(expected, payload.signature)
