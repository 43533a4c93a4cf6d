"""
Tests for the eSewa ePay v2 adapter.

The status API is served by ``httpx.MockTransport``.
"""

import base64
import hashlib
import hmac
import json
import uuid

import httpx
import pytest

from storefront.services.payments.gateways.base import (
    GatewayConfigurationError,
    GatewayResponseError,
    GatewayTransportError,
    InitiateRequest,
    VerifyRequest,
)
from storefront.services.payments.gateways.esewa import (
    SANDBOX_FORM_HOST,
    SIGNED_FIELD_NAMES,
    STATUS_PATH,
    EsewaGateway,
    InvalidReturnPayloadError,
    normalize_total_amount,
)

SECRET = "8gBm/:&EnhH.1/q"
PRODUCT_CODE = "EPAYTEST"


def make_gateway(handler=None) -> EsewaGateway:
    transport = httpx.MockTransport(handler) if handler else None
    return EsewaGateway(
        product_code=PRODUCT_CODE,
        secret_key=SECRET,
        success_url="https://api.example.com/api/v1/store/payments/esewa/return?result=success",
        failure_url="https://api.example.com/api/v1/store/payments/esewa/return?result=failure",
        transport=transport,
    )


def expected_signature(message: str) -> str:
    digest = hmac.new(SECRET.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def encode_payload(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


def signed_payload(gateway: EsewaGateway, transaction_uuid: str = "abc-1700000000", total: str = "500.00") -> dict:
    return {
        "transaction_code": "000AWEO",
        "status": "COMPLETE",
        "total_amount": total,
        "transaction_uuid": transaction_uuid,
        "product_code": PRODUCT_CODE,
        "signed_field_names": SIGNED_FIELD_NAMES,
        "signature": gateway.sign(total, transaction_uuid),
    }


# ============================================================================
# Form Signing
# ============================================================================


class TestFormSigning:
    """Test signed form generation."""

    def test_signature_over_signed_fields(self):
        gateway = make_gateway()

        signature = gateway.sign("100", "11-201-13")

        assert signature == expected_signature(
            "total_amount=100,transaction_uuid=11-201-13,product_code=EPAYTEST"
        )

    def test_build_form(self):
        gateway = make_gateway()

        fields = gateway.build_form("pay-1-1700000000", 125050)

        assert fields["amount"] == "1250.50"
        assert fields["total_amount"] == "1250.50"
        assert fields["tax_amount"] == "0"
        assert fields["product_code"] == PRODUCT_CODE
        assert fields["signed_field_names"] == SIGNED_FIELD_NAMES
        assert fields["success_url"].endswith("result=success")
        assert fields["signature"] == gateway.sign("1250.50", "pay-1-1700000000")

    def test_transaction_uuid_changes_per_initiation(self):
        payment_id = uuid.uuid4()

        first = EsewaGateway.new_transaction_uuid(payment_id, now=1700000000)
        second = EsewaGateway.new_transaction_uuid(payment_id, now=1700000042)

        assert first == f"{payment_id}-1700000000"
        assert first != second

    @pytest.mark.asyncio
    async def test_initiate_makes_no_network_call(self):
        def handler(request):
            raise AssertionError("initiate must not call eSewa")

        gateway = make_gateway(handler)
        request = InitiateRequest(
            payment_id=uuid.uuid4(),
            order_id=uuid.uuid4(),
            order_number="ORD-ABCD-1234",
            amount_cents=50000,
        )

        result = await gateway.initiate(request)

        assert result.provider == "esewa"
        assert result.reference.startswith(str(request.payment_id))
        assert result.payment_url == SANDBOX_FORM_HOST + "/api/epay/main/v2/form"
        assert result.form_fields["transaction_uuid"] == result.reference
        assert result.form_fields["total_amount"] == "500.00"

    def test_missing_credentials(self):
        with pytest.raises(GatewayConfigurationError):
            EsewaGateway(product_code="", secret_key=SECRET, success_url="s", failure_url="f")


# ============================================================================
# Return Payload
# ============================================================================


class TestReturnPayload:
    """Test decoding of the untrusted browser return."""

    def test_parse_valid_payload(self):
        gateway = make_gateway()
        payload = signed_payload(gateway)

        parsed = gateway.parse_return_payload(encode_payload(payload))

        assert parsed.transaction_uuid == "abc-1700000000"
        assert parsed.total_amount == "500.00"
        assert parsed.status == "COMPLETE"
        assert gateway.verify_return_signature(parsed) is True

    def test_numeric_total_is_normalized_before_signature_check(self):
        gateway = make_gateway()
        payload = signed_payload(gateway, total="500.00")
        payload["total_amount"] = 500

        parsed = gateway.parse_return_payload(encode_payload(payload))

        assert parsed.total_amount == "500.00"
        assert gateway.verify_return_signature(parsed) is True

    def test_tampered_amount_fails_signature(self):
        gateway = make_gateway()
        payload = signed_payload(gateway)
        payload["total_amount"] = "1.00"

        parsed = gateway.parse_return_payload(encode_payload(payload))

        assert gateway.verify_return_signature(parsed) is False

    def test_unpadded_base64_is_accepted(self):
        gateway = make_gateway()
        data = encode_payload(signed_payload(gateway)).rstrip("=")

        assert gateway.parse_return_payload(data).transaction_uuid == "abc-1700000000"

    @pytest.mark.parametrize(
        "data,reason",
        [
            ("", "missing_data"),
            ("%%%not-base64%%%", "invalid_payload"),
            (base64.b64encode(b"[1, 2]").decode(), "invalid_payload"),
            (encode_payload({"product_code": PRODUCT_CODE, "signature": "x"}), "missing_reference"),
            (
                encode_payload(
                    {
                        "transaction_uuid": "abc",
                        "product_code": PRODUCT_CODE,
                        "signature": "x",
                        "total_amount": "ten",
                    }
                ),
                "invalid_total_amount",
            ),
        ],
    )
    def test_invalid_payload_reasons(self, data, reason):
        gateway = make_gateway()

        with pytest.raises(InvalidReturnPayloadError) as exc_info:
            gateway.parse_return_payload(data)

        assert exc_info.value.reason == reason

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": 1},
            {"transaction_code": 123},
            {"signed_field_names": ["total_amount"]},
        ],
    )
    def test_non_string_optional_fields_are_coerced(self, overrides):
        gateway = make_gateway()
        payload = {**signed_payload(gateway), **overrides}

        parsed = gateway.parse_return_payload(encode_payload(payload))

        assert parsed.transaction_uuid == "abc-1700000000"
        assert parsed.status is None or isinstance(parsed.status, str)
        assert parsed.transaction_code is None or isinstance(parsed.transaction_code, str)
        assert parsed.signed_field_names is None or isinstance(parsed.signed_field_names, str)

    def test_out_of_range_total_is_rejected(self):
        gateway = make_gateway()
        payload = {**signed_payload(gateway), "total_amount": "1e30"}

        with pytest.raises(InvalidReturnPayloadError) as exc_info:
            gateway.parse_return_payload(encode_payload(payload))

        assert exc_info.value.reason == "invalid_total_amount"

    def test_extract_reference(self):
        gateway = make_gateway()
        data = encode_payload(signed_payload(gateway, transaction_uuid="ref-9"))

        assert gateway.extract_reference({"data": data}) == "ref-9"
        assert gateway.extract_reference({"transaction_uuid": " ref-7 "}) == "ref-7"
        assert gateway.extract_reference({"data": "%%%"}) is None
        assert gateway.extract_reference({}) is None

    @pytest.mark.parametrize(
        "value,expected",
        [("100", "100.00"), (100, "100.00"), (99.5, "99.50"), (" 1000 ", "1000.00")],
    )
    def test_normalize_total_amount(self, value, expected):
        assert normalize_total_amount(value) == expected

    @pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity", "-5", "1e30", {"a": 1}])
    def test_normalize_total_amount_rejects(self, value):
        with pytest.raises(ValueError):
            normalize_total_amount(value)


# ============================================================================
# Status Check
# ============================================================================


class TestStatusCheck:
    """Test server-to-server verification."""

    @pytest.mark.asyncio
    async def test_verify_sends_stored_amount(self):
        # Arrange
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "COMPLETE", "ref_id": "0001TS9"})

        gateway = make_gateway(handler)

        # Act
        result = await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=50000))

        # Assert
        assert result.success is True
        assert result.terminal is True
        assert result.state == "COMPLETE"
        assert result.reference == "abc-1"
        assert seen[0].url.path == STATUS_PATH
        assert seen[0].url.params["total_amount"] == "500.00"
        assert seen[0].url.params["transaction_uuid"] == "abc-1"
        assert seen[0].url.params["product_code"] == PRODUCT_CODE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "state,success,terminal",
        [
            ("COMPLETE", True, True),
            ("PENDING", False, False),
            ("AMBIGUOUS", False, False),
            ("NOT_FOUND", False, True),
            ("CANCELED", False, True),
            ("FULL_REFUND", False, True),
            ("PARTIAL_REFUND", False, True),
            ("SOMETHING_NEW", False, False),
        ],
    )
    async def test_status_mapping(self, state, success, terminal):
        gateway = make_gateway(lambda request: httpx.Response(200, json={"status": state.lower()}))

        result = await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=100))

        assert (result.success, result.terminal) == (success, terminal)
        assert result.state == state

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self):
        gateway = make_gateway(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(GatewayTransportError):
            await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=100))

    @pytest.mark.asyncio
    async def test_client_error_is_response_error(self):
        gateway = make_gateway(lambda request: httpx.Response(400, json={"code": 0}))

        with pytest.raises(GatewayResponseError):
            await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=100))

    @pytest.mark.asyncio
    async def test_undecodable_body_is_transport_error(self):
        gateway = make_gateway(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(GatewayTransportError):
            await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=100))

    @pytest.mark.asyncio
    async def test_network_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayTransportError):
            await gateway.verify(VerifyRequest(reference="abc-1", amount_cents=100))
