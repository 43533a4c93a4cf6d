"""
Tests for bearer tokens and signing helpers.

Test Categories:
- JWT creation and validation
- Token failure codes
- HMAC signing and constant-time comparison
- Security headers
"""

import base64
import hashlib
import hmac
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from jose import jwt

from storefront.core.config import get_settings
from storefront.core.security import (
    TokenError,
    create_access_token,
    decode_token,
    get_security_headers,
    get_token_user_id,
    hmac_sha256,
    hmac_sha256_base64,
    signatures_match,
)

# ============================================================================
# JWT Tokens
# ============================================================================


class TestAccessToken:
    """Test access token round trips through the configured secret."""

    def test_subject_is_user_id(self):
        user_id = uuid4()

        token = create_access_token(user_id)

        assert get_token_user_id(token) == user_id

    def test_claims(self):
        token = create_access_token(uuid4(), role="shopper")

        payload = decode_token(token)

        assert payload["type"] == "access"
        assert payload["role"] == "shopper"
        assert payload["exp"] > payload["iat"]

    @pytest.mark.parametrize(
        "token_factory,code",
        [
            (lambda: "", "EMPTY_TOKEN"),
            (lambda: "not.a.jwt", "TOKEN_INVALID"),
            (lambda: create_access_token(uuid4(), expires_delta=timedelta(seconds=-5)), "TOKEN_EXPIRED"),
            (lambda: create_access_token("someone@example.com"), "TOKEN_BAD_SUBJECT"),
        ],
    )
    def test_rejected_tokens(self, token_factory, code):
        with pytest.raises(TokenError) as exc_info:
            get_token_user_id(token_factory())

        assert exc_info.value.code == code

    def test_token_signed_with_other_secret(self):
        settings = get_settings()
        forged = jwt.encode(
            {"sub": str(uuid4())},
            "another-secret-key-with-32-characters!!",
            algorithm=settings.jwt_algorithm,
        )

        with pytest.raises(TokenError) as exc_info:
            get_token_user_id(forged)

        assert exc_info.value.code == "TOKEN_INVALID"

    def test_token_without_subject(self):
        settings = get_settings()
        token = jwt.encode({"type": "access"}, settings.secret_key, algorithm=settings.jwt_algorithm)

        with pytest.raises(TokenError) as exc_info:
            get_token_user_id(token)

        assert exc_info.value.code == "TOKEN_NO_SUBJECT"


# ============================================================================
# Signing
# ============================================================================


class TestSigning:
    """Test HMAC helpers shared by gateways and order numbers."""

    def test_hmac_matches_stdlib(self):
        expected = hmac.new(b"secret", b"message", hashlib.sha256).digest()

        assert hmac_sha256("secret", "message") == expected
        assert hmac_sha256_base64("secret", "message") == base64.b64encode(expected).decode()

    def test_signatures_match(self):
        signature = hmac_sha256_base64("secret", "message")

        assert signatures_match(signature, signature) is True
        assert signatures_match(signature, signature[:-2] + "xx") is False
        assert signatures_match(signature, "") is False

    def test_security_headers(self):
        headers = get_security_headers()

        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["X-Frame-Options"] == "DENY"


def test_uuid_subject_string_is_accepted():
    user_id = UUID("0f8fad5b-d9cb-469f-a165-70867728950e")

    assert get_token_user_id(create_access_token(str(user_id))) == user_id
