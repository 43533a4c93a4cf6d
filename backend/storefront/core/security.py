"""
Security utilities for bearer tokens and message signing.

This module provides:
- JWT access token creation and validation (python-jose)
- HMAC-SHA256 signing helpers shared by gateway adapters and the
  order number generator
- Security response headers applied by the HTTP middleware
"""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from jose import JWTError, jwt

from storefront.core.config import get_settings
from storefront.core.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


def create_access_token(
    subject: UUID | str,
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        subject: Token subject, normally the owner's user id
        expires_delta: Optional custom lifetime
        **claims: Extra claims to embed

    Returns:
        Encoded JWT token string
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode: Dict[str, Any] = dict(claims)
    to_encode.update({"sub": str(subject), "exp": expire, "iat": now, "type": "access"})

    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is empty, invalid or expired
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning("Invalid token", error=str(e), error_type=type(e).__name__)
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e


def get_token_user_id(token: str) -> UUID:
    """
    Extract the owner id from a token's ``sub`` claim.

    Raises:
        TokenError: If the token is invalid or its subject is not a UUID
    """
    payload = decode_token(token)
    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token missing subject", code="TOKEN_NO_SUBJECT")
    try:
        return UUID(str(subject))
    except ValueError as e:
        raise TokenError("Token subject is not a user id", code="TOKEN_BAD_SUBJECT") from e


def hmac_sha256(secret: str, message: str) -> bytes:
    """Raw HMAC-SHA256 digest of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()


def hmac_sha256_base64(secret: str, message: str) -> str:
    """Standard base64 encoding of the HMAC-SHA256 digest."""
    return base64.b64encode(hmac_sha256(secret, message)).decode("ascii")


def signatures_match(expected: str, received: str) -> bool:
    """Constant-time comparison of two signature strings."""
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def get_security_headers() -> Dict[str, str]:
    """
    Response headers added to every API response.

    Returns:
        Mapping of header name to value
    """
    return {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
    }
