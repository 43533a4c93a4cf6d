"""Human-readable order number generation."""

import base64
import uuid
from typing import Optional

from storefront.core.security import hmac_sha256

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number(
    user_id: uuid.UUID,
    secret: str,
    prefix: str = "ORD",
    nonce: Optional[uuid.UUID] = None,
) -> str:
    """
    Generate an order number such as ``ORD-K3QF-9A1C``.

    The middle block is a keyed tag over the owner and a random nonce, so
    numbers cannot be enumerated; the last block is taken from the nonce
    itself. Uniqueness is enforced by the database and a collision is
    retried with a fresh nonce.

    Args:
        user_id: Order owner
        secret: Application secret key
        prefix: Number prefix
        nonce: Explicit nonce (tests)

    Returns:
        Upper-case order number
    """
    nonce = nonce or uuid.uuid4()
    digest = hmac_sha256(secret, f"uid:{user_id}|nonce:{nonce}")
    tag = base64.b32encode(digest).decode("ascii").rstrip("=")
    return f"{prefix}-{tag[:4]}-{nonce.hex[:4]}".upper()
