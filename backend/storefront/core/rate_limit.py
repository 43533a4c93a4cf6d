"""
Request rate limiting.

One slowapi limiter, keyed by client address, shared by the application
and the routers that decorate endpoints with it.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

CHECKOUT_RATE_LIMIT = "10/minute"
VERIFY_RATE_LIMIT = "30/minute"

limiter = Limiter(key_func=get_remote_address)
