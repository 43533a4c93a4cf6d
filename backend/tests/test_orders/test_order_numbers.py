"""
Tests for order number generation.
"""

import re
from uuid import UUID, uuid4

from storefront.services.orders.order_numbers import generate_order_number

SECRET = "test-secret-key-with-at-least-32-characters"


class TestGenerateOrderNumber:
    """Test the human-readable order number format."""

    def test_format(self):
        number = generate_order_number(uuid4(), SECRET)
        assert re.fullmatch(r"ORD-[A-Z2-7]{4}-[0-9A-F]{4}", number)

    def test_custom_prefix_is_upper_cased(self):
        assert generate_order_number(uuid4(), SECRET, prefix="sf").startswith("SF-")

    def test_deterministic_for_same_nonce(self):
        user_id = uuid4()
        nonce = UUID("0f8fad5b-d9cb-469f-a165-70867728950e")

        first = generate_order_number(user_id, SECRET, nonce=nonce)
        second = generate_order_number(user_id, SECRET, nonce=nonce)

        assert first == second
        assert first.endswith("-0F8F")

    def test_tag_depends_on_secret(self):
        user_id = uuid4()
        nonce = uuid4()

        assert generate_order_number(user_id, SECRET, nonce=nonce) != generate_order_number(
            user_id, SECRET[::-1], nonce=nonce
        )

    def test_fresh_nonce_per_call(self):
        user_id = uuid4()
        numbers = {generate_order_number(user_id, SECRET) for _ in range(20)}
        assert len(numbers) > 1
