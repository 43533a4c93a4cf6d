"""
Tests for CartStateMachine transition and link validation.
"""

from uuid import uuid4

import pytest

from storefront.database.models.cart import CartStatus
from storefront.services.cart.state_machine import (
    ALLOWED_TRANSITIONS,
    CartStateMachine,
    CartTransitionError,
)


@pytest.fixture
def machine() -> CartStateMachine:
    return CartStateMachine()


# ============================================================================
# Link Consistency
# ============================================================================


class TestConsistency:
    """Test the four legal (status, link) shapes."""

    @pytest.mark.parametrize(
        "status",
        [CartStatus.ACTIVE, CartStatus.CONVERTED, CartStatus.ABANDONED],
    )
    def test_unlinked_statuses(self, status):
        assert CartStateMachine.is_consistent(status, None)
        assert not CartStateMachine.is_consistent(status, uuid4())

    def test_checkout_pending_requires_link(self):
        assert CartStateMachine.is_consistent(CartStatus.CHECKOUT_PENDING, uuid4())
        assert not CartStateMachine.is_consistent(CartStatus.CHECKOUT_PENDING, None)


# ============================================================================
# Transitions
# ============================================================================


class TestTransitions:
    """Test transition validation."""

    def test_allowed_targets(self):
        assert CartStateMachine.allowed_targets(CartStatus.ACTIVE) == {
            CartStatus.CHECKOUT_PENDING,
            CartStatus.CONVERTED,
            CartStatus.ABANDONED,
        }
        assert CartStateMachine.allowed_targets(CartStatus.CHECKOUT_PENDING) == {
            CartStatus.CONVERTED,
            CartStatus.ACTIVE,
        }

    @pytest.mark.parametrize("status", [CartStatus.CONVERTED, CartStatus.ABANDONED])
    def test_terminal_statuses_have_no_exits(self, status):
        assert status.is_terminal
        assert CartStateMachine.allowed_targets(status) == set()

    def test_every_allowed_transition_validates(self, machine):
        for (current, target), needs_link in ALLOWED_TRANSITIONS.items():
            machine.validate_transition(current, target, uuid4() if needs_link else None)

    def test_illegal_transition_raises(self, machine):
        with pytest.raises(CartTransitionError) as exc_info:
            machine.validate_transition(CartStatus.CONVERTED, CartStatus.ACTIVE)

        assert exc_info.value.current_state is CartStatus.CONVERTED
        assert exc_info.value.target_state is CartStatus.ACTIVE
        assert exc_info.value.context["allowed"] == []

    def test_abandoned_cart_cannot_be_checked_out(self, machine):
        with pytest.raises(CartTransitionError):
            machine.validate_transition(CartStatus.ABANDONED, CartStatus.CHECKOUT_PENDING, uuid4())

    def test_checkout_pending_without_link_raises(self, machine):
        with pytest.raises(CartTransitionError):
            machine.validate_transition(CartStatus.ACTIVE, CartStatus.CHECKOUT_PENDING)

    def test_link_on_unlinked_target_raises(self, machine):
        with pytest.raises(CartTransitionError):
            machine.validate_transition(CartStatus.CHECKOUT_PENDING, CartStatus.ACTIVE, uuid4())

    def test_from_string(self):
        assert CartStatus.from_string(" Checkout_Pending ") is CartStatus.CHECKOUT_PENDING
        with pytest.raises(ValueError):
            CartStatus.from_string("paid")
