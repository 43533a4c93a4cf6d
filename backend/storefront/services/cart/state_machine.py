"""Cart state machine with transition validation.

A cart's ``(status, checkout_order_id)`` pair may only take these shapes:

    active            + no link
    checkout_pending  + linked to exactly one order
    converted         + no link
    abandoned         + no link

Transitions are validated here before the repository issues the guarded
UPDATE that actually performs them. The UPDATE's own ``WHERE`` clause is
what detects concurrent modification; this module rejects moves that are
never legal, whatever the database holds.
"""

from typing import Any, Optional
from uuid import UUID

from storefront.core.logging import get_logger
from storefront.database.models.cart import CartStatus

logger = get_logger(__name__)


class CartError(Exception):
    """Base exception for cart lifecycle errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class NoActiveCartError(CartError):
    """Raised when the owner has no active cart to check out."""

    pass


class CartNotActiveError(CartError):
    """Raised when a guarded transition finds the cart already moved on."""

    pass


class CartTransitionError(CartError):
    """Raised when an illegal cart transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: CartStatus,
        target_state: CartStatus,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.current_state = current_state
        self.target_state = target_state


# (from, to) -> whether the target state carries an order link
ALLOWED_TRANSITIONS: dict[tuple[CartStatus, CartStatus], bool] = {
    (CartStatus.ACTIVE, CartStatus.CHECKOUT_PENDING): True,
    (CartStatus.ACTIVE, CartStatus.CONVERTED): False,
    (CartStatus.ACTIVE, CartStatus.ABANDONED): False,
    (CartStatus.CHECKOUT_PENDING, CartStatus.CONVERTED): False,
    (CartStatus.CHECKOUT_PENDING, CartStatus.ACTIVE): False,
}


class CartStateMachine:
    """Validates cart lifecycle transitions and link consistency."""

    @staticmethod
    def is_consistent(status: CartStatus, order_link: Optional[UUID]) -> bool:
        """
        Check that a status and order link form a legal pair.

        Args:
            status: Cart status
            order_link: Linked order id, if any

        Returns:
            True if the pair is one of the four legal shapes
        """
        if status is CartStatus.CHECKOUT_PENDING:
            return order_link is not None
        return order_link is None

    @staticmethod
    def allowed_targets(current: CartStatus) -> set[CartStatus]:
        """Statuses reachable from ``current`` in one step."""
        return {target for (source, target) in ALLOWED_TRANSITIONS if source is current}

    def validate_transition(
        self,
        current: CartStatus,
        target: CartStatus,
        order_link: Optional[UUID] = None,
    ) -> None:
        """
        Validate a transition and the order link it would leave behind.

        Args:
            current: Current status
            target: Desired status
            order_link: Order link the cart will hold after the move

        Raises:
            CartTransitionError: If the move or the resulting pair is illegal
        """
        key = (current, target)
        if key not in ALLOWED_TRANSITIONS:
            logger.warning(
                "Rejected cart transition",
                current_state=current.value,
                target_state=target.value,
            )
            raise CartTransitionError(
                f"Cannot move cart from {current.value} to {target.value}",
                current_state=current,
                target_state=target,
                allowed=[status.value for status in self.allowed_targets(current)],
            )

        requires_link = ALLOWED_TRANSITIONS[key]
        if requires_link != (order_link is not None):
            raise CartTransitionError(
                "Order link does not match target cart status",
                current_state=current,
                target_state=target,
                order_link=str(order_link) if order_link else None,
            )
