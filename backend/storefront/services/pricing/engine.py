"""
Cart pricing engine with promotional overrides.

This module turns cart lines (list price and quantity) plus the promotions
that might apply to them into a priced snapshot. It has no database or
network access; the checkout service loads the inputs and persists the
output, which keeps every pricing rule testable in isolation.

Rules:
- A promotion is eligible when the item and its collection are both active,
  ``now`` falls inside both optional validity windows (inclusive bounds), and
  it targets the line's variant or the variant's product.
- A promotion that would not lower the price is discarded: a fixed price
  must satisfy ``0 < price < list``; a percentage must satisfy
  ``0 < percent < 100``. A fixed price of 0 means "unset".
- Among the remaining promotions a fixed price beats a percentage, the
  lowest fixed price wins, and among percentages the highest wins.
- Percentage prices use integer arithmetic: ``list * (100 - pct) // 100``.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from storefront.core.logging import get_logger

logger = get_logger(__name__)


class PricingError(Exception):
    """Base exception for pricing calculation errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class EmptyCartError(PricingError):
    """Raised when a cart has no lines or a non-positive subtotal."""

    pass


class InvalidPricingError(PricingError):
    """Raised when computed totals violate the money invariants."""

    pass


class PromotionCandidate(BaseModel):
    """Promotion item joined with its collection, as loaded for pricing."""

    model_config = ConfigDict(frozen=True)

    promotion_id: Optional[uuid.UUID] = None
    product_id: Optional[uuid.UUID] = None
    product_variant_id: Optional[uuid.UUID] = None
    deal_price_cents: Optional[int] = None
    deal_percent: Optional[int] = None
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    collection_active: bool = True
    collection_starts_at: Optional[datetime] = None
    collection_ends_at: Optional[datetime] = None


class CartLine(BaseModel):
    """A cart line with its current catalog list price."""

    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_variant_id: uuid.UUID
    product_name: str
    variant_attributes: dict[str, Any] = Field(default_factory=dict)
    quantity: int = Field(gt=0)
    list_unit_price_cents: int = Field(ge=0)


class PricedLine(BaseModel):
    """Cart line after promotions were applied."""

    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_variant_id: uuid.UUID
    product_name: str
    variant_attributes: dict[str, Any]
    quantity: int
    list_unit_price_cents: int
    final_unit_price_cents: int
    line_total_cents: int
    line_discount_cents: int
    promotion_id: Optional[uuid.UUID] = None


class PricedCart(BaseModel):
    """Priced snapshot of a whole cart."""

    model_config = ConfigDict(frozen=True)

    lines: list[PricedLine]
    subtotal_cents: int
    discount_cents: int
    tax_cents: int = 0
    shipping_cents: int = 0
    total_cents: int


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _within(now: datetime, starts_at: Optional[datetime], ends_at: Optional[datetime]) -> bool:
    starts_at = _as_utc(starts_at)
    ends_at = _as_utc(ends_at)
    if starts_at is not None and starts_at > now:
        return False
    if ends_at is not None and ends_at < now:
        return False
    return True


class PricingEngine:
    """
    Applies the best eligible promotion to each cart line and totals the cart.

    Tax and shipping are additive extensions of the total; both default to
    zero and are passed through unchanged.
    """

    def is_eligible(
        self,
        candidate: PromotionCandidate,
        line: CartLine,
        now: datetime,
    ) -> bool:
        """
        Check whether a promotion applies to ``line`` at ``now``.

        Args:
            candidate: Promotion item with collection flags
            line: Cart line
            now: Evaluation time (timezone aware)

        Returns:
            True if the promotion is live and targets the line
        """
        if not (candidate.is_active and candidate.collection_active):
            return False
        if not _within(now, candidate.starts_at, candidate.ends_at):
            return False
        if not _within(now, candidate.collection_starts_at, candidate.collection_ends_at):
            return False

        targets_variant = (
            candidate.product_variant_id is not None
            and candidate.product_variant_id == line.product_variant_id
        )
        targets_product = (
            candidate.product_id is not None and candidate.product_id == line.product_id
        )
        return targets_variant or targets_product

    def effective_deal(
        self,
        candidate: PromotionCandidate,
        list_price_cents: int,
    ) -> Optional[tuple[int, int]]:
        """
        Rank key and final unit price of a promotion, or None if it does not lower the price.

        The rank key orders fixed prices before percentages, then lower
        fixed prices, then higher percentages.

        Args:
            candidate: Eligible promotion
            list_price_cents: Line list price

        Returns:
            ``(rank, final_price)`` or None when the promotion is discarded
        """
        price = candidate.deal_price_cents or 0
        if 0 < price < list_price_cents:
            return (price, price)

        percent = candidate.deal_percent
        if percent is None:
            return None
        if percent <= 0 or percent >= 100:
            logger.warning(
                "Ignoring promotion with out-of-range percentage",
                promotion_id=str(candidate.promotion_id) if candidate.promotion_id else None,
                deal_percent=percent,
            )
            return None

        final_price = list_price_cents * (100 - percent) // 100
        if final_price >= list_price_cents:
            return None
        # Offset keeps every percentage deal behind every fixed deal.
        return (list_price_cents + 1 + (100 - percent), final_price)

    def best_promotion(
        self,
        line: CartLine,
        candidates: Iterable[PromotionCandidate],
        now: datetime,
    ) -> Optional[tuple[PromotionCandidate, int]]:
        """
        Select the winning promotion for a line.

        Returns:
            ``(promotion, final_unit_price)`` or None if nothing applies
        """
        best: Optional[tuple[tuple[int, int], PromotionCandidate, int]] = None

        for candidate in candidates:
            if not self.is_eligible(candidate, line, now):
                continue
            deal = self.effective_deal(candidate, line.list_unit_price_cents)
            if deal is None:
                continue
            rank, final_price = deal
            if best is None or (rank, final_price) < best[0]:
                best = ((rank, final_price), candidate, final_price)

        if best is None:
            return None
        return best[1], best[2]

    def price_line(
        self,
        line: CartLine,
        candidates: Iterable[PromotionCandidate],
        now: datetime,
    ) -> PricedLine:
        """Price one line with its best eligible promotion."""
        winner = self.best_promotion(line, candidates, now)
        final_price = line.list_unit_price_cents
        promotion_id = None
        if winner is not None:
            promotion, final_price = winner
            promotion_id = promotion.promotion_id

        discount_per_unit = max(line.list_unit_price_cents - final_price, 0)
        return PricedLine(
            product_id=line.product_id,
            product_variant_id=line.product_variant_id,
            product_name=line.product_name,
            variant_attributes=dict(line.variant_attributes),
            quantity=line.quantity,
            list_unit_price_cents=line.list_unit_price_cents,
            final_unit_price_cents=final_price,
            line_total_cents=final_price * line.quantity,
            line_discount_cents=discount_per_unit * line.quantity,
            promotion_id=promotion_id,
        )

    def price_cart(
        self,
        lines: Sequence[CartLine],
        candidates: Sequence[PromotionCandidate],
        now: Optional[datetime] = None,
        tax_cents: int = 0,
        shipping_cents: int = 0,
    ) -> PricedCart:
        """
        Price every line and compute cart totals.

        Args:
            lines: Cart lines with list prices
            candidates: Promotions that may apply to any line
            now: Evaluation time, defaults to the current UTC time
            tax_cents: Additive tax
            shipping_cents: Additive shipping

        Returns:
            Priced cart snapshot

        Raises:
            EmptyCartError: If the cart has no lines or subtotal <= 0
            InvalidPricingError: If discount exceeds subtotal or total <= 0
        """
        now = _as_utc(now) or datetime.now(timezone.utc)

        if not lines:
            raise EmptyCartError("Cart is empty", line_count=0)

        priced = [self.price_line(line, candidates, now) for line in lines]

        subtotal = sum(line.list_unit_price_cents * line.quantity for line in priced)
        discount = max(sum(line.line_discount_cents for line in priced), 0)
        total = subtotal - discount + tax_cents + shipping_cents

        if subtotal <= 0:
            raise EmptyCartError(
                "Cart subtotal must be positive",
                subtotal_cents=subtotal,
                line_count=len(priced),
            )

        if discount > subtotal or total <= 0 or tax_cents < 0 or shipping_cents < 0:
            logger.error(
                "Pricing invariant violated",
                subtotal_cents=subtotal,
                discount_cents=discount,
                tax_cents=tax_cents,
                shipping_cents=shipping_cents,
                total_cents=total,
            )
            raise InvalidPricingError(
                "Computed order totals are invalid",
                subtotal_cents=subtotal,
                discount_cents=discount,
                total_cents=total,
            )

        return PricedCart(
            lines=priced,
            subtotal_cents=subtotal,
            discount_cents=discount,
            tax_cents=tax_cents,
            shipping_cents=shipping_cents,
            total_cents=total,
        )
