"""
Promotion repository for checkout pricing.

Loads the featured items that could apply to a set of cart lines and flattens
each one, together with its collection's switch and validity window, into a
``PromotionCandidate``. Eligibility itself is decided by the pricing engine.
"""

import uuid
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from storefront.core.logging import get_logger
from storefront.database.models.promotion import FeaturedItem
from storefront.services.pricing.engine import PricingError, PromotionCandidate

logger = get_logger(__name__)


class PromotionRepository:
    """Read-only access to featured collection price overrides."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_candidates(
        self,
        product_ids: Iterable[uuid.UUID],
        variant_ids: Iterable[uuid.UUID],
    ) -> list[PromotionCandidate]:
        """
        Load promotions targeting any of the given products or variants.

        Inactive and out-of-window promotions are returned too; the pricing
        engine filters them against the checkout time.

        Args:
            product_ids: Products present in the cart
            variant_ids: Variants present in the cart

        Returns:
            Flattened promotion candidates

        Raises:
            PricingError: If the promotions cannot be loaded
        """
        product_ids = list(set(product_ids))
        variant_ids = list(set(variant_ids))
        if not product_ids and not variant_ids:
            return []

        conditions = []
        if product_ids:
            conditions.append(FeaturedItem.product_id.in_(product_ids))
        if variant_ids:
            conditions.append(FeaturedItem.product_variant_id.in_(variant_ids))

        try:
            stmt = (
                select(FeaturedItem)
                .options(joinedload(FeaturedItem.collection))
                .where(or_(*conditions))
            )
            result = await self.session.execute(stmt)
            items = result.unique().scalars().all()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load promotions",
                product_count=len(product_ids),
                variant_count=len(variant_ids),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PricingError("Failed to load promotions") from e

        candidates = [
            PromotionCandidate(
                promotion_id=item.id,
                product_id=item.product_id,
                product_variant_id=item.product_variant_id,
                deal_price_cents=item.deal_price_cents,
                deal_percent=item.deal_percent,
                is_active=item.is_active,
                starts_at=item.starts_at,
                ends_at=item.ends_at,
                collection_active=item.collection.is_active,
                collection_starts_at=item.collection.starts_at,
                collection_ends_at=item.collection.ends_at,
            )
            for item in items
        ]

        logger.debug("Promotion candidates loaded", count=len(candidates))
        return candidates
