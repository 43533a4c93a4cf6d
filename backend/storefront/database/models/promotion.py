"""
Promotional collection models.

A featured collection groups featured items; each item can override the
price of a product or of a single variant, either with a fixed deal price or
with a percentage discount. Both the collection and the item carry their own
active flag and optional validity window, and both must be live for an item
to be eligible at checkout.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import BaseModel


class FeaturedCollection(BaseModel):
    """
    Collection-level promotion switch and validity window.

    Attributes:
        title: Display title
        is_active: Collection switch
        starts_at: Optional start of validity (inclusive)
        ends_at: Optional end of validity (inclusive)
    """

    __tablename__ = "featured_collections"

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    starts_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Collection validity start",
    )

    ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Collection validity end",
    )

    items: Mapped[list["FeaturedItem"]] = relationship(
        "FeaturedItem",
        back_populates="collection",
        cascade="all, delete-orphan",
    )


class FeaturedItem(BaseModel):
    """
    Item-level price override inside a featured collection.

    Attributes:
        collection_id: Parent collection
        product_id: Targeted product (applies to all its variants)
        product_variant_id: Targeted variant
        deal_price_cents: Fixed deal price in minor units
        deal_percent: Percentage discount (0-100)
        is_active: Item switch
        starts_at: Optional start of validity
        ends_at: Optional end of validity
    """

    __tablename__ = "featured_items"

    collection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("featured_collections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=True,
    )

    product_variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_variants.id", ondelete="CASCADE"),
        nullable=True,
    )

    deal_price_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Fixed deal price in minor units",
    )

    deal_percent: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Percentage discount",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    collection: Mapped[FeaturedCollection] = relationship(
        "FeaturedCollection",
        back_populates="items",
        lazy="joined",
    )

    __table_args__ = (
        Index("ix_featured_items_product_id", "product_id"),
        Index("ix_featured_items_product_variant_id", "product_variant_id"),
        CheckConstraint(
            "product_id IS NOT NULL OR product_variant_id IS NOT NULL",
            name="ck_featured_items_has_target",
        ),
        CheckConstraint(
            "deal_price_cents IS NULL OR deal_price_cents >= 0",
            name="ck_featured_items_deal_price_non_negative",
        ),
        CheckConstraint(
            "deal_percent IS NULL OR (deal_percent >= 0 AND deal_percent <= 100)",
            name="ck_featured_items_deal_percent_range",
        ),
    )
