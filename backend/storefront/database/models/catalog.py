"""
Catalog models referenced by carts, promotions and order snapshots.

The catalog itself is maintained by another service; checkout only reads a
product's display name and a variant's current list price and attributes.
"""

import uuid
from typing import Optional

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import BaseModel, JSONType


class Product(BaseModel):
    """
    Sellable product.

    Attributes:
        name: Display name copied into order line items
        is_active: Whether the product can be purchased
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product display name",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the product is purchasable",
    )


class ProductVariant(BaseModel):
    """
    Purchasable variant of a product carrying the list price.

    Attributes:
        product_id: Parent product
        price_cents: Current list price in minor units
        attributes: Free-form variant attributes (size, colour, ...)
        is_active: Whether the variant can be purchased
    """

    __tablename__ = "product_variants"

    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Parent product",
    )

    price_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="List price in minor currency units",
    )

    attributes: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        default=dict,
        comment="Variant attributes",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the variant is purchasable",
    )

    product: Mapped[Product] = relationship("Product", lazy="selectin")

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_product_variants_price_non_negative"),
    )
