"""
Module: costing_kernel.models.product
Responsibility: ORM persistence for stocked products and their fallback
    unit cost.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - A product never holds a quantity.  Stock on hand is the sum of its
      open lots' remaining quantities.
    - fallback_unit_cost >= 0 (CHECK constraint).
    - Fallback cost is last-writer-wins: every purchase or opening-stock lot
      overwrites it and stamps fallback_cost_updated_at and
      fallback_cost_lot_id.

Failure modes:
    - IntegrityError on duplicate sku.

Audit relevance:
    The fallback cost prices every unit sold while no lot is available.
    Its timestamp and originating lot let a reviewer explain why a short
    sale was costed the way it was.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TimestampedBase, UUIDString


class Product(TimestampedBase):
    """
    A stocked product.

    Contract:
        Identifies the item whose lot timeline the engine maintains.  The
        only cost state held here is the fallback unit cost used for
        stock shortages.

    Non-goals:
        - Does NOT track quantity on hand (see StockSelector).
        - Does NOT hold selling prices or tax settings.
    """

    __tablename__ = "products"

    __table_args__ = (
        CheckConstraint(
            "fallback_unit_cost >= 0",
            name="ck_products_fallback_cost_non_negative",
        ),
    )

    sku: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    fallback_unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    fallback_cost_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Lot whose acquisition last set the fallback (no FK: lots may be deleted)
    fallback_cost_lot_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Product {self.sku}: {self.name}>"
