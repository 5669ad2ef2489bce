"""
Module: costing_kernel.models.sale_line
Responsibility: ORM persistence for the engine's view of a sold line
    (invoice line, POS line or credit line) and its derived cost of goods
    sold.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - quantity > 0 (CHECK constraint).
    - sale_date is the commercial date and the line's coordinate on the
      product timeline; sequence breaks same-date ties in creation order.
    - cost_of_goods_sold is written only by the costing services.
      costed_at is None until the line is costed for the first time.

Audit relevance:
    Every change to cost_of_goods_sold after the first costing is
    accompanied by a CostAuditLogEntry.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TimestampedBase, UUIDString


class SaleLine(TimestampedBase):
    """
    A quantity of one product sold on one date.

    Contract:
        The owning document (invoice, POS sale) lives outside the engine;
        document_ref points back to it.  The ledger collaborator reads
        cost_of_goods_sold once the line is costed.
    """

    __tablename__ = "sale_lines"

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_sale_lines_quantity_positive",
        ),
        # Query: lines of a product on or after a date, in replay order
        Index("idx_sale_line_timeline", "product_id", "sale_date", "sequence"),
        Index("idx_sale_line_document", "document_ref"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    document_ref: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    sale_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    cost_of_goods_sold: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
        default=Decimal("0"),
    )

    costed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_costed(self) -> bool:
        return self.costed_at is not None

    def __repr__(self) -> str:
        return f"<SaleLine {self.sale_date} #{self.sequence}: {self.quantity} cogs={self.cost_of_goods_sold}>"
