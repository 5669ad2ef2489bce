"""
Module: costing_kernel.models.stock_lot
Responsibility: ORM persistence for stock lots, the consumption records
    that link lots to the sale lines drawing from them, and the draws made
    by returns to the supplier.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - initial_quantity > 0 and 0 <= remaining_quantity <= initial_quantity
      (CHECK constraints).
    - unit_cost >= 0 (zero for donated or sample stock).
    - FIFO order is (lot_date, sequence); the composite index on
      (product_id, lot_date, sequence) serves the eligible-lot query.
    - Conservation: for every lot, the sale consumptions and supplier
      return draws referencing it sum to initial_quantity -
      remaining_quantity.  Maintained by the FIFO consumer and the supplier
      return service, which write both sides in the same flush.
    - A lot referenced by either kind of draw cannot be physically deleted
      (db/immutability.py).

Failure modes:
    - IntegrityError when a remaining quantity would go negative or exceed
      the initial quantity.

Audit relevance:
    Consumption rows are the evidence for every sale line's cost: which
    lot, how many units, at what unit cost.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
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


class LotSource(str, Enum):
    """Kind of stock event that created a lot."""

    PURCHASE = "purchase"
    OPENING_STOCK = "opening_stock"
    RETURN = "return"
    TRANSFER_IN = "transfer_in"


class StockLot(TimestampedBase):
    """
    A quantity of one product acquired at one unit cost on one date.

    Contract:
        unit_cost and initial_quantity describe the acquisition and only
        change through an explicit revision (edited purchase or opening
        balance).  remaining_quantity is decremented by consumption and
        restored by release.

    Guarantees:
        - sequence is allocated from the "stock_lot" counter and breaks
          lot_date ties in creation order.
        - A retired lot is never eligible for consumption.

    Non-goals:
        - Does NOT know which sale lines drew from it (see
          StockLotConsumption).
    """

    __tablename__ = "stock_lots"

    __table_args__ = (
        CheckConstraint(
            "initial_quantity > 0",
            name="ck_stock_lots_initial_positive",
        ),
        CheckConstraint(
            "remaining_quantity >= 0 AND remaining_quantity <= initial_quantity",
            name="ck_stock_lots_remaining_bounds",
        ),
        CheckConstraint(
            "unit_cost >= 0",
            name="ck_stock_lots_unit_cost_non_negative",
        ),
        # Query: eligible lots for a product in FIFO order
        Index("idx_stock_lot_fifo", "product_id", "lot_date", "sequence"),
        # Query: lots created by one source document
        Index("idx_stock_lot_source", "source", "source_ref"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    source: Mapped[LotSource] = mapped_column(
        String(20),
        nullable=False,
    )

    # Reference of the purchase, return or transfer document
    source_ref: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    lot_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    initial_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    remaining_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    retired: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    retired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def consumed_quantity(self) -> Decimal:
        return self.initial_quantity - self.remaining_quantity

    def __repr__(self) -> str:
        return (
            f"<StockLot {self.source} {self.lot_date} #{self.sequence}: "
            f"{self.remaining_quantity}/{self.initial_quantity} @ {self.unit_cost}>"
        )


class StockLotConsumption(TimestampedBase):
    """
    Units of one lot drawn by one sale line.

    Contract:
        Written by the FIFO consumer, one row per lot touched by a sale
        line.  Deleted (with the lot's remaining quantity restored) when the
        sale line is released for replay, revision or deletion.

    Guarantees:
        - quantity > 0.
        - unit_cost is the lot's unit cost at consumption time.
        - total_cost = quantity * unit_cost, quantized to 9 places.
    """

    __tablename__ = "stock_lot_consumptions"

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_stock_lot_consumptions_quantity_positive",
        ),
        # Query: release all consumptions of a sale line
        Index("idx_consumption_sale_line", "sale_line_id"),
        # Query: consumers of a lot (revision, retirement, deletion guard)
        Index("idx_consumption_lot", "lot_id"),
        Index("idx_consumption_product", "product_id"),
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_lots.id"),
        nullable=False,
    )

    sale_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sale_lines.id"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    total_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StockLotConsumption lot={self.lot_id} line={self.sale_line_id}: {self.quantity}>"


class SupplierReturnConsumption(TimestampedBase):
    """
    Units of one lot sent back to the supplier under one return document.

    Contract:
        Written when goods are returned to a supplier (debit note), one row
        per lot drawn, oldest lot first.  Deleted, with the lot's remaining
        quantity restored, when the return is cancelled.

    Guarantees:
        - quantity > 0.
        - unit_cost is the lot's unit cost at the time of the return.
        - Never released by a recalculation cascade: units returned to the
          supplier stay out of the lot while sale lines are replayed.
    """

    __tablename__ = "supplier_return_consumptions"

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_supplier_return_consumptions_quantity_positive",
        ),
        # Query: release all draws of one return document
        Index("idx_supplier_return_ref", "return_ref"),
        Index("idx_supplier_return_lot", "lot_id"),
        Index("idx_supplier_return_product", "product_id"),
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_lots.id"),
        nullable=False,
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    # Debit note or supplier return document
    return_ref: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    return_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    unit_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    total_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SupplierReturnConsumption lot={self.lot_id} ref={self.return_ref}: {self.quantity}>"
