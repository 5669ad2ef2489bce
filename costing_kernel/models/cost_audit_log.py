"""
Module: costing_kernel.models.cost_audit_log
Responsibility: ORM persistence for the append-only record of cost changes
    made to already-costed sale lines.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only.  ORM listeners (db/immutability.py) raise
      ImmutabilityViolationError on any UPDATE or DELETE.
    - delta = new_cost - old_cost.
    - sale_line_id carries no foreign key, so an entry outlives the deletion
      of the line it describes.
    - sequence (from the "cost_audit" counter) gives recording order.

Audit relevance:
    Answers "why did the COGS of this line change after it was first
    posted": which event, on which date, from what to what.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import Base, UUIDString


class CostChangeReason(str, Enum):
    """Why a sale line's cost was recomputed."""

    BACKDATED_PURCHASE = "backdated_purchase"
    BACKDATED_INVOICE = "backdated_invoice"
    RECALCULATION = "recalculation"
    ZERO_COGS_FIX = "zero_cogs_fix"
    MANUAL = "manual"


class CostAuditLogEntry(Base):
    """
    One cost change of one sale line.

    Contract:
        Written by the recalculation cascade when a previously costed line
        receives a different cost.  Never modified afterwards.
    """

    __tablename__ = "cost_audit_log"

    __table_args__ = (
        Index("idx_cost_audit_product", "product_id", "sequence"),
        Index("idx_cost_audit_sale_line", "sale_line_id"),
        Index("idx_cost_audit_recorded_at", "recorded_at"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )

    sale_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    old_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    new_cost: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    delta: Mapped[Decimal] = mapped_column(
        Numeric(38, 9),
        nullable=False,
    )

    reason: Mapped[CostChangeReason] = mapped_column(
        String(30),
        nullable=False,
    )

    trigger_description: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    sequence: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    def __repr__(self) -> str:
        return f"<CostAuditLogEntry #{self.sequence} {self.reason}: {self.old_cost} -> {self.new_cost}>"
