"""
Module: costing_kernel.selectors.cost_audit_selector
Responsibility: Filtered, paginated read access to the cost audit log.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Results are returned in recording order (ascending sequence).
    - total counts every entry matching the filter, independent of paging.

Failure modes:
    - ValueError on a negative offset or a non-positive limit.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from costing_kernel.models.cost_audit_log import CostAuditLogEntry, CostChangeReason
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class CostAuditFilter:
    """
    Optional criteria combined with AND.

    recorded_from / recorded_to bound recorded_at inclusively.
    """

    product_id: UUID | None = None
    sale_line_id: UUID | None = None
    recorded_from: datetime | None = None
    recorded_to: datetime | None = None


@dataclass(frozen=True)
class PageRequest:
    offset: int = 0
    limit: int = 50

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")
        if self.limit <= 0:
            raise ValueError(f"limit must be > 0, got {self.limit}")


@dataclass(frozen=True)
class CostAuditRecord:
    """Data transfer object for one cost audit entry."""

    id: UUID
    product_id: UUID
    sale_line_id: UUID
    old_cost: Decimal
    new_cost: Decimal
    delta: Decimal
    reason: CostChangeReason
    trigger_description: str | None
    recorded_at: datetime
    sequence: int


@dataclass(frozen=True)
class CostAuditPage:
    records: tuple[CostAuditRecord, ...]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total


class CostAuditSelector(BaseSelector[CostAuditLogEntry]):
    """
    Selector for cost audit queries.

    Guarantees:
        - Read-only.
        - Ordering by CostAuditLogEntry.sequence.
    """

    @staticmethod
    def to_record(entry: CostAuditLogEntry) -> CostAuditRecord:
        """Convert ORM model to DTO."""
        return CostAuditRecord(
            id=entry.id,
            product_id=entry.product_id,
            sale_line_id=entry.sale_line_id,
            old_cost=entry.old_cost,
            new_cost=entry.new_cost,
            delta=entry.delta,
            reason=CostChangeReason(entry.reason),
            trigger_description=entry.trigger_description,
            recorded_at=entry.recorded_at,
            sequence=entry.sequence,
        )

    def query(
        self,
        audit_filter: CostAuditFilter | None = None,
        page: PageRequest | None = None,
    ) -> CostAuditPage:
        audit_filter = audit_filter or CostAuditFilter()
        page = page or PageRequest()

        conditions = []
        if audit_filter.product_id is not None:
            conditions.append(CostAuditLogEntry.product_id == audit_filter.product_id)
        if audit_filter.sale_line_id is not None:
            conditions.append(CostAuditLogEntry.sale_line_id == audit_filter.sale_line_id)
        if audit_filter.recorded_from is not None:
            conditions.append(CostAuditLogEntry.recorded_at >= audit_filter.recorded_from)
        if audit_filter.recorded_to is not None:
            conditions.append(CostAuditLogEntry.recorded_at <= audit_filter.recorded_to)

        total = self.session.execute(
            select(func.count()).select_from(CostAuditLogEntry).where(*conditions)
        ).scalar_one()

        records = self._all(
            select(CostAuditLogEntry)
            .where(*conditions)
            .order_by(CostAuditLogEntry.sequence)
            .offset(page.offset)
            .limit(page.limit),
            self.to_record,
        )

        return CostAuditPage(
            records=tuple(records),
            total=total,
            offset=page.offset,
            limit=page.limit,
        )

    def for_sale_line(self, sale_line_id: UUID) -> list[CostAuditRecord]:
        """Full cost history of one sale line, oldest first."""
        return self._all(
            select(CostAuditLogEntry)
            .where(CostAuditLogEntry.sale_line_id == sale_line_id)
            .order_by(CostAuditLogEntry.sequence),
            self.to_record,
        )
