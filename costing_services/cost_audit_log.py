"""
costing_services.cost_audit_log -- Append-only record of sale line cost changes.

Responsibility:
    Write one CostAuditLogEntry per cost change discovered by the
    recalculation cascade, and serve filtered, paginated reads of the log.

Architecture position:
    Services.  Writes through the ORM (so the immutability listeners see
    every entry) and reads through CostAuditSelector.

Invariants enforced:
    - Append only.  There is no update or delete operation here, and
      db/immutability.py rejects any attempted through the ORM.
    - delta = new_cost - old_cost.
    - recorded_at comes from the injected clock; sequence from the
      "cost_audit" counter.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cost_audit_log import CostAuditLogEntry, CostChangeReason
from costing_kernel.selectors.cost_audit_selector import (
    CostAuditFilter,
    CostAuditPage,
    CostAuditSelector,
    PageRequest,
)
from costing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.cost_audit_log")


class CostAuditLog:
    """
    Records and queries cost changes.

    Contract:
        Receives Session, SequenceService and Clock via constructor
        injection.  Only flushes.
    """

    def __init__(
        self,
        session: Session,
        sequence_service: SequenceService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._sequences = sequence_service
        self._clock = clock or SystemClock()
        self._selector = CostAuditSelector(session)

    def record(
        self,
        product_id: UUID,
        sale_line_id: UUID,
        old_cost: Decimal,
        new_cost: Decimal,
        reason: CostChangeReason,
        trigger_description: str | None = None,
    ) -> CostAuditLogEntry:
        entry = CostAuditLogEntry(
            product_id=product_id,
            sale_line_id=sale_line_id,
            old_cost=old_cost,
            new_cost=new_cost,
            delta=new_cost - old_cost,
            reason=CostChangeReason(reason).value,
            trigger_description=trigger_description,
            recorded_at=self._clock.now(),
            sequence=self._sequences.next_value(SequenceService.COST_AUDIT),
        )
        self._session.add(entry)
        self._session.flush()

        logger.info("cost_change_recorded", extra={
            "product_id": str(product_id),
            "sale_line_id": str(sale_line_id),
            "old_cost": str(old_cost),
            "new_cost": str(new_cost),
            "delta": str(entry.delta),
            "reason": entry.reason,
            "sequence": entry.sequence,
        })
        return entry

    def query(
        self,
        audit_filter: CostAuditFilter | None = None,
        page: PageRequest | None = None,
    ) -> CostAuditPage:
        """Entries matching ``audit_filter`` in recording order, one page at a time."""
        return self._selector.query(audit_filter, page)
