"""
costing_services.recalculation -- Replay a product's sale timeline from a date.

Responsibility:
    When an event is inserted, edited or deleted behind already-costed
    sales, unwind every sale line of the product dated on or after the
    event, replay them through the FIFO consumer in timeline order, and
    record every resulting cost change in the cost audit log.

Architecture position:
    Services.  Composes FifoConsumer and CostAuditLog.  Never calls the
    stock event constructors, so a replay cannot trigger another replay.

Invariants enforced:
    - Replay order is (sale_date, sequence): same-date lines replay in
      creation order, so repeated runs see identical lot states.
    - Idempotent: with no intervening change a second run computes the
      same costs, writes no audit entries and updates no line.
    - Atomic with the caller's transaction.  Nothing is committed here;
      a persistence failure surfaces as TransactionFailureError and the
      caller's rollback discards every partial write.
    - Lines costed for the first time get their cost without an audit
      entry.  Only changes to an already-costed line are audited.
    - Supplier return draws are never released.  Units sent back to the
      supplier stay out of their lots while the sale lines are replayed.

Failure modes:
    - ProductNotFoundError for an unknown product.
    - ProductLockTimeoutError when another transaction holds the product.
    - TransactionFailureError wrapping any SQLAlchemyError.

Audit relevance:
    Each replay is logged with reason, start date, lines replayed, audit
    entries written and duration.  The per-line old/new costs are in the
    returned RecalculationResult and, for changed lines, in the audit log.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from costing_kernel.db.types import ZERO
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import ProductNotFoundError, TransactionFailureError
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.services.product_lock import ProductLockService
from costing_services.cost_audit_log import CostAuditLog
from costing_services.fifo_consumer import FifoConsumer

logger = get_logger("services.recalculation")


@dataclass(frozen=True)
class LineOutcome:
    """What the replay did to one sale line."""

    sale_line_id: UUID
    sale_date: date
    old_cost: Decimal | None
    new_cost: Decimal
    warnings: tuple[str, ...]

    @property
    def changed(self) -> bool:
        return self.old_cost is not None and self.old_cost != self.new_cost


@dataclass(frozen=True)
class RecalculationResult:
    product_id: UUID
    from_date: date
    reason: CostChangeReason
    skipped: bool
    lines: tuple[LineOutcome, ...] = ()
    quantity_restored: Decimal = ZERO
    audit_entries: int = 0
    duration_ms: float = 0.0

    @property
    def lines_recalculated(self) -> int:
        return len(self.lines)

    @property
    def changed_lines(self) -> tuple[LineOutcome, ...]:
        return tuple(line for line in self.lines if line.changed)

    @property
    def warnings(self) -> tuple[str, ...]:
        return tuple(w for line in self.lines for w in line.warnings)


class RecalculationCascade:
    """
    Unwinds and replays a product's sale lines from a date.

    Contract:
        Receives Session, FifoConsumer, CostAuditLog, ProductLockService
        and Clock via constructor injection.  Only flushes.
    """

    def __init__(
        self,
        session: Session,
        consumer: FifoConsumer,
        audit_log: CostAuditLog,
        lock_service: ProductLockService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._consumer = consumer
        self._audit_log = audit_log
        self._locks = lock_service
        self._clock = clock or SystemClock()

    def recalculate_from(
        self,
        product_id: UUID,
        from_date: date,
        reason: CostChangeReason | str = CostChangeReason.RECALCULATION,
        trigger_description: str | None = None,
    ) -> RecalculationResult:
        """
        Replay every sale line of ``product_id`` dated on or after ``from_date``.

        Raises:
            ProductNotFoundError: unknown product.
            TransactionFailureError: the persistence layer failed mid-replay.
        """
        reason = CostChangeReason(reason)
        t0 = time.monotonic()

        with LogContext.bind(product_id=product_id):
            self._locks.acquire(product_id)
            if self._session.get(Product, product_id) is None:
                logger.error("product_not_found", extra={"product_id": str(product_id)})
                raise ProductNotFoundError(str(product_id))

            try:
                result = self._replay(product_id, from_date, reason, trigger_description, t0)
            except SQLAlchemyError as exc:
                logger.error("recalculation_failed", extra={
                    "product_id": str(product_id),
                    "from_date": from_date.isoformat(),
                    "reason": reason.value,
                }, exc_info=True)
                raise TransactionFailureError(
                    "recalculate_from", str(product_id), str(exc)
                ) from exc

        return result

    def _replay(
        self,
        product_id: UUID,
        from_date: date,
        reason: CostChangeReason,
        trigger_description: str | None,
        t0: float,
    ) -> RecalculationResult:
        affected = self._session.execute(
            select(func.count())
            .select_from(SaleLine)
            .where(SaleLine.product_id == product_id, SaleLine.sale_date >= from_date)
        ).scalar_one()

        if affected == 0:
            logger.info("recalculation_skipped", extra={
                "product_id": str(product_id),
                "from_date": from_date.isoformat(),
                "reason": reason.value,
            })
            return RecalculationResult(
                product_id=product_id,
                from_date=from_date,
                reason=reason,
                skipped=True,
                duration_ms=round((time.monotonic() - t0) * 1000, 2),
            )

        logger.info("recalculation_started", extra={
            "product_id": str(product_id),
            "from_date": from_date.isoformat(),
            "reason": reason.value,
            "sale_lines": affected,
        })

        previous: dict[UUID, Decimal | None] = {
            line.id: line.cost_of_goods_sold if line.is_costed else None
            for line in self._timeline(product_id, from_date)
        }

        # Unwind every consumption before replaying any line
        restored = ZERO
        for sale_line_id in previous:
            restored += self._consumer.release(sale_line_id)

        outcomes: list[LineOutcome] = []
        audit_entries = 0
        for line in self._timeline(product_id, from_date):
            consumption = self._consumer.consume(
                product_id, line.quantity, line.id, line.sale_date
            )
            old_cost = previous[line.id]
            new_cost = consumption.total_cost

            if old_cost is None:
                line.cost_of_goods_sold = new_cost
                line.costed_at = self._clock.now()
            elif new_cost != old_cost:
                self._audit_log.record(
                    product_id=product_id,
                    sale_line_id=line.id,
                    old_cost=old_cost,
                    new_cost=new_cost,
                    reason=reason,
                    trigger_description=trigger_description,
                )
                line.cost_of_goods_sold = new_cost
                audit_entries += 1

            outcomes.append(
                LineOutcome(
                    sale_line_id=line.id,
                    sale_date=line.sale_date,
                    old_cost=old_cost,
                    new_cost=new_cost,
                    warnings=consumption.warnings,
                )
            )

        self._session.flush()

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info("recalculation_completed", extra={
            "product_id": str(product_id),
            "from_date": from_date.isoformat(),
            "reason": reason.value,
            "lines_recalculated": len(outcomes),
            "quantity_restored": str(restored),
            "audit_entries": audit_entries,
            "duration_ms": duration_ms,
        })

        return RecalculationResult(
            product_id=product_id,
            from_date=from_date,
            reason=reason,
            skipped=False,
            lines=tuple(outcomes),
            quantity_restored=restored,
            audit_entries=audit_entries,
            duration_ms=duration_ms,
        )

    def _timeline(self, product_id: UUID, from_date: date) -> list[SaleLine]:
        return list(
            self._session.execute(
                select(SaleLine)
                .where(SaleLine.product_id == product_id, SaleLine.sale_date >= from_date)
                .order_by(SaleLine.sale_date, SaleLine.sequence)
            ).scalars().all()
        )
