"""
costing_services.sales -- Costing entry points for sold lines.

Responsibility:
    Record, revise and delete the engine's sale lines (invoice, POS and
    quotation-conversion lines) and keep their cost of goods sold current.
    A line entered in date order is costed once through the FIFO consumer;
    a line entered behind already-costed sales triggers a replay.

Architecture position:
    Services.  Composes FifoConsumer, BackdatingDetector and
    RecalculationCascade.

Invariants enforced:
    - Every recorded line leaves this module costed (costed_at set).
    - Editing or deleting a line first releases its consumptions, then
      replays from the earlier of the old and new dates so later lines
      pick up the freed or taken stock.
    - Warnings are returned to the caller, never raised.

Failure modes:
    - InvalidQuantityError, ProductNotFoundError, SaleLineNotFoundError.
    - ProductLockTimeoutError, TransactionFailureError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from costing_engines.fifo import ConsumptionResult
from costing_kernel.db.types import parse_quantity
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import (
    ProductNotFoundError,
    SaleLineNotFoundError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.services.product_lock import ProductLockService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.backdating import BackdatingDetector
from costing_services.fifo_consumer import FifoConsumer
from costing_services.recalculation import RecalculationCascade, RecalculationResult

logger = get_logger("services.sales")


@dataclass(frozen=True)
class SaleCostingResult:
    """Cost assigned to one sale line and how it was obtained."""

    sale_line_id: UUID
    product_id: UUID
    sale_date: date
    quantity: Decimal
    cost_of_goods_sold: Decimal
    warnings: tuple[str, ...] = ()
    consumption: ConsumptionResult | None = None
    recalculation: RecalculationResult | None = None

    @property
    def replayed(self) -> bool:
        return self.recalculation is not None and not self.recalculation.skipped


class SaleLineService:
    """
    Records and maintains costed sale lines.

    Contract:
        Receives its collaborators via constructor injection.  Only
        flushes; the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        sequence_service: SequenceService,
        lock_service: ProductLockService,
        consumer: FifoConsumer,
        detector: BackdatingDetector,
        cascade: RecalculationCascade,
        clock: Clock | None = None,
    ):
        self._session = session
        self._sequences = sequence_service
        self._locks = lock_service
        self._consumer = consumer
        self._detector = detector
        self._cascade = cascade
        self._clock = clock or SystemClock()

    def record_sale_line(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        sale_date: date,
        document_ref: str | None = None,
    ) -> SaleCostingResult:
        """
        Create a sale line and cost it.

        Raises:
            InvalidQuantityError: quantity <= 0, not finite or over 9 decimals.
            ProductNotFoundError: unknown product.
        """
        quantity = parse_quantity(quantity, "sale line")
        self._locks.acquire(product_id)
        if self._session.get(Product, product_id) is None:
            logger.error("product_not_found", extra={"product_id": str(product_id)})
            raise ProductNotFoundError(str(product_id))

        backdated = self._detector.is_backdated(product_id, sale_date)

        line = SaleLine(
            product_id=product_id,
            document_ref=document_ref,
            sale_date=sale_date,
            sequence=self._sequences.next_value(SequenceService.SALE_LINE),
            quantity=quantity,
            cost_of_goods_sold=Decimal("0"),
        )
        self._session.add(line)
        self._session.flush()

        with LogContext.bind(product_id=product_id, sale_line_id=line.id):
            if backdated:
                logger.info("sale_line_backdated", extra={
                    "sale_line_id": str(line.id),
                    "sale_date": sale_date.isoformat(),
                })
                recalculation = self._cascade.recalculate_from(
                    product_id,
                    sale_date,
                    CostChangeReason.BACKDATED_INVOICE,
                    f"Sale {document_ref or line.id} dated {sale_date.isoformat()}",
                )
                return self._result(line, recalculation=recalculation)

            consumption = self._consumer.consume(product_id, quantity, line.id, sale_date)
            line.cost_of_goods_sold = consumption.total_cost
            line.costed_at = self._clock.now()
            self._session.flush()

            logger.info("sale_line_costed", extra={
                "sale_line_id": str(line.id),
                "cost_of_goods_sold": str(line.cost_of_goods_sold),
                "used_fallback_cost": consumption.used_fallback_cost,
            })
            return self._result(line, consumption=consumption)

    def revise_sale_line(
        self,
        sale_line_id: UUID,
        quantity: Decimal | int | str | None = None,
        sale_date: date | None = None,
    ) -> SaleCostingResult:
        """
        Apply an edit of the owning document and replay from the earlier
        of the old and new dates.

        Raises:
            SaleLineNotFoundError, InvalidQuantityError.
        """
        line = self._get_line(sale_line_id)
        new_quantity = None if quantity is None else parse_quantity(quantity, "sale line revision")

        self._locks.acquire(line.product_id)
        old_date = line.sale_date
        self._consumer.release(line.id)

        if new_quantity is not None:
            line.quantity = new_quantity
        if sale_date is not None:
            line.sale_date = sale_date
        self._session.flush()

        logger.info("sale_line_revised", extra={
            "sale_line_id": str(line.id),
            "product_id": str(line.product_id),
            "old_sale_date": old_date.isoformat(),
            "new_sale_date": line.sale_date.isoformat(),
            "quantity": str(line.quantity),
        })

        recalculation = self._cascade.recalculate_from(
            line.product_id,
            self._detector.recalculation_start_date(old_date, line.sale_date),
            CostChangeReason.RECALCULATION,
            f"Sale {line.document_ref or line.id} revised",
        )
        return self._result(line, recalculation=recalculation)

    def delete_sale_line(self, sale_line_id: UUID) -> RecalculationResult:
        """
        Remove a sale line and hand its stock back to later sales.

        Raises:
            SaleLineNotFoundError.
        """
        line = self._get_line(sale_line_id)
        product_id = line.product_id
        sale_date = line.sale_date
        trigger = f"Sale {line.document_ref or line.id} deleted"

        self._locks.acquire(product_id)
        self._consumer.release(line.id)
        self._session.delete(line)
        self._session.flush()

        logger.info("sale_line_deleted", extra={
            "sale_line_id": str(sale_line_id),
            "product_id": str(product_id),
            "sale_date": sale_date.isoformat(),
        })

        return self._cascade.recalculate_from(
            product_id, sale_date, CostChangeReason.RECALCULATION, trigger
        )

    def _get_line(self, sale_line_id: UUID) -> SaleLine:
        line = self._session.get(SaleLine, sale_line_id)
        if line is None:
            logger.error("sale_line_not_found", extra={"sale_line_id": str(sale_line_id)})
            raise SaleLineNotFoundError(str(sale_line_id))
        return line

    @staticmethod
    def _result(
        line: SaleLine,
        consumption: ConsumptionResult | None = None,
        recalculation: RecalculationResult | None = None,
    ) -> SaleCostingResult:
        warnings: tuple[str, ...] = consumption.warnings if consumption else ()
        if recalculation is not None:
            for outcome in recalculation.lines:
                if outcome.sale_line_id == line.id:
                    warnings = outcome.warnings
        return SaleCostingResult(
            sale_line_id=line.id,
            product_id=line.product_id,
            sale_date=line.sale_date,
            quantity=line.quantity,
            cost_of_goods_sold=line.cost_of_goods_sold,
            warnings=warnings,
            consumption=consumption,
            recalculation=recalculation,
        )
