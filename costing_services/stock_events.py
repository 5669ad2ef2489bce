"""
costing_services.stock_events -- Stock lot constructors and lot maintenance.

Responsibility:
    Turn inbound stock events (purchase, opening stock, customer return,
    transfer in) into stock lots, keep the product's fallback cost current,
    and decide whether the product's sale timeline must be replayed.
    Also revise and retire existing lots when their source document is
    edited or deleted.

Architecture position:
    Services.  The only entry point that creates lots.  Composes
    BackdatingDetector and RecalculationCascade; the cascade never calls
    back into this module.

Invariants enforced:
    - quantity > 0 and unit cost >= 0 for every lot.
    - Purchases and opening stock overwrite the product fallback cost
      (last writer wins, stamped with clock time and lot id).  Returns and
      transfers never touch it.
    - Replay runs when a costed sale line is dated after the lot, or when
      zero-cost repair is enabled and a costed zero-cost line exists.  It
      starts from the earlier of the applicable dates.
    - A lot is physically deleted only once no sale consumption or
      supplier return draw references it.
    - Same-day purchases count as backdated when same-day lots are
      eligible, so a sale costed earlier that day is replayed.

Failure modes:
    - InvalidQuantityError / InvalidCostError on bad inputs.
    - ProductNotFoundError, StockLotNotFoundError, SaleLineNotFoundError.
    - LotRetiredError when revising or retiring a retired lot.
    - ProductLockTimeoutError, TransactionFailureError from the cascade.

Audit relevance:
    Lot creation, fallback changes and replay decisions are logged with
    product, lot, dates and reason.  Cost changes themselves are recorded
    by the cascade in the cost audit log.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from costing_config.schema import CostingPolicy
from costing_kernel.db.types import ZERO, parse_quantity, parse_unit_cost, round_money
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import (
    InvalidQuantityError,
    LotRetiredError,
    ProductNotFoundError,
    SaleLineNotFoundError,
    StockLotNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import (
    LotSource,
    StockLot,
    StockLotConsumption,
    SupplierReturnConsumption,
)
from costing_kernel.services.product_lock import ProductLockService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.backdating import BackdatingDetector
from costing_services.fifo_consumer import FifoConsumer
from costing_services.recalculation import RecalculationCascade, RecalculationResult

logger = get_logger("services.stock_events")

_SETS_FALLBACK = (LotSource.PURCHASE, LotSource.OPENING_STOCK)

_LABELS = {
    LotSource.PURCHASE: "Purchase",
    LotSource.OPENING_STOCK: "Opening stock",
    LotSource.RETURN: "Return",
    LotSource.TRANSFER_IN: "Transfer in",
}


@dataclass(frozen=True)
class StockEventResult:
    """Lot created (or revised) by a stock event and any replay it caused."""

    lot_id: UUID
    product_id: UUID
    source: LotSource
    lot_date: date
    quantity: Decimal
    unit_cost: Decimal
    fallback_unit_cost: Decimal | None = None
    recalculation: RecalculationResult | None = None

    @property
    def recalculated(self) -> bool:
        return self.recalculation is not None and not self.recalculation.skipped

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.recalculation.warnings if self.recalculation else ()


@dataclass(frozen=True)
class LotRetirementResult:
    lot_id: UUID
    product_id: UUID
    deleted: bool
    recalculation: RecalculationResult


class StockEventService:
    """
    Creates, revises and retires stock lots.

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
        policy: CostingPolicy | None = None,
    ):
        self._session = session
        self._sequences = sequence_service
        self._locks = lock_service
        self._consumer = consumer
        self._detector = detector
        self._cascade = cascade
        self._clock = clock or SystemClock()
        self._policy = policy or CostingPolicy()

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    def create_lot_from_purchase(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        source_ref: str | None = None,
        list_unit_cost: Decimal | int | str | None = None,
    ) -> StockEventResult:
        """
        Record a purchased lot.

        ``unit_cost`` is the net cost carried by the lot.  ``list_unit_cost``
        (pre-discount price), when given, becomes the fallback cost instead.
        """
        return self._create_lot(
            LotSource.PURCHASE,
            product_id,
            quantity,
            unit_cost,
            lot_date,
            source_ref,
            fallback_override=list_unit_cost,
        )

    def create_lot_from_opening_stock(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        source_ref: str | None = None,
    ) -> StockEventResult:
        return self._create_lot(
            LotSource.OPENING_STOCK, product_id, quantity, unit_cost, lot_date, source_ref
        )

    def create_lot_from_return(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        lot_date: date,
        unit_cost: Decimal | int | str | None = None,
        original_sale_line_id: UUID | None = None,
        source_ref: str | None = None,
    ) -> StockEventResult:
        """
        Record goods returned by a customer.

        Without an explicit ``unit_cost`` the returned units go back at the
        per-unit COGS of ``original_sale_line_id``.

        Raises:
            ValueError: Neither unit_cost nor original_sale_line_id given,
                or the sale line belongs to another product.
            SaleLineNotFoundError: original_sale_line_id is unknown.
        """
        if unit_cost is None:
            if original_sale_line_id is None:
                raise ValueError("A return needs unit_cost or original_sale_line_id")
            line = self._session.get(SaleLine, original_sale_line_id)
            if line is None:
                logger.error("sale_line_not_found", extra={
                    "sale_line_id": str(original_sale_line_id),
                })
                raise SaleLineNotFoundError(str(original_sale_line_id))
            if line.product_id != product_id:
                logger.error("return_product_mismatch", extra={
                    "product_id": str(product_id),
                    "sale_line_id": str(original_sale_line_id),
                    "sale_line_product_id": str(line.product_id),
                })
                raise ValueError(
                    f"Sale line {original_sale_line_id} is for product "
                    f"{line.product_id}, not {product_id}"
                )
            unit_cost = round_money(line.cost_of_goods_sold / line.quantity)

        return self._create_lot(
            LotSource.RETURN, product_id, quantity, unit_cost, lot_date, source_ref
        )

    def create_lot_from_transfer(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        source_ref: str | None = None,
    ) -> StockEventResult:
        return self._create_lot(
            LotSource.TRANSFER_IN, product_id, quantity, unit_cost, lot_date, source_ref
        )

    # ------------------------------------------------------------------
    # Lot maintenance
    # ------------------------------------------------------------------

    def revise_lot(
        self,
        lot_id: UUID,
        quantity: Decimal | int | str | None = None,
        unit_cost: Decimal | int | str | None = None,
        lot_date: date | None = None,
    ) -> StockEventResult:
        """
        Apply an edit of the lot's source document and replay from the
        earlier of the old and new dates.

        Units already returned to the supplier stay drawn: a new quantity
        keeps them out of the remaining balance and may not fall below them.

        Raises:
            StockLotNotFoundError, LotRetiredError, InvalidQuantityError,
            InvalidCostError.
        """
        lot = self._get_lot(lot_id)
        if lot.retired:
            raise LotRetiredError(str(lot_id))

        new_quantity = None if quantity is None else parse_quantity(quantity, "lot revision")
        new_cost = None if unit_cost is None else parse_unit_cost(unit_cost, "lot revision")

        self._locks.acquire(lot.product_id)
        returned = self._returned_to_supplier(lot.id)
        if new_quantity is not None and new_quantity < returned:
            logger.error("lot_revision_below_supplier_returns", extra={
                "lot_id": str(lot.id),
                "new_quantity": str(new_quantity),
                "returned_to_supplier": str(returned),
            })
            raise InvalidQuantityError(
                str(new_quantity), f"lot revision (already returned to supplier: {returned})"
            )

        old_date = lot.lot_date

        for sale_line_id in self._consumers_of(lot.id):
            self._consumer.release(sale_line_id)

        if new_quantity is not None:
            lot.initial_quantity = new_quantity
            lot.remaining_quantity = new_quantity - returned
        if new_cost is not None:
            lot.unit_cost = new_cost
        if lot_date is not None:
            lot.lot_date = lot_date
        self._session.flush()

        product = self._session.get(Product, lot.product_id)
        fallback = None
        if new_cost is not None and product.fallback_cost_lot_id == lot.id:
            fallback = self._update_fallback(product, lot, new_cost)

        logger.info("stock_lot_revised", extra={
            "lot_id": str(lot.id),
            "product_id": str(lot.product_id),
            "old_lot_date": old_date.isoformat(),
            "new_lot_date": lot.lot_date.isoformat(),
            "quantity": str(lot.initial_quantity),
            "unit_cost": str(lot.unit_cost),
        })

        recalculation = self._cascade.recalculate_from(
            lot.product_id,
            self._detector.recalculation_start_date(old_date, lot.lot_date),
            CostChangeReason.RECALCULATION,
            f"{_LABELS[LotSource(lot.source)]} {lot.source_ref or lot.id} revised",
        )

        return self._result(lot, fallback, recalculation)

    def retire_lot(self, lot_id: UUID) -> LotRetirementResult:
        """
        Withdraw a lot whose source document was deleted.

        The lot is flagged retired, the product is replayed from the lot
        date so its consumers draw elsewhere, and the row is then deleted
        unless a supplier return still draws from it.

        Raises:
            StockLotNotFoundError, LotRetiredError.
        """
        lot = self._get_lot(lot_id)
        if lot.retired:
            raise LotRetiredError(str(lot_id))

        self._locks.acquire(lot.product_id)
        lot.retired = True
        lot.retired_at = self._clock.now()
        self._session.flush()

        product_id = lot.product_id
        recalculation = self._cascade.recalculate_from(
            product_id,
            lot.lot_date,
            CostChangeReason.RECALCULATION,
            f"{_LABELS[LotSource(lot.source)]} {lot.source_ref or lot.id} removed",
        )

        deleted = False
        if not self._consumers_of(lot.id) and self._returned_to_supplier(lot.id) == 0:
            self._session.delete(lot)
            self._session.flush()
            deleted = True

        logger.info("stock_lot_retired", extra={
            "lot_id": str(lot_id),
            "product_id": str(product_id),
            "deleted": deleted,
            "lines_recalculated": recalculation.lines_recalculated,
        })
        return LotRetirementResult(
            lot_id=lot_id,
            product_id=product_id,
            deleted=deleted,
            recalculation=recalculation,
        )

    def retire_lots_for_source(
        self,
        source: LotSource | str,
        source_ref: str,
    ) -> list[LotRetirementResult]:
        """Retire every active lot created by one source document."""
        lot_ids = self._session.execute(
            select(StockLot.id)
            .where(
                StockLot.source == LotSource(source).value,
                StockLot.source_ref == source_ref,
                StockLot.retired.is_(False),
            )
            .order_by(StockLot.sequence)
        ).scalars().all()
        return [self.retire_lot(lot_id) for lot_id in lot_ids]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_lot(
        self,
        source: LotSource,
        product_id: UUID,
        quantity: Decimal | int | str,
        unit_cost: Decimal | int | str,
        lot_date: date,
        source_ref: str | None,
        fallback_override: Decimal | int | str | None = None,
    ) -> StockEventResult:
        t0 = time.monotonic()
        context = f"{source.value} lot"
        quantity = parse_quantity(quantity, context)
        unit_cost = parse_unit_cost(unit_cost, context)
        if fallback_override is not None:
            fallback_override = parse_unit_cost(fallback_override, context)

        self._locks.acquire(product_id)
        product = self._session.get(Product, product_id)
        if product is None:
            logger.error("product_not_found", extra={"product_id": str(product_id)})
            raise ProductNotFoundError(str(product_id))

        lot = StockLot(
            product_id=product_id,
            source=source.value,
            source_ref=source_ref,
            lot_date=lot_date,
            sequence=self._sequences.next_value(SequenceService.STOCK_LOT),
            unit_cost=unit_cost,
            initial_quantity=quantity,
            remaining_quantity=quantity,
            retired=False,
        )
        self._session.add(lot)
        self._session.flush()

        logger.info("stock_lot_created", extra={
            "lot_id": str(lot.id),
            "product_id": str(product_id),
            "source": source.value,
            "source_ref": source_ref,
            "lot_date": lot_date.isoformat(),
            "quantity": str(quantity),
            "unit_cost": str(unit_cost),
        })

        fallback = None
        if source in _SETS_FALLBACK:
            fallback = self._update_fallback(
                product, lot, fallback_override if fallback_override is not None else unit_cost
            )

        recalculation = self._replay_if_needed(product_id, lot, source)

        logger.info("stock_event_completed", extra={
            "lot_id": str(lot.id),
            "product_id": str(product_id),
            "source": source.value,
            "recalculated": recalculation is not None,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return self._result(lot, fallback, recalculation)

    def _replay_if_needed(
        self,
        product_id: UUID,
        lot: StockLot,
        source: LotSource,
    ) -> RecalculationResult | None:
        backdated = self._detector.is_backdated(
            product_id, lot.lot_date, include_same_day=self._policy.same_day_lots_eligible
        )
        zero_cost_line = None
        if self._policy.repair_zero_cost_sales:
            zero_cost_line = self._detector.find_earliest_zero_cost_sale_line(product_id)

        if not backdated and zero_cost_line is None:
            return None

        label = f"{_LABELS[source]} {lot.source_ref or lot.id}"
        if backdated:
            start = lot.lot_date
            if source in _SETS_FALLBACK:
                reason = CostChangeReason.BACKDATED_PURCHASE
            else:
                reason = CostChangeReason.RECALCULATION
            trigger = f"{label} dated {lot.lot_date.isoformat()}"
            if zero_cost_line is not None:
                start = min(start, zero_cost_line.sale_date)
        else:
            start = zero_cost_line.sale_date
            reason = CostChangeReason.ZERO_COGS_FIX
            trigger = f"Fixing zero-cost sales with {label}"

        logger.info("stock_event_replay_required", extra={
            "product_id": str(product_id),
            "lot_id": str(lot.id),
            "backdated": backdated,
            "zero_cost_repair": zero_cost_line is not None,
            "from_date": start.isoformat(),
            "reason": reason.value,
        })
        return self._cascade.recalculate_from(product_id, start, reason, trigger)

    def _update_fallback(self, product: Product, lot: StockLot, unit_cost: Decimal) -> Decimal:
        old = product.fallback_unit_cost
        product.fallback_unit_cost = unit_cost
        product.fallback_cost_updated_at = self._clock.now()
        product.fallback_cost_lot_id = lot.id
        self._session.flush()
        logger.info("product_fallback_cost_updated", extra={
            "product_id": str(product.id),
            "lot_id": str(lot.id),
            "old_fallback_unit_cost": str(old),
            "new_fallback_unit_cost": str(unit_cost),
        })
        return unit_cost

    def _consumers_of(self, lot_id: UUID) -> list[UUID]:
        return list(
            self._session.execute(
                select(StockLotConsumption.sale_line_id)
                .where(StockLotConsumption.lot_id == lot_id)
                .distinct()
            ).scalars().all()
        )

    def _returned_to_supplier(self, lot_id: UUID) -> Decimal:
        total = self._session.execute(
            select(func.sum(SupplierReturnConsumption.quantity))
            .where(SupplierReturnConsumption.lot_id == lot_id)
        ).scalar_one()
        return ZERO if total is None else total

    def _get_lot(self, lot_id: UUID) -> StockLot:
        lot = self._session.get(StockLot, lot_id)
        if lot is None:
            logger.error("stock_lot_not_found", extra={"lot_id": str(lot_id)})
            raise StockLotNotFoundError(str(lot_id))
        return lot

    @staticmethod
    def _result(
        lot: StockLot,
        fallback: Decimal | None,
        recalculation: RecalculationResult | None,
    ) -> StockEventResult:
        return StockEventResult(
            lot_id=lot.id,
            product_id=lot.product_id,
            source=LotSource(lot.source),
            lot_date=lot.lot_date,
            quantity=lot.initial_quantity,
            unit_cost=lot.unit_cost,
            fallback_unit_cost=fallback,
            recalculation=recalculation,
        )
