"""
costing_services.supplier_returns -- Goods sent back to the supplier.

Responsibility:
    Remove returned units from a product's lots when a purchase return
    (debit note) is posted, oldest lot first, and put them back exactly
    when the return is cancelled.  Also answer whether a return of a
    given size is possible before it is posted.

Architecture position:
    Services.  Composes FifoConsumer for lot eligibility, the pure
    ``allocate_fifo`` for the draw plan, and RecalculationCascade for
    the replay a cancellation may require.

Invariants enforced:
    - Unlike a sale, a supplier return never draws phantom stock: a
      shortfall raises InsufficientStockError before anything is written.
    - Conservation: each draw decrements its lot by exactly the quantity
      written to its SupplierReturnConsumption row, in one flush, and a
      cancellation restores exactly those quantities.
    - The cascade never releases supplier return draws, so replayed sale
      lines only see what is left after the return.
    - One return document draws once.  Posting the same reference twice
      raises ValueError.

Failure modes:
    - InvalidQuantityError for quantity <= 0 or not a storable number.
    - InsufficientStockError when eligible stock is short.
    - ProductNotFoundError, SupplierReturnNotFoundError.
    - ProductLockTimeoutError when another transaction holds the product.

Audit relevance:
    The draw rows record which lots went back, how many units and at what
    unit cost.  Posting and cancellation are logged with product, return
    reference, quantities and duration.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingPolicy
from costing_engines.fifo import LotDraw, allocate_fifo
from costing_kernel.db.types import ZERO, parse_quantity, round_money
from costing_kernel.exceptions import (
    InsufficientStockError,
    ProductNotFoundError,
    SupplierReturnNotFoundError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.stock_lot import StockLot, SupplierReturnConsumption
from costing_kernel.services.product_lock import ProductLockService
from costing_services.backdating import BackdatingDetector
from costing_services.fifo_consumer import FifoConsumer, lot_position
from costing_services.recalculation import RecalculationCascade, RecalculationResult

logger = get_logger("services.supplier_returns")


@dataclass(frozen=True)
class ReturnableStock:
    """Eligible stock measured against a proposed return."""

    product_id: UUID
    requested: Decimal
    available: Decimal

    @property
    def can_return(self) -> bool:
        return self.available >= self.requested

    @property
    def shortfall(self) -> Decimal:
        return max(self.requested - self.available, ZERO)


@dataclass(frozen=True)
class SupplierReturnResult:
    return_ref: str
    product_id: UUID
    return_date: date
    quantity: Decimal
    draws: tuple[LotDraw, ...]

    @property
    def total_cost(self) -> Decimal:
        return sum((d.total_cost for d in self.draws), ZERO)

    @property
    def unit_cost(self) -> Decimal:
        return round_money(self.total_cost / self.quantity)


@dataclass(frozen=True)
class SupplierReturnRelease:
    return_ref: str
    product_id: UUID
    quantity_restored: Decimal
    recalculation: RecalculationResult | None = None


class SupplierReturnService:
    """
    Posts and cancels returns of purchased goods to the supplier.

    Contract:
        Receives its collaborators via constructor injection.  Only
        flushes; the caller owns the transaction.

    Guarantees:
        - ``consume_for_supplier_return`` either draws the full quantity
          or writes nothing.
        - ``release_supplier_return`` restores exactly what was drawn.

    Non-goals:
        - Does NOT price the debit note; the draw costs are evidence only.
        - Does NOT change the product fallback cost.
    """

    def __init__(
        self,
        session: Session,
        lock_service: ProductLockService,
        consumer: FifoConsumer,
        detector: BackdatingDetector,
        cascade: RecalculationCascade,
        policy: CostingPolicy | None = None,
    ):
        self._session = session
        self._locks = lock_service
        self._consumer = consumer
        self._detector = detector
        self._cascade = cascade
        self._policy = policy or CostingPolicy()

    def check_returnable_stock(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        as_of_date: date | None = None,
    ) -> ReturnableStock:
        """
        Compare ``quantity`` with the stock a return dated ``as_of_date``
        could draw.  Without a date every active lot counts.  Read only.
        """
        quantity = parse_quantity(quantity, "supplier return check")
        self._get_product(product_id)

        lots = self._consumer.eligible_lots(product_id, as_of_date or date.max, for_update=False)
        available = sum((lot.remaining_quantity for lot in lots), ZERO)
        return ReturnableStock(product_id=product_id, requested=quantity, available=available)

    def consume_for_supplier_return(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        return_ref: str,
        return_date: date,
    ) -> SupplierReturnResult:
        """
        Draw ``quantity`` of the product from its lots, oldest first, for
        the return document ``return_ref``.

        Raises:
            InvalidQuantityError: quantity <= 0, not finite or over 9 decimals.
            InsufficientStockError: eligible lots hold less than ``quantity``.
            ProductNotFoundError: unknown product.
            ValueError: empty ``return_ref`` or one that already has draws.
        """
        t0 = time.monotonic()
        quantity = parse_quantity(quantity, "supplier return")
        if not return_ref:
            raise ValueError("A supplier return needs a return_ref")

        with LogContext.bind(product_id=product_id):
            self._locks.acquire(product_id)
            self._get_product(product_id)
            if self._draws_of(return_ref):
                logger.error("supplier_return_already_posted", extra={
                    "return_ref": return_ref,
                })
                raise ValueError(f"Supplier return {return_ref} has already been posted")

            lots = self._consumer.eligible_lots(product_id, return_date, for_update=True)
            allocation = allocate_fifo((lot_position(lot) for lot in lots), quantity)
            if allocation.is_short:
                logger.warning("supplier_return_insufficient_stock", extra={
                    "return_ref": return_ref,
                    "requested_quantity": str(quantity),
                    "available_quantity": str(allocation.available_quantity),
                    "shortfall_quantity": str(allocation.shortfall),
                })
                raise InsufficientStockError(
                    str(product_id), str(quantity), str(allocation.available_quantity)
                )

            lots_by_id = {lot.id: lot for lot in lots}
            for draw in allocation.draws:
                lots_by_id[draw.lot_id].remaining_quantity = draw.remaining_after
                self._session.add(
                    SupplierReturnConsumption(
                        lot_id=draw.lot_id,
                        product_id=product_id,
                        return_ref=return_ref,
                        return_date=return_date,
                        quantity=draw.quantity,
                        unit_cost=draw.unit_cost,
                        total_cost=draw.total_cost,
                    )
                )
            self._session.flush()

            result = SupplierReturnResult(
                return_ref=return_ref,
                product_id=product_id,
                return_date=return_date,
                quantity=quantity,
                draws=allocation.draws,
            )
            logger.info("supplier_return_posted", extra={
                "return_ref": return_ref,
                "return_date": return_date.isoformat(),
                "quantity": str(quantity),
                "lots_touched": len(result.draws),
                "total_cost": str(result.total_cost),
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            })
        return result

    def release_supplier_return(self, return_ref: str) -> SupplierReturnRelease:
        """
        Cancel a posted return: put every drawn unit back in its lot and
        replay later sales when the restored stock could have supplied them.

        Raises:
            SupplierReturnNotFoundError: nothing was drawn under ``return_ref``.
        """
        draws = self._draws_of(return_ref)
        if not draws:
            logger.error("supplier_return_not_found", extra={"return_ref": return_ref})
            raise SupplierReturnNotFoundError(return_ref)

        product_id = draws[0].product_id
        with LogContext.bind(product_id=product_id):
            self._locks.acquire(product_id)
            draws = self._draws_of(return_ref)

            lots = {
                lot.id: lot
                for lot in self._session.execute(
                    select(StockLot)
                    .where(StockLot.id.in_({d.lot_id for d in draws}))
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalars()
            }

            restored = ZERO
            for draw in draws:
                lots[draw.lot_id].remaining_quantity += draw.quantity
                restored += draw.quantity
                self._session.delete(draw)
            self._session.flush()

            logger.info("supplier_return_released", extra={
                "return_ref": return_ref,
                "draws_removed": len(draws),
                "quantity_restored": str(restored),
            })

            earliest = min(lot.lot_date for lot in lots.values())
            recalculation = self._replay_if_needed(product_id, earliest, return_ref)

        return SupplierReturnRelease(
            return_ref=return_ref,
            product_id=product_id,
            quantity_restored=restored,
            recalculation=recalculation,
        )

    def _replay_if_needed(
        self,
        product_id: UUID,
        lot_date: date,
        return_ref: str,
    ) -> RecalculationResult | None:
        start = None
        if self._detector.is_backdated(
            product_id, lot_date, include_same_day=self._policy.same_day_lots_eligible
        ):
            start = lot_date
        if self._policy.repair_zero_cost_sales:
            zero_cost_line = self._detector.find_earliest_zero_cost_sale_line(product_id)
            if zero_cost_line is not None:
                start = zero_cost_line.sale_date if start is None else min(start, zero_cost_line.sale_date)
        if start is None:
            return None

        return self._cascade.recalculate_from(
            product_id,
            start,
            CostChangeReason.RECALCULATION,
            f"Supplier return {return_ref} cancelled",
        )

    def _draws_of(self, return_ref: str) -> list[SupplierReturnConsumption]:
        return list(
            self._session.execute(
                select(SupplierReturnConsumption)
                .where(SupplierReturnConsumption.return_ref == return_ref)
            ).scalars().all()
        )

    def _get_product(self, product_id: UUID) -> Product:
        product = self._session.get(Product, product_id)
        if product is None:
            logger.error("product_not_found", extra={"product_id": str(product_id)})
            raise ProductNotFoundError(str(product_id))
        return product
