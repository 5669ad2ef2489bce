"""
costing_services.fifo_consumer -- FIFO consumption of stock lots by sale lines.

Responsibility:
    Cost one sale line's quantity by drawing from the product's eligible
    lots oldest first, persist one consumption row per lot touched, and
    price any shortfall at the product's fallback unit cost.  Also the
    exact inverse: release a sale line's consumptions back to their lots.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    The allocation itself is the pure ``costing_engines.fifo.allocate_fifo``;
    this module loads lot positions, applies the draws and flushes.

Invariants enforced:
    - Eligible lots: same product, not retired, remaining > 0, dated on or
      before the sale date (strictly before when same-day lots are not
      eligible), ordered (lot_date, sequence), locked FOR UPDATE.
    - Conservation: each draw decrements the lot's remaining quantity by
      exactly the quantity written to its consumption row, in one flush.
    - Stock shortage never raises.  The shortfall is costed at the
      fallback and reported as a warning.
    - The product's timeline lock is held before any lot is read.

Failure modes:
    - InvalidQuantityError for quantity <= 0 or not a storable number.
    - ProductNotFoundError / SaleLineNotFoundError for unknown ids.
    - ProductLockTimeoutError when another transaction holds the product.

Audit relevance:
    Consumption rows are the evidence for every sale line's cost.  Each
    consume and release is logged with product, sale line, quantities and
    duration.
"""

from __future__ import annotations

import time
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingPolicy
from costing_engines.fifo import ConsumptionResult, LotPosition, allocate_fifo
from costing_kernel.db.types import ZERO, parse_quantity
from costing_kernel.exceptions import (
    ProductNotFoundError,
    SaleLineNotFoundError,
)
from costing_kernel.logging_config import get_logger
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import StockLot, StockLotConsumption
from costing_kernel.services.product_lock import ProductLockService

logger = get_logger("services.fifo_consumer")


def lot_position(lot: StockLot) -> LotPosition:
    return LotPosition(
        lot_id=lot.id,
        lot_date=lot.lot_date,
        sequence=lot.sequence,
        unit_cost=lot.unit_cost,
        remaining=lot.remaining_quantity,
    )


class FifoConsumer:
    """
    Consumes and releases stock lots for sale lines.

    Contract:
        Receives Session and ProductLockService via constructor injection.
        Only flushes; the caller owns the transaction.

    Guarantees:
        - ``consume`` returns a ConsumptionResult whose total_cost equals
          the lot cost plus shortfall times fallback cost.
        - ``release`` restores exactly what ``consume`` took.
        - ``preview`` performs no writes and takes no locks.

    Non-goals:
        - Does NOT write the sale line's cost_of_goods_sold; callers do.
        - Does NOT modify the product (fallback cost is read only).
    """

    def __init__(
        self,
        session: Session,
        lock_service: ProductLockService,
        policy: CostingPolicy | None = None,
    ):
        self._session = session
        self._locks = lock_service
        self._policy = policy or CostingPolicy()

    def consume(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        sale_line_id: UUID,
        as_of_date: date,
    ) -> ConsumptionResult:
        """
        Draw ``quantity`` of ``product_id`` for a sale line dated ``as_of_date``.

        Raises:
            InvalidQuantityError: quantity <= 0, not finite or over 9 decimals.
            ProductNotFoundError: unknown product.
            SaleLineNotFoundError: unknown sale line.
        """
        t0 = time.monotonic()
        quantity = parse_quantity(quantity, "consumption")

        self._locks.acquire(product_id)
        product = self._get_product(product_id)
        if self._session.get(SaleLine, sale_line_id) is None:
            logger.error("sale_line_not_found", extra={"sale_line_id": str(sale_line_id)})
            raise SaleLineNotFoundError(str(sale_line_id))

        lots = self.eligible_lots(product_id, as_of_date, for_update=True)
        allocation = allocate_fifo((lot_position(lot) for lot in lots), quantity)
        lots_by_id = {lot.id: lot for lot in lots}

        for draw in allocation.draws:
            lot = lots_by_id[draw.lot_id]
            lot.remaining_quantity = draw.remaining_after
            self._session.add(
                StockLotConsumption(
                    lot_id=lot.id,
                    sale_line_id=sale_line_id,
                    product_id=product_id,
                    quantity=draw.quantity,
                    unit_cost=draw.unit_cost,
                    total_cost=draw.total_cost,
                )
            )
            logger.debug("lot_consumed", extra={
                "lot_id": str(lot.id),
                "quantity": str(draw.quantity),
                "unit_cost": str(draw.unit_cost),
                "remaining_after": str(draw.remaining_after),
            })

        self._session.flush()

        result = ConsumptionResult.from_allocation(
            product_id=product_id,
            sale_line_id=sale_line_id,
            product_name=product.name,
            allocation=allocation,
            fallback_unit_cost=product.fallback_unit_cost,
        )

        if result.used_fallback_cost:
            logger.warning("fifo_stock_shortage", extra={
                "product_id": str(product_id),
                "sale_line_id": str(sale_line_id),
                "requested_quantity": str(quantity),
                "available_quantity": str(result.available_quantity),
                "shortfall_quantity": str(result.shortfall_quantity),
                "fallback_unit_cost": str(result.fallback_unit_cost),
            })

        logger.info("fifo_consumption_completed", extra={
            "product_id": str(product_id),
            "sale_line_id": str(sale_line_id),
            "as_of_date": as_of_date.isoformat(),
            "quantity": str(quantity),
            "lots_touched": result.lots_touched,
            "total_cost": str(result.total_cost),
            "used_fallback_cost": result.used_fallback_cost,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return result

    def preview(
        self,
        product_id: UUID,
        quantity: Decimal | int | str,
        as_of_date: date,
    ) -> ConsumptionResult:
        """
        Cost ``quantity`` as ``consume`` would, without writing anything.

        Raises:
            InvalidQuantityError: quantity <= 0, not finite or over 9 decimals.
            ProductNotFoundError: unknown product.
        """
        quantity = parse_quantity(quantity, "consumption preview")

        product = self._get_product(product_id)
        lots = self.eligible_lots(product_id, as_of_date, for_update=False)
        allocation = allocate_fifo((lot_position(lot) for lot in lots), quantity)

        return ConsumptionResult.from_allocation(
            product_id=product_id,
            sale_line_id=None,
            product_name=product.name,
            allocation=allocation,
            fallback_unit_cost=product.fallback_unit_cost,
        )

    def release(self, sale_line_id: UUID) -> Decimal:
        """
        Delete a sale line's consumptions and restore each lot.

        Returns:
            Total quantity restored (0 if the line had no consumptions).

        Raises:
            SaleLineNotFoundError: unknown sale line.
        """
        line = self._session.get(SaleLine, sale_line_id)
        if line is None:
            logger.error("sale_line_not_found", extra={"sale_line_id": str(sale_line_id)})
            raise SaleLineNotFoundError(str(sale_line_id))

        self._locks.acquire(line.product_id)

        consumptions = self._session.execute(
            select(StockLotConsumption)
            .where(StockLotConsumption.sale_line_id == sale_line_id)
        ).scalars().all()
        if not consumptions:
            return ZERO

        lot_ids = {c.lot_id for c in consumptions}
        lots = {
            lot.id: lot
            for lot in self._session.execute(
                select(StockLot)
                .where(StockLot.id.in_(lot_ids))
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        }

        restored = ZERO
        for consumption in consumptions:
            lots[consumption.lot_id].remaining_quantity += consumption.quantity
            restored += consumption.quantity
            self._session.delete(consumption)

        self._session.flush()

        logger.info("fifo_consumption_released", extra={
            "product_id": str(line.product_id),
            "sale_line_id": str(sale_line_id),
            "consumptions_removed": len(consumptions),
            "quantity_restored": str(restored),
        })
        return restored

    def _get_product(self, product_id: UUID) -> Product:
        product = self._session.get(Product, product_id)
        if product is None:
            logger.error("product_not_found", extra={"product_id": str(product_id)})
            raise ProductNotFoundError(str(product_id))
        return product

    def eligible_lots(
        self,
        product_id: UUID,
        as_of_date: date,
        for_update: bool,
    ) -> list[StockLot]:
        """
        Lots of the product that can be drawn on ``as_of_date``, in FIFO
        order.  With ``for_update`` the rows are locked and refreshed.
        """
        if self._policy.same_day_lots_eligible:
            date_condition = StockLot.lot_date <= as_of_date
        else:
            date_condition = StockLot.lot_date < as_of_date

        stmt = (
            select(StockLot)
            .where(
                StockLot.product_id == product_id,
                StockLot.retired.is_(False),
                StockLot.remaining_quantity > 0,
                date_condition,
            )
            .order_by(StockLot.lot_date, StockLot.sequence)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list(self._session.execute(stmt).scalars().all())
