"""
Module: costing_kernel.selectors.stock_selector
Responsibility: Read-only stock position of a product, derived from its
    open lots, and read access to the consumptions behind a sale line and
    to the draws made by supplier returns.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Stock on hand is never stored; it is the sum of remaining quantities
      of non-retired lots.
    - Lots are listed in FIFO order (lot_date, sequence).

Failure modes:
    - get_product_stock returns None for an unknown product (never raises
      on absence of data).
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from costing_kernel.db.types import ZERO, round_money
from costing_kernel.models.product import Product
from costing_kernel.models.stock_lot import (
    LotSource,
    StockLot,
    StockLotConsumption,
    SupplierReturnConsumption,
)
from costing_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class OpenLot:
    lot_id: UUID
    source: LotSource
    lot_date: date
    sequence: int
    unit_cost: Decimal
    remaining_quantity: Decimal

    @property
    def value(self) -> Decimal:
        return round_money(self.unit_cost * self.remaining_quantity)


@dataclass(frozen=True)
class StockInfo:
    """Stock position of one product."""

    product_id: UUID
    sku: str
    name: str
    fallback_unit_cost: Decimal
    lots: tuple[OpenLot, ...]

    @property
    def total_quantity(self) -> Decimal:
        return sum((lot.remaining_quantity for lot in self.lots), ZERO)

    @property
    def total_value(self) -> Decimal:
        return sum((lot.value for lot in self.lots), ZERO)

    @property
    def average_unit_cost(self) -> Decimal:
        """Weighted average cost of stock on hand (0 when empty)."""
        quantity = self.total_quantity
        if quantity == 0:
            return ZERO
        return round_money(self.total_value / quantity)


@dataclass(frozen=True)
class ConsumptionRecord:
    lot_id: UUID
    sale_line_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal


def _open_lot(lot: StockLot) -> OpenLot:
    return OpenLot(
        lot_id=lot.id,
        source=LotSource(lot.source),
        lot_date=lot.lot_date,
        sequence=lot.sequence,
        unit_cost=lot.unit_cost,
        remaining_quantity=lot.remaining_quantity,
    )


def _consumption_record(row: StockLotConsumption) -> ConsumptionRecord:
    return ConsumptionRecord(
        lot_id=row.lot_id,
        sale_line_id=row.sale_line_id,
        quantity=row.quantity,
        unit_cost=row.unit_cost,
        total_cost=row.total_cost,
    )


class StockSelector(BaseSelector[StockLot]):
    """Selector for stock positions and consumption evidence."""

    def get_product_stock(self, product_id: UUID) -> StockInfo | None:
        product = self.session.get(Product, product_id)
        if product is None:
            return None

        lots = self._all(
            select(StockLot)
            .where(
                StockLot.product_id == product_id,
                StockLot.retired.is_(False),
                StockLot.remaining_quantity > 0,
            )
            .order_by(StockLot.lot_date, StockLot.sequence),
            _open_lot,
        )

        return StockInfo(
            product_id=product.id,
            sku=product.sku,
            name=product.name,
            fallback_unit_cost=product.fallback_unit_cost,
            lots=tuple(lots),
        )

    def get_consumptions(self, sale_line_id: UUID) -> list[ConsumptionRecord]:
        """Consumptions of one sale line, in the lots' FIFO order."""
        return self._all(
            select(StockLotConsumption)
            .join(StockLot, StockLot.id == StockLotConsumption.lot_id)
            .where(StockLotConsumption.sale_line_id == sale_line_id)
            .order_by(StockLot.lot_date, StockLot.sequence),
            _consumption_record,
        )

    def consumed_quantity_by_lot(self, product_id: UUID) -> dict[UUID, Decimal]:
        """Sum of consumption quantities per lot of a product."""
        rows = self.session.execute(
            select(StockLotConsumption.lot_id, StockLotConsumption.quantity)
            .where(StockLotConsumption.product_id == product_id)
        ).all()
        totals: dict[UUID, Decimal] = {}
        for lot_id, quantity in rows:
            totals[lot_id] = totals.get(lot_id, ZERO) + quantity
        return totals

    def returned_to_supplier_by_lot(self, product_id: UUID) -> dict[UUID, Decimal]:
        """Sum of supplier return draws per lot of a product."""
        rows = self.session.execute(
            select(SupplierReturnConsumption.lot_id, SupplierReturnConsumption.quantity)
            .where(SupplierReturnConsumption.product_id == product_id)
        ).all()
        totals: dict[UUID, Decimal] = {}
        for lot_id, quantity in rows:
            totals[lot_id] = totals.get(lot_id, ZERO) + quantity
        return totals
