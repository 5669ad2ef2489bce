"""
costing_services.bulk_recalculation -- Rebuild costs for whole catalogues.

Responsibility:
    Repair tooling for after a data migration or a costing fix: reset each
    product's fallback cost to its latest purchase price, then replay the
    product's entire sale timeline.

Architecture position:
    Services.  Drives RecalculationCascade through an
    InventoryCostingEngine; used by scripts/recalculate_all_costs.py.

Invariants enforced:
    - Replays start at the product's earliest sale date, so every line is
      re-derived.  Changes are audited with reason ``manual``.
    - Products without sale lines are left untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from costing_kernel.domain.clock import Clock
from costing_kernel.exceptions import ProductNotFoundError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import LotSource, StockLot
from costing_services.engine import InventoryCostingEngine
from costing_services.recalculation import RecalculationResult

logger = get_logger("services.bulk_recalculation")


@dataclass(frozen=True)
class ProductRecalculationReport:
    product_id: UUID
    sku: str
    fallback_unit_cost: Decimal
    recalculation: RecalculationResult

    @property
    def lines_changed(self) -> int:
        return len(self.recalculation.changed_lines)


def refresh_fallback_cost(session: Session, product_id: UUID, clock: Clock) -> Decimal | None:
    """
    Set the product's fallback cost to the unit cost of its latest active
    purchase lot.

    Returns:
        The new fallback cost, or None when the product has no purchase lot
        (fallback left unchanged).

    Raises:
        ProductNotFoundError: unknown product.
    """
    product = session.get(Product, product_id)
    if product is None:
        raise ProductNotFoundError(str(product_id))

    lot = session.execute(
        select(StockLot)
        .where(
            StockLot.product_id == product_id,
            StockLot.source == LotSource.PURCHASE.value,
            StockLot.retired.is_(False),
        )
        .order_by(StockLot.lot_date.desc(), StockLot.sequence.desc())
        .limit(1)
    ).scalar_one_or_none()
    if lot is None:
        return None

    if product.fallback_unit_cost != lot.unit_cost:
        logger.info("product_fallback_cost_refreshed", extra={
            "product_id": str(product_id),
            "lot_id": str(lot.id),
            "old_fallback_unit_cost": str(product.fallback_unit_cost),
            "new_fallback_unit_cost": str(lot.unit_cost),
        })
        product.fallback_unit_cost = lot.unit_cost
        product.fallback_cost_updated_at = clock.now()
        product.fallback_cost_lot_id = lot.id
        session.flush()
    return lot.unit_cost


def products_with_sales(session: Session, skus: list[str] | None = None) -> list[UUID]:
    """Ids of products having at least one sale line, ordered by sku."""
    stmt = (
        select(Product.id)
        .where(select(SaleLine.id).where(SaleLine.product_id == Product.id).exists())
        .order_by(Product.sku)
    )
    if skus:
        stmt = stmt.where(Product.sku.in_(skus))
    return list(session.execute(stmt).scalars().all())


def recalculate_product(engine: InventoryCostingEngine, product_id: UUID) -> ProductRecalculationReport:
    """Refresh one product's fallback cost and replay its whole timeline."""
    session = engine.session
    engine.locks.acquire(product_id)
    refresh_fallback_cost(session, product_id, engine.clock)

    product = session.get(Product, product_id)
    earliest = session.execute(
        select(func.min(SaleLine.sale_date)).where(SaleLine.product_id == product_id)
    ).scalar_one()

    result = engine.cascade.recalculate_from(
        product_id,
        earliest or date.min,
        CostChangeReason.MANUAL,
        "Bulk FIFO cost recalculation",
    )
    return ProductRecalculationReport(
        product_id=product_id,
        sku=product.sku,
        fallback_unit_cost=product.fallback_unit_cost,
        recalculation=result,
    )


def recalculate_all(
    engine: InventoryCostingEngine,
    skus: list[str] | None = None,
) -> list[ProductRecalculationReport]:
    """Recalculate every product with sales (or only ``skus``) in one session."""
    reports = [
        recalculate_product(engine, product_id)
        for product_id in products_with_sales(engine.session, skus)
    ]
    logger.info("bulk_recalculation_completed", extra={
        "products": len(reports),
        "lines_changed": sum(r.lines_changed for r in reports),
    })
    return reports
