"""
costing_services.engine -- Composition root for the inventory costing engine.

Responsibility:
    Creates every costing service exactly once for a Session and wires
    them together.  No service creates another service internally.

Architecture position:
    Services -- top of the service layer.  The only place where the
    kernel services, the FIFO consumer, the cascade and the entry-point
    services are constructed, and the only place configuration is
    translated into constructor arguments.

Invariants enforced:
    - Single-instance lifecycle: one ProductLockService, one
      SequenceService, one FifoConsumer per engine, shared by every
      collaborator.
    - Immutability listeners are registered before any service runs.

Usage:
    with session_scope() as session:
        engine = InventoryCostingEngine(session, config=get_active_config())
        engine.stock_events.create_lot_from_purchase(
            product_id, Decimal("10"), Decimal("50"), date(2024, 3, 1),
        )
        result = engine.sales.record_sale_line(
            product_id, Decimal("4"), date(2024, 3, 10),
        )
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config.schema import CostingConfig, CostingPolicy
from costing_kernel.db.immutability import register_immutability_listeners
from costing_kernel.db.types import parse_unit_cost
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.logging_config import get_logger
from costing_kernel.models.product import Product
from costing_kernel.selectors.cost_audit_selector import CostAuditSelector
from costing_kernel.selectors.stock_selector import StockSelector
from costing_kernel.services.product_lock import ProductLockService
from costing_kernel.services.sequence_service import SequenceService
from costing_services.backdating import BackdatingDetector
from costing_services.cost_audit_log import CostAuditLog
from costing_services.fifo_consumer import FifoConsumer
from costing_services.recalculation import RecalculationCascade
from costing_services.sales import SaleLineService
from costing_services.stock_events import StockEventService
from costing_services.supplier_returns import SupplierReturnService

logger = get_logger("services.engine")


class InventoryCostingEngine:
    """
    Wires the costing services around one Session.

    Contract:
        ``config`` supplies the locking timeout and costing policy; when
        omitted the packaged defaults apply.  The engine never commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: CostingConfig | None = None,
        policy: CostingPolicy | None = None,
    ) -> None:
        register_immutability_listeners()

        self._session = session
        self.clock = clock or SystemClock()
        self.policy = policy or (config.policy if config else CostingPolicy())

        lock_timeout = config.locking.timeout_seconds if config else 30.0
        advisory = config.locking.advisory_locks if config else True

        # Foundational services
        self.sequences = SequenceService(session)
        self.locks = ProductLockService(
            session, timeout_seconds=lock_timeout, use_advisory_locks=advisory,
        )

        # Read side
        self.stock = StockSelector(session)
        self.audit = CostAuditSelector(session)

        # Core costing (consumer is shared by the cascade and both entry points)
        self.consumer = FifoConsumer(session, self.locks, self.policy)
        self.detector = BackdatingDetector(session)
        self.audit_log = CostAuditLog(session, self.sequences, self.clock)
        self.cascade = RecalculationCascade(
            session, self.consumer, self.audit_log, self.locks, self.clock,
        )

        # Entry points
        self.stock_events = StockEventService(
            session,
            self.sequences,
            self.locks,
            self.consumer,
            self.detector,
            self.cascade,
            clock=self.clock,
            policy=self.policy,
        )
        self.sales = SaleLineService(
            session,
            self.sequences,
            self.locks,
            self.consumer,
            self.detector,
            self.cascade,
            clock=self.clock,
        )
        self.supplier_returns = SupplierReturnService(
            session,
            self.locks,
            self.consumer,
            self.detector,
            self.cascade,
            policy=self.policy,
        )

    @property
    def session(self) -> Session:
        return self._session

    def register_product(
        self,
        sku: str,
        name: str,
        fallback_unit_cost: Decimal | int | str = Decimal("0"),
    ) -> Product:
        """
        Create the product row the engine costs against.

        Raises:
            InvalidCostError: fallback_unit_cost negative or not a storable number.
        """
        fallback = parse_unit_cost(fallback_unit_cost, "product fallback cost")

        product = Product(sku=sku, name=name, fallback_unit_cost=fallback)
        if fallback > 0:
            product.fallback_cost_updated_at = self.clock.now()
        self._session.add(product)
        self._session.flush()

        logger.info("product_registered", extra={
            "product_id": str(product.id),
            "sku": sku,
            "fallback_unit_cost": str(fallback),
        })
        return product

    def get_product_by_sku(self, sku: str) -> Product | None:
        return self._session.execute(
            select(Product).where(Product.sku == sku)
        ).scalar_one_or_none()
