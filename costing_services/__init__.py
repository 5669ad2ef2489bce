"""
costing_services -- Stateful costing services over the kernel and engines.

InventoryCostingEngine is the composition root; the individual services
are exported for callers that wire their own.
"""

from costing_services.backdating import BackdatingDetector
from costing_services.cost_audit_log import CostAuditLog
from costing_services.engine import InventoryCostingEngine
from costing_services.fifo_consumer import FifoConsumer
from costing_services.recalculation import (
    LineOutcome,
    RecalculationCascade,
    RecalculationResult,
)
from costing_services.sales import SaleCostingResult, SaleLineService
from costing_services.stock_events import (
    LotRetirementResult,
    StockEventResult,
    StockEventService,
)
from costing_services.supplier_returns import (
    ReturnableStock,
    SupplierReturnRelease,
    SupplierReturnResult,
    SupplierReturnService,
)

__all__ = [
    "InventoryCostingEngine",
    "FifoConsumer",
    "BackdatingDetector",
    "RecalculationCascade",
    "RecalculationResult",
    "LineOutcome",
    "CostAuditLog",
    "StockEventService",
    "StockEventResult",
    "LotRetirementResult",
    "SaleLineService",
    "SaleCostingResult",
    "SupplierReturnService",
    "SupplierReturnResult",
    "SupplierReturnRelease",
    "ReturnableStock",
]
