"""Selectors for the costing kernel (read side)."""

from costing_kernel.selectors.cost_audit_selector import (
    CostAuditFilter,
    CostAuditPage,
    CostAuditRecord,
    CostAuditSelector,
    PageRequest,
)
from costing_kernel.selectors.stock_selector import (
    ConsumptionRecord,
    OpenLot,
    StockInfo,
    StockSelector,
)

__all__ = [
    "CostAuditSelector",
    "CostAuditFilter",
    "CostAuditPage",
    "CostAuditRecord",
    "PageRequest",
    "StockSelector",
    "StockInfo",
    "OpenLot",
    "ConsumptionRecord",
]
