"""SQLAlchemy ORM models for the costing kernel."""

from costing_kernel.models.cost_audit_log import CostAuditLogEntry, CostChangeReason
from costing_kernel.models.product import Product
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import (
    LotSource,
    StockLot,
    StockLotConsumption,
    SupplierReturnConsumption,
)

__all__ = [
    "Product",
    "StockLot",
    "StockLotConsumption",
    "SupplierReturnConsumption",
    "LotSource",
    "SaleLine",
    "CostAuditLogEntry",
    "CostChangeReason",
]
