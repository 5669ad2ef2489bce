"""
Pure costing engines.

No I/O, no ORM, no clock: values in, values out.
"""

from costing_engines.fifo import (
    ConsumptionResult,
    FifoAllocation,
    LotDraw,
    LotPosition,
    allocate_fifo,
    fifo_order_key,
    shortage_warning,
)

__all__ = [
    "LotPosition",
    "LotDraw",
    "FifoAllocation",
    "ConsumptionResult",
    "allocate_fifo",
    "fifo_order_key",
    "shortage_warning",
]
