"""Kernel services: sequence allocation and per-product locking."""

from costing_kernel.services.product_lock import ProductLockService
from costing_kernel.services.sequence_service import SequenceCounter, SequenceService

__all__ = [
    "ProductLockService",
    "SequenceService",
    "SequenceCounter",
]
