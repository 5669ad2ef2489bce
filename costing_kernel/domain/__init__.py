"""
Pure domain layer.

No dependencies on the ORM, the database or I/O. The only sanctioned
time source is an injected Clock.
"""

from costing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
