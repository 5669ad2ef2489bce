"""
Configuration schema (``costing_config.schema``).

Frozen dataclasses describing the effective settings of the costing
engine.  Instances are produced by ``costing_config.loader`` and never
mutated afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("database.url must not be empty")
        if self.pool_size <= 0:
            raise ValueError(f"database.pool_size must be positive, got {self.pool_size}")
        if self.max_overflow < 0:
            raise ValueError(f"database.max_overflow must be >= 0, got {self.max_overflow}")


@dataclass(frozen=True)
class LockingConfig:
    timeout_seconds: float = 30.0
    advisory_locks: bool = True

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"locking.timeout_seconds must be positive, got {self.timeout_seconds}"
            )


@dataclass(frozen=True)
class CostingPolicy:
    """
    Costing behaviour switches.

    same_day_lots_eligible:
        A lot dated on the sale date may be consumed by that sale.
    repair_zero_cost_sales:
        Stock events re-cost the product's earliest zero-cost sale line.
    """

    same_day_lots_eligible: bool = True
    repair_zero_cost_sales: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self) -> None:
        if not isinstance(logging.getLevelName(self.level.upper()), int):
            raise ValueError(f"logging.level is not a known level: {self.level}")


@dataclass(frozen=True)
class CostingConfig:
    """Effective configuration plus the checksum identifying it."""

    database: DatabaseConfig
    locking: LockingConfig = field(default_factory=LockingConfig)
    policy: CostingPolicy = field(default_factory=CostingPolicy)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checksum: str = ""
    sources: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Settings only (no checksum or sources), for hashing and display."""
        return {
            "database": asdict(self.database),
            "locking": asdict(self.locking),
            "costing": asdict(self.policy),
            "logging": asdict(self.logging),
        }
