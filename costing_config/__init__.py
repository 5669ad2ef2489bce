"""
costing_config -- single public entrypoint for costing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    directly.

Architecture position:
    Configuration.  Sits above ``costing_kernel`` and beside
    ``costing_services``.  The kernel MUST NEVER import from
    ``costing_config``; the composition root translates the returned
    settings into constructor arguments.

Failure modes:
    - ``FileNotFoundError`` -- the operator file does not exist.
    - ``ValueError`` -- unknown sections or keys, or invalid values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``costing_config_loaded`` log entry with the checksum of the effective
    settings, tying recalculation runs to the policy that governed them.
"""

from __future__ import annotations

from pathlib import Path

from costing_config.loader import load_yaml_file, merge_settings, parse_config
from costing_config.schema import (
    CostingConfig,
    CostingPolicy,
    DatabaseConfig,
    LockingConfig,
    LoggingConfig,
)
from costing_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults" / "costing.yaml"


def get_active_config(config_path: Path | str | None = None) -> CostingConfig:
    """The ONLY public configuration entrypoint.

    Loads the packaged defaults and overlays ``config_path`` when given.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        ValueError: If validation fails.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    sources = [str(DEFAULTS_PATH)]

    if config_path is not None:
        data = merge_settings(data, load_yaml_file(Path(config_path)))
        sources.append(str(config_path))

    config = parse_config(data, sources=tuple(sources))

    _logger.info(
        "costing_config_loaded",
        extra={
            "checksum": config.checksum,
            "sources": list(config.sources),
            "same_day_lots_eligible": config.policy.same_day_lots_eligible,
            "repair_zero_cost_sales": config.policy.repair_zero_cost_sales,
            "lock_timeout_seconds": config.locking.timeout_seconds,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "CostingConfig",
    "CostingPolicy",
    "DatabaseConfig",
    "LockingConfig",
    "LoggingConfig",
]
