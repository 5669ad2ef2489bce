"""Database infrastructure for the costing kernel."""

from costing_kernel.db.base import Base, TimestampedBase, UUIDString
from costing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    reset_engine,
    session_scope,
)
from costing_kernel.db.types import (
    COST_DECIMAL_PLACES,
    Money,
    Quantity,
    display_amount,
    parse_quantity,
    parse_unit_cost,
    round_money,
    to_decimal,
)

__all__ = [
    "Base",
    "TimestampedBase",
    "UUIDString",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "is_postgres",
    "Money",
    "Quantity",
    "COST_DECIMAL_PLACES",
    "round_money",
    "display_amount",
    "to_decimal",
    "parse_quantity",
    "parse_unit_cost",
]
