"""
Module: costing_kernel.db.types
Responsibility: Annotated column type aliases and the rounding helpers for
    quantities and costs.  Centralizes precision so that every model and
    service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, services/,
    selectors/ and the engines layer.  MUST NOT import from any of those.

Invariants enforced:
    - No floats anywhere.  Quantities and costs are Decimal with 9 decimal
      places of storage precision.
    - round_money() is the ONLY sanctioned rounding function for costs.
      Every computed cost is quantized to COST_DECIMAL_PLACES before it is
      stored or compared, so a recomputed cost equals the stored one
      exactly.  Replay idempotence depends on this.
    - Caller input is parsed at the boundary by parse_quantity() and
      parse_unit_cost(): NaN, Infinity and values with more than 9 decimal
      places are rejected there, never rounded and never flushed.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import BigInteger, Numeric, String

from costing_kernel.exceptions import InvalidCostError, InvalidQuantityError

# Cost amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Stock quantity: same precision as costs (fractional units allowed)
Quantity = Annotated[Decimal, Numeric(38, 9)]

# Monotonic creation-order sequence
Sequence = Annotated[int, BigInteger]

# Short identifier strings (source refs, document refs, reason codes)
ShortCode = Annotated[str, String(100)]

# Free text (trigger descriptions)
LongText = Annotated[str, String(500)]


COST_DECIMAL_PLACES = 9
QUANTITY_DECIMAL_PLACES = 9
DISPLAY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce an int, str or Decimal to Decimal.

    Raises:
        TypeError: If a float is passed -- floats are never accepted.
        decimal.InvalidOperation: If a string is not numeric.
    """
    if isinstance(value, float):
        raise TypeError("Use Decimal or str for quantities and costs, not float")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def round_money(
    value: Decimal,
    decimal_places: int = COST_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a cost to the given number of decimal places.

    This is the ONLY sanctioned rounding function for costs.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def display_amount(value: Decimal) -> str:
    """Render a quantity or cost with two decimals for user-facing text."""
    return f"{round_money(value, DISPLAY_DECIMAL_PLACES)}"


def is_storable(value: Decimal, decimal_places: int = COST_DECIMAL_PLACES) -> bool:
    """True for a finite value that fits Numeric(38, ``decimal_places``) unrounded."""
    if not value.is_finite():
        return False
    try:
        quantized = value.quantize(Decimal(1).scaleb(-decimal_places))
    except InvalidOperation:
        return False
    return quantized == value


def _parse(value: Decimal | int | str) -> Decimal | None:
    try:
        return to_decimal(value)
    except InvalidOperation:
        return None


def parse_quantity(value: Decimal | int | str, context: str) -> Decimal:
    """
    Parse a strictly positive quantity.

    Raises:
        TypeError: value is a float.
        InvalidQuantityError: not a number, not finite, not > 0, or more
            than 9 decimal places.
    """
    quantity = _parse(value)
    if quantity is None or not is_storable(quantity, QUANTITY_DECIMAL_PLACES) or quantity <= 0:
        raise InvalidQuantityError(str(value), context)
    return quantity


def parse_unit_cost(value: Decimal | int | str, context: str) -> Decimal:
    """
    Parse a non-negative unit cost.

    Raises:
        TypeError: value is a float.
        InvalidCostError: not a number, not finite, < 0, or more than 9
            decimal places.
    """
    unit_cost = _parse(value)
    if unit_cost is None or not is_storable(unit_cost, COST_DECIMAL_PLACES) or unit_cost < 0:
        raise InvalidCostError(str(value), context)
    return unit_cost
