"""
Module: costing_engines.fifo
Responsibility: Pure FIFO allocation of a requested quantity across ordered
    stock lot positions, and the costing result built from it.
Architecture position: Engines.  Pure functions and frozen value objects.
    MUST NOT import from costing_kernel.models, costing_services or any
    I/O module.  Receives lot positions as plain values, returns plain
    values; the FIFO consumer persists them.

Invariants enforced:
    - Lots are drawn strictly in (lot_date, sequence) order.
    - sum(draw.quantity) + shortfall == requested.
    - No draw exceeds its lot's remaining quantity; no zero-quantity draws.
    - Costs are quantized to 9 decimal places (round_money) so a
      recomputed result compares equal to a stored one.

Failure modes:
    - ValueError on a non-positive requested quantity or a negative
      fallback unit cost.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.types import ZERO, display_amount, round_money


@dataclass(frozen=True, slots=True)
class LotPosition:
    """An open lot as seen by the allocator."""

    lot_id: UUID
    lot_date: date
    sequence: int
    unit_cost: Decimal
    remaining: Decimal


@dataclass(frozen=True, slots=True)
class LotDraw:
    """Units taken from one lot."""

    lot_id: UUID
    quantity: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    remaining_after: Decimal


@dataclass(frozen=True, slots=True)
class FifoAllocation:
    """
    Outcome of allocating a quantity across lots.

    available_quantity is the total remaining across all lots offered,
    so that a shortfall message can report it.
    """

    requested: Decimal
    draws: tuple[LotDraw, ...]
    shortfall: Decimal
    available_quantity: Decimal

    @property
    def allocated(self) -> Decimal:
        return sum((d.quantity for d in self.draws), ZERO)

    @property
    def lot_cost(self) -> Decimal:
        return round_money(sum((d.total_cost for d in self.draws), ZERO))

    @property
    def is_short(self) -> bool:
        return self.shortfall > 0


def fifo_order_key(lot: LotPosition) -> tuple[date, int]:
    """Queue position: acquisition date, then creation order."""
    return (lot.lot_date, lot.sequence)


def allocate_fifo(lots: Iterable[LotPosition], quantity: Decimal) -> FifoAllocation:
    """
    Allocate ``quantity`` across ``lots`` oldest first.

    Lots are sorted here as well, so callers may pass them in any order.
    Lots with nothing remaining are skipped.

    Raises:
        ValueError: If quantity <= 0.
    """
    if quantity <= 0:
        raise ValueError(f"Quantity to allocate must be positive, got {quantity}")

    ordered = sorted((lot for lot in lots if lot.remaining > 0), key=fifo_order_key)
    available = sum((lot.remaining for lot in ordered), ZERO)

    draws: list[LotDraw] = []
    needed = quantity
    for lot in ordered:
        if needed <= 0:
            break
        take = min(lot.remaining, needed)
        draws.append(
            LotDraw(
                lot_id=lot.lot_id,
                quantity=take,
                unit_cost=lot.unit_cost,
                total_cost=round_money(take * lot.unit_cost),
                remaining_after=lot.remaining - take,
            )
        )
        needed -= take

    return FifoAllocation(
        requested=quantity,
        draws=tuple(draws),
        shortfall=needed if needed > 0 else ZERO,
        available_quantity=available,
    )


def shortage_warning(
    product_name: str,
    requested: Decimal,
    available: Decimal,
    shortfall: Decimal,
    fallback_unit_cost: Decimal,
    drew_from_lots: bool,
) -> str:
    """Human-readable warning for a sale that outran the lots."""
    if not drew_from_lots:
        if fallback_unit_cost > 0:
            return (
                f'Product "{product_name}" has no stock. Using fallback cost of '
                f"{display_amount(fallback_unit_cost)}/unit."
            )
        return (
            f'Product "{product_name}" has no stock and no fallback cost set. '
            f"COGS will be 0."
        )

    prefix = (
        f'Product "{product_name}" only has {display_amount(available)} units in stock, '
        f"but {display_amount(requested)} were sold. "
        f"Shortfall of {display_amount(shortfall)} units costed at "
    )
    if fallback_unit_cost > 0:
        return prefix + f"fallback price of {display_amount(fallback_unit_cost)}/unit."
    return prefix + "0 (no fallback cost set)."


@dataclass(frozen=True, slots=True)
class ConsumptionResult:
    """
    Cost of one sale line's quantity.

    Contract:
        total_cost = lot_cost + shortfall_quantity * fallback_unit_cost,
        quantized.  warnings holds at most one shortage message.
    """

    product_id: UUID
    sale_line_id: UUID | None
    requested_quantity: Decimal
    consumptions: tuple[LotDraw, ...]
    lot_cost: Decimal
    shortfall_quantity: Decimal
    fallback_unit_cost: Decimal
    fallback_cost: Decimal
    total_cost: Decimal
    available_quantity: Decimal
    warnings: tuple[str, ...]

    @property
    def used_fallback_cost(self) -> bool:
        return self.shortfall_quantity > 0

    @property
    def lots_touched(self) -> int:
        return len(self.consumptions)

    @property
    def unit_cost(self) -> Decimal:
        """Average cost per unit sold."""
        return round_money(self.total_cost / self.requested_quantity)

    @classmethod
    def from_allocation(
        cls,
        *,
        product_id: UUID,
        sale_line_id: UUID | None,
        product_name: str,
        allocation: FifoAllocation,
        fallback_unit_cost: Decimal,
    ) -> ConsumptionResult:
        """
        Build the result from an allocation and the product's fallback cost.

        Raises:
            ValueError: If fallback_unit_cost < 0.
        """
        if fallback_unit_cost < 0:
            raise ValueError(f"Fallback unit cost cannot be negative, got {fallback_unit_cost}")

        lot_cost = allocation.lot_cost
        fallback_cost = round_money(allocation.shortfall * fallback_unit_cost)

        warnings: tuple[str, ...] = ()
        if allocation.is_short:
            warnings = (
                shortage_warning(
                    product_name=product_name,
                    requested=allocation.requested,
                    available=allocation.available_quantity,
                    shortfall=allocation.shortfall,
                    fallback_unit_cost=fallback_unit_cost,
                    drew_from_lots=bool(allocation.draws),
                ),
            )

        return cls(
            product_id=product_id,
            sale_line_id=sale_line_id,
            requested_quantity=allocation.requested,
            consumptions=allocation.draws,
            lot_cost=lot_cost,
            shortfall_quantity=allocation.shortfall,
            fallback_unit_cost=fallback_unit_cost,
            fallback_cost=fallback_cost,
            total_cost=round_money(lot_cost + fallback_cost),
            available_quantity=allocation.available_quantity,
            warnings=warnings,
        )
