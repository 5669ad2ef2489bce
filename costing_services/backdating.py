"""
costing_services.backdating -- Decide whether an event requires replay.

Responsibility:
    Answer the two questions a stock event constructor asks before
    choosing between the forward path and the recalculation cascade:
    has the product already been sold after this date, and is there an
    already-costed sale line still sitting at zero cost.

Architecture position:
    Services.  Read-only queries; never writes, never locks.

Invariants enforced:
    - "Backdated" is strictly-after by default: a costed sale line dated
      on the event date does not make the event backdated.  Lot events
      pass ``include_same_day`` when same-day lots are eligible, because a
      sale on the lot date could have drawn from the new lot.  Sale lines
      never do: a same-day line created earlier replays first anyway.
    - A sale line costed entirely at fallback cost has no consumption
      rows but still counts; it consumed stock that the new event may
      now supply.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from costing_kernel.logging_config import get_logger
from costing_kernel.models.sale_line import SaleLine

logger = get_logger("services.backdating")


class BackdatingDetector:
    """
    Read-only checks on a product's sale timeline.

    Contract:
        Receives Session via constructor injection.  Performs no writes.
    """

    def __init__(self, session: Session):
        self._session = session

    def is_backdated(
        self,
        product_id: UUID,
        event_date: date,
        include_same_day: bool = False,
    ) -> bool:
        """
        True when a costed sale line of the product is dated after
        ``event_date`` (on or after it with ``include_same_day``).
        """
        if include_same_day:
            date_condition = SaleLine.sale_date >= event_date
        else:
            date_condition = SaleLine.sale_date > event_date
        backdated = self._session.execute(
            select(
                exists().where(
                    SaleLine.product_id == product_id,
                    SaleLine.costed_at.is_not(None),
                    date_condition,
                )
            )
        ).scalar_one()

        logger.debug("backdating_checked", extra={
            "product_id": str(product_id),
            "event_date": event_date.isoformat(),
            "include_same_day": include_same_day,
            "backdated": backdated,
        })
        return bool(backdated)

    def find_earliest_zero_cost_sale_line(self, product_id: UUID) -> SaleLine | None:
        """Earliest costed sale line of the product whose COGS is exactly zero."""
        return self._session.execute(
            select(SaleLine)
            .where(
                SaleLine.product_id == product_id,
                SaleLine.costed_at.is_not(None),
                SaleLine.cost_of_goods_sold == 0,
            )
            .order_by(SaleLine.sale_date, SaleLine.sequence)
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def recalculation_start_date(old_date: date, new_date: date) -> date:
        """Replay start for an event whose date moved from ``old_date`` to ``new_date``."""
        return min(old_date, new_date)
