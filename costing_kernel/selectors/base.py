"""
Module: costing_kernel.selectors.base
Responsibility: Shared plumbing for the read side: stock positions and the
    cost audit trail are read through selectors, never through services.
Architecture position: Kernel > Selectors.  May import from db/ and
    models/.  MUST NOT import from services/ or costing_services.

Invariants enforced:
    - Selectors only issue SELECT statements; they never add, delete,
      flush or commit.
    - Callers receive frozen dataclasses, not ORM instances, so a result
      cannot be used to sneak a write back into the session.
"""

from abc import ABC
from typing import Any, Generic, Sequence, TypeVar

from sqlalchemy import Select
from sqlalchemy.orm import Session

from costing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Read-only query object bound to a caller-owned Session.

    Contract:
        The caller opens and closes the transaction; selectors see whatever
        that transaction sees, including flushed but uncommitted rows.
    """

    def __init__(self, session: Session):
        self.session = session

    def _all(self, stmt: Select, convert: Any = None) -> Sequence[Any]:
        """Run ``stmt`` and return its scalars, mapped through ``convert`` if given."""
        rows = self.session.execute(stmt).scalars().all()
        if convert is None:
            return rows
        return [convert(row) for row in rows]
