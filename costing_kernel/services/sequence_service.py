"""
Module: costing_kernel.services.sequence_service
Responsibility: Allocate strictly monotonic creation-order numbers for stock
    lots, sale lines and cost audit entries.
Architecture position: Kernel > Services.  Called by the costing services
    before inserting a lot, a sale line or an audit entry.

Invariants enforced:
    - On databases with native sequences (PostgreSQL) the well-known names
      are database SEQUENCEs (``costing_<name>_seq``) allocated with
      ``nextval``.  Nothing is row-locked, so transactions working on
      different products never wait on each other for a number.
    - Elsewhere (SQLite), and for ad-hoc names, values come from a
      dedicated counter row read with ``SELECT ... FOR UPDATE``.  The
      aggregate max-plus-one pattern is never used; it is unsafe under
      concurrency.
    - Values are unique and increasing in allocation order.  A database
      sequence does not hand a value back on rollback, so gaps are
      possible; ordering never relies on contiguity.

Failure modes:
    - IntegrityError: two transactions creating the same missing counter
      at once.  create_tables() seeds the well-known counters so this only
      happens for ad-hoc names.

Audit relevance:
    The lot sequence is the FIFO tie-breaker for lots sharing a date; the
    sale line sequence is the replay tie-breaker for lines sharing a date.
"""

from sqlalchemy import BigInteger, Sequence, String, select, text
from sqlalchemy.orm import Mapped, Session, mapped_column

from costing_kernel.db.base import Base
from costing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.  Used where
    the database has no native sequences and for ad-hoc names.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a sequence name and returns the next strictly-monotonic
        integer value.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT guarantee gap-free numbering.
    """

    STOCK_LOT = "stock_lot"
    SALE_LINE = "sale_line"
    COST_AUDIT = "cost_audit"

    WELL_KNOWN = (STOCK_LOT, SALE_LINE, COST_AUDIT)

    # Created and dropped with the tables; skipped by dialects without sequences
    DATABASE_SEQUENCES = {
        name: Sequence(f"costing_{name}_seq", start=1, metadata=Base.metadata)
        for name in WELL_KNOWN
    }

    def __init__(self, session: Session):
        self._session = session

    def uses_database_sequence(self, sequence_name: str) -> bool:
        """True when ``sequence_name`` is served by a native database sequence."""
        return (
            sequence_name in self.DATABASE_SEQUENCES
            and self._session.get_bind().dialect.supports_sequences
        )

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously returned for this name.
            - With a database sequence nothing stays locked; with a counter
              row the row stays locked until the transaction completes.
        """
        if self.uses_database_sequence(sequence_name):
            value = self._session.execute(
                select(self.DATABASE_SEQUENCES[sequence_name].next_value())
            ).scalar_one()
        else:
            value = self._next_from_counter(sequence_name)

        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value

    def _next_from_counter(self, sequence_name: str) -> int:
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            logger.info(
                "sequence_counter_created",
                extra={"sequence_name": sequence_name},
            )

        counter.current_value += 1
        self._session.flush()
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """
        Last value allocated for a sequence without incrementing (0 before
        the first allocation), or None for an unknown ad-hoc name.
        """
        if self.uses_database_sequence(sequence_name):
            last_value, is_called = self._session.execute(
                text(
                    "SELECT last_value, is_called FROM "
                    f"{self.DATABASE_SEQUENCES[sequence_name].name}"
                )
            ).one()
            return last_value if is_called else 0

        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def initialize_sequences(self) -> None:
        """
        Create the well-known counter rows the database does not serve
        with native sequences.

        Called during database setup.
        """
        names = [n for n in self.WELL_KNOWN if not self.uses_database_sequence(n)]
        if not names:
            return

        existing = set(
            self._session.execute(
                select(SequenceCounter.name).where(SequenceCounter.name.in_(names))
            ).scalars()
        )

        for name in names:
            if name not in existing:
                self._session.add(SequenceCounter(name=name, current_value=0))

        self._session.flush()
