"""
Sequence safety tests.

Well-known sequences are native database sequences where the dialect has
them (PostgreSQL), so unrelated transactions never queue behind one
counter row.  Everywhere else numbers come from a locked counter row
(SELECT ... FOR UPDATE).  MAX(seq)+1 patterns are forbidden.
"""

import inspect
import re
from pathlib import Path

import pytest
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text

from costing_kernel.services.sequence_service import SequenceService


def _method_body(name: str) -> str:
    source = Path(inspect.getfile(SequenceService)).read_text()
    match = re.search(
        rf"def {name}\s*\([^)]*\).*?(?=\n    def \w|\nclass \w|\Z)",
        source,
        re.DOTALL,
    )
    assert match, f"SequenceService.{name} not found in source"
    return match.group(0)


class TestSequenceImplementation:

    def test_counter_table_exists(self, session):
        inspector = sa_inspect(session.bind)
        assert "sequence_counters" in inspector.get_table_names()

        columns = {c["name"] for c in inspector.get_columns("sequence_counters")}
        assert {"name", "current_value"} <= columns

    def test_counter_path_uses_for_update(self):
        body = _method_body("_next_from_counter")
        assert "with_for_update" in body
        assert "max(" not in body.lower()

    def test_next_value_never_aggregates(self):
        assert "max(" not in _method_body("next_value").lower()

    def test_well_known_names_have_database_sequences(self):
        assert set(SequenceService.DATABASE_SEQUENCES) == set(SequenceService.WELL_KNOWN)
        assert SequenceService.DATABASE_SEQUENCES["cost_audit"].name == "costing_cost_audit_seq"

    def test_native_sequences_follow_the_dialect(self, session):
        service = SequenceService(session)
        expected = session.get_bind().dialect.name == "postgresql"
        for name in SequenceService.WELL_KNOWN:
            assert service.uses_database_sequence(name) is expected
        assert not service.uses_database_sequence("adhoc")


class TestSequenceValues:

    def test_well_known_sequences_start_at_zero(self, session):
        service = SequenceService(session)
        for name in SequenceService.WELL_KNOWN:
            assert service.current_value(name) == 0

    def test_strictly_increasing(self, session):
        service = SequenceService(session)
        values = [service.next_value(SequenceService.STOCK_LOT) for _ in range(5)]
        assert values == sorted(values)
        assert len(set(values)) == 5
        assert service.current_value(SequenceService.STOCK_LOT) == values[-1]

    def test_counters_are_independent(self, session):
        service = SequenceService(session)
        service.next_value(SequenceService.STOCK_LOT)
        service.next_value(SequenceService.STOCK_LOT)

        assert service.next_value(SequenceService.SALE_LINE) == 1

    def test_unknown_counter_created_on_first_use(self, session):
        service = SequenceService(session)
        assert service.current_value("adhoc") is None

        assert service.next_value("adhoc") == 1
        assert service.current_value("adhoc") == 1

    def test_initialize_is_idempotent(self, session):
        service = SequenceService(session)
        service.next_value(SequenceService.COST_AUDIT)

        service.initialize_sequences()

        assert service.current_value(SequenceService.COST_AUDIT) == 1


@pytest.mark.postgres
class TestDatabaseSequences:

    def test_open_transactions_do_not_block_each_other(self, session_factory):
        first = session_factory()
        second = session_factory()

        a = SequenceService(first).next_value(SequenceService.COST_AUDIT)

        # a counter row held by ``first`` would make this wait and fail
        second.execute(text("SET LOCAL lock_timeout = '1s'"))
        b = SequenceService(second).next_value(SequenceService.COST_AUDIT)

        assert b > a

    def test_rolled_back_value_is_not_reused(self, session_factory):
        first = session_factory()
        a = SequenceService(first).next_value(SequenceService.SALE_LINE)
        first.rollback()

        second = session_factory()
        b = SequenceService(second).next_value(SequenceService.SALE_LINE)

        assert b > a
