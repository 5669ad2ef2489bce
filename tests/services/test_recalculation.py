"""
Tests for RecalculationCascade.

Tests cover:
- Backdated purchase re-costing later sales (0 -> 500)
- Replay order (sale_date, sequence)
- Idempotence of a second run
- Audit entries only for changed, already-costed lines
- Atomicity: persistence failure surfaces as TransactionFailureError
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from costing_kernel.exceptions import ProductNotFoundError, TransactionFailureError
from costing_kernel.models.cost_audit_log import CostAuditLogEntry, CostChangeReason
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import StockLot, StockLotConsumption


def _audit_count(session) -> int:
    return session.execute(select(func.count()).select_from(CostAuditLogEntry)).scalar_one()


class TestBackdatedPurchase:

    def test_zero_cost_sale_recosted(self, session, costing, widget, buy, sell):
        sale = sell(widget, 10, date(2024, 3, 10), document_ref="INV-1")
        assert sale.cost_of_goods_sold == Decimal("0")

        event = buy(widget, 10, "50", date(2024, 3, 5), source_ref="PO-1")

        assert event.recalculated
        assert event.recalculation.reason is CostChangeReason.BACKDATED_PURCHASE
        line = session.get(SaleLine, sale.sale_line_id)
        assert line.cost_of_goods_sold == Decimal("500")

        history = costing.audit.for_sale_line(sale.sale_line_id)
        assert len(history) == 1
        assert history[0].old_cost == Decimal("0")
        assert history[0].new_cost == Decimal("500")
        assert history[0].delta == Decimal("500")
        assert history[0].reason is CostChangeReason.BACKDATED_PURCHASE
        assert "PO-1" in history[0].trigger_description

    def test_cheaper_older_lot_reorders_queue(self, session, costing, widget, buy, sell):
        buy(widget, 5, "20", date(2024, 3, 5))
        first = sell(widget, 3, date(2024, 3, 6))
        second = sell(widget, 3, date(2024, 3, 7))
        assert first.cost_of_goods_sold == Decimal("60")
        # 2 units left at 20, 1 unit short at fallback 20
        assert second.cost_of_goods_sold == Decimal("60")

        buy(widget, 3, "10", date(2024, 3, 1))

        assert session.get(SaleLine, first.sale_line_id).cost_of_goods_sold == Decimal("30")
        assert session.get(SaleLine, second.sale_line_id).cost_of_goods_sold == Decimal("60")
        assert [r.sale_line_id for r in costing.audit.query().records] == [first.sale_line_id]

    def test_lot_dated_after_all_sales_does_not_replay(self, costing, widget, buy, sell):
        buy(widget, 5, "20", date(2024, 3, 1))
        sell(widget, 1, date(2024, 3, 2))

        event = buy(widget, 5, "30", date(2024, 3, 9))

        assert event.recalculation is None


class TestRecalculateFrom:

    def test_unknown_product(self, costing):
        with pytest.raises(ProductNotFoundError):
            costing.cascade.recalculate_from(uuid4(), date(2024, 1, 1))

    def test_no_lines_is_skipped(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 1))

        result = costing.cascade.recalculate_from(widget.id, date(2024, 3, 2))

        assert result.skipped
        assert result.lines_recalculated == 0

    def test_replays_only_from_date(self, costing, widget, buy, sell):
        buy(widget, 10, "5", date(2024, 3, 1))
        sell(widget, 1, date(2024, 3, 2))
        later = sell(widget, 1, date(2024, 3, 8))

        result = costing.cascade.recalculate_from(widget.id, date(2024, 3, 5))

        assert [o.sale_line_id for o in result.lines] == [later.sale_line_id]

    def test_same_date_lines_replay_in_creation_order(self, session, costing, widget, buy, sell):
        buy(widget, 1, "10", date(2024, 3, 1))
        buy(widget, 1, "30", date(2024, 3, 2))
        a = sell(widget, 1, date(2024, 3, 5))
        b = sell(widget, 1, date(2024, 3, 5))

        result = costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))

        assert [o.sale_line_id for o in result.lines] == [a.sale_line_id, b.sale_line_id]
        assert session.get(SaleLine, a.sale_line_id).cost_of_goods_sold == Decimal("10")
        assert session.get(SaleLine, b.sale_line_id).cost_of_goods_sold == Decimal("30")

    def test_idempotent(self, session, costing, widget, buy, sell):
        buy(widget, 4, "10", date(2024, 3, 1))
        buy(widget, 4, "12", date(2024, 3, 3))
        sell(widget, 3, date(2024, 3, 4))
        sell(widget, 3, date(2024, 3, 6))
        sell(widget, 5, date(2024, 3, 8))

        first = costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))
        audits = _audit_count(session)
        remaining = {
            lot.id: lot.remaining_quantity
            for lot in session.execute(select(StockLot)).scalars()
        }
        second = costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))

        assert [o.new_cost for o in first.lines] == [o.new_cost for o in second.lines]
        assert second.changed_lines == ()
        assert second.audit_entries == 0
        assert _audit_count(session) == audits
        assert {
            lot.id: lot.remaining_quantity
            for lot in session.execute(select(StockLot)).scalars()
        } == remaining

    def test_conservation_after_replay(self, session, costing, widget, buy, sell):
        lot_a = buy(widget, 4, "10", date(2024, 3, 2))
        lot_b = buy(widget, 4, "12", date(2024, 3, 3))
        sell(widget, 3, date(2024, 3, 4))
        sell(widget, 3, date(2024, 3, 6))
        buy(widget, 2, "8", date(2024, 3, 1))

        consumed = costing.stock.consumed_quantity_by_lot(widget.id)
        for lot_id in (lot_a.lot_id, lot_b.lot_id):
            lot = session.get(StockLot, lot_id)
            assert lot.initial_quantity - lot.remaining_quantity == consumed.get(lot_id, Decimal("0"))

    def test_first_time_costing_is_not_audited(self, session, costing, widget, buy, sell):
        buy(widget, 5, "10", date(2024, 3, 1))
        sell(widget, 2, date(2024, 3, 10))

        # backdated sale: costed for the first time by the replay
        backdated = sell(widget, 1, date(2024, 3, 5))

        assert backdated.replayed
        assert backdated.recalculation.reason is CostChangeReason.BACKDATED_INVOICE
        assert backdated.cost_of_goods_sold == Decimal("10")
        assert costing.audit.for_sale_line(backdated.sale_line_id) == []
        assert session.get(SaleLine, backdated.sale_line_id).costed_at is not None

    def test_reason_and_trigger_recorded(self, session, costing, widget, sell):
        sale = sell(widget, 1, date(2024, 3, 5))
        session.get(SaleLine, sale.sale_line_id).cost_of_goods_sold = Decimal("3")
        session.flush()

        result = costing.cascade.recalculate_from(
            widget.id, date(2024, 3, 1), CostChangeReason.MANUAL, "operator request",
        )

        assert result.audit_entries == 1
        record = costing.audit.for_sale_line(sale.sale_line_id)[0]
        assert record.reason is CostChangeReason.MANUAL
        assert record.trigger_description == "operator request"
        assert record.old_cost == Decimal("3")
        assert record.new_cost == Decimal("0")
        assert record.delta == Decimal("-3")

    def test_accepts_reason_string(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 5))

        result = costing.cascade.recalculate_from(widget.id, date(2024, 3, 1), "zero_cogs_fix")

        assert result.reason is CostChangeReason.ZERO_COGS_FIX

    def test_logs_completion(self, costing, widget, sell, captured_logs):
        sell(widget, 1, date(2024, 3, 5))

        costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))

        done = [r for r in captured_logs() if r["message"] == "recalculation_completed"]
        assert done[0]["lines_recalculated"] == 1
        assert done[0]["product_id"] == str(widget.id)
        assert "duration_ms" in done[0]


class TestAtomicity:

    def test_persistence_failure_is_wrapped(self, session, costing, widget, buy, sell, monkeypatch):
        buy(widget, 5, "10", date(2024, 3, 1))
        sell(widget, 2, date(2024, 3, 5))

        def _broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(costing.consumer, "consume", _broken)

        with pytest.raises(TransactionFailureError) as exc_info:
            costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))
        assert exc_info.value.code == "TRANSACTION_FAILURE"

    def test_rollback_discards_partial_replay(self, session, costing, widget, buy, sell, monkeypatch):
        lot = buy(widget, 5, "10", date(2024, 3, 1))
        sale = sell(widget, 2, date(2024, 3, 5))
        session.commit()

        def _broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(costing.consumer, "consume", _broken)
        with pytest.raises(TransactionFailureError):
            costing.cascade.recalculate_from(widget.id, date(2024, 3, 1))
        session.rollback()

        assert session.get(StockLot, lot.lot_id).remaining_quantity == Decimal("3")
        assert session.get(SaleLine, sale.sale_line_id).cost_of_goods_sold == Decimal("20")
        count = session.execute(
            select(func.count()).select_from(StockLotConsumption)
        ).scalar_one()
        assert count == 1
