"""
Tests for SupplierReturnService.

Tests cover:
- FIFO draws for goods sent back to the supplier
- Refusal when eligible stock is short, with nothing written
- Exact restoration when a return is cancelled
- Draws staying in place while the cascade replays sale lines
- Lot revision and retirement around returned units
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from costing_kernel.exceptions import (
    InsufficientStockError,
    InvalidQuantityError,
    ProductNotFoundError,
    SupplierReturnNotFoundError,
)
from costing_kernel.models.cost_audit_log import CostChangeReason
from costing_kernel.models.sale_line import SaleLine
from costing_kernel.models.stock_lot import StockLot, SupplierReturnConsumption


def _draw_count(session) -> int:
    return session.execute(
        select(func.count()).select_from(SupplierReturnConsumption)
    ).scalar_one()


@pytest.fixture
def send_back(costing):
    """Post a supplier return: ``send_back(product, qty, ref, day)``."""

    def _send_back(product, quantity, return_ref, return_date: date):
        return costing.supplier_returns.consume_for_supplier_return(
            product.id, Decimal(str(quantity)), return_ref, return_date,
        )

    return _send_back


class TestConsume:

    def test_draws_oldest_lot_first(self, session, widget, buy, send_back):
        old = buy(widget, 3, "10", date(2024, 3, 1))
        new = buy(widget, 3, "20", date(2024, 3, 2))

        result = send_back(widget, 4, "DN-1", date(2024, 3, 5))

        assert [(d.lot_id, d.quantity) for d in result.draws] == [
            (old.lot_id, Decimal("3")),
            (new.lot_id, Decimal("1")),
        ]
        assert result.total_cost == Decimal("50")
        assert result.unit_cost == Decimal("12.5")
        assert session.get(StockLot, old.lot_id).remaining_quantity == Decimal("0")
        assert session.get(StockLot, new.lot_id).remaining_quantity == Decimal("2")
        assert _draw_count(session) == 2

    def test_shortage_refused_and_nothing_written(self, session, widget, buy, send_back):
        lot = buy(widget, 2, "10", date(2024, 3, 1))

        with pytest.raises(InsufficientStockError) as exc_info:
            send_back(widget, 3, "DN-1", date(2024, 3, 5))

        assert exc_info.value.code == "INSUFFICIENT_STOCK"
        assert exc_info.value.requested == "3"
        assert Decimal(exc_info.value.available) == Decimal("2")
        assert session.get(StockLot, lot.lot_id).remaining_quantity == Decimal("2")
        assert _draw_count(session) == 0

    def test_shortage_logged(self, widget, buy, send_back, captured_logs):
        buy(widget, 1, "10", date(2024, 3, 1))

        with pytest.raises(InsufficientStockError):
            send_back(widget, 2, "DN-1", date(2024, 3, 5))

        warnings = [r for r in captured_logs() if r["message"] == "supplier_return_insufficient_stock"]
        assert Decimal(warnings[0]["shortfall_quantity"]) == Decimal("1")

    def test_lots_dated_after_the_return_are_not_drawn(self, widget, buy, send_back):
        buy(widget, 5, "10", date(2024, 3, 10))

        with pytest.raises(InsufficientStockError):
            send_back(widget, 1, "DN-1", date(2024, 3, 5))

    def test_units_already_sold_are_not_returnable(self, widget, buy, sell, send_back):
        buy(widget, 5, "10", date(2024, 3, 1))
        sell(widget, 4, date(2024, 3, 2))

        with pytest.raises(InsufficientStockError):
            send_back(widget, 2, "DN-1", date(2024, 3, 5))

    def test_same_reference_posts_once(self, widget, buy, send_back):
        buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 1, "DN-1", date(2024, 3, 5))

        with pytest.raises(ValueError, match="already been posted"):
            send_back(widget, 1, "DN-1", date(2024, 3, 5))

    @pytest.mark.parametrize("quantity", ["0", "-1", "NaN", "0.0000000001"])
    def test_invalid_quantity(self, costing, widget, quantity):
        with pytest.raises(InvalidQuantityError):
            costing.supplier_returns.consume_for_supplier_return(
                widget.id, quantity, "DN-1", date(2024, 3, 5),
            )

    def test_unknown_product(self, costing):
        with pytest.raises(ProductNotFoundError):
            costing.supplier_returns.consume_for_supplier_return(
                uuid4(), Decimal("1"), "DN-1", date(2024, 3, 5),
            )


class TestRelease:

    def test_restores_lots_exactly(self, session, costing, widget, buy, send_back):
        first = buy(widget, 3, "10", date(2024, 3, 1))
        second = buy(widget, 3, "20", date(2024, 3, 2))
        send_back(widget, 4, "DN-1", date(2024, 3, 5))

        result = costing.supplier_returns.release_supplier_return("DN-1")

        assert result.quantity_restored == Decimal("4")
        assert result.recalculation is None
        assert session.get(StockLot, first.lot_id).remaining_quantity == Decimal("3")
        assert session.get(StockLot, second.lot_id).remaining_quantity == Decimal("3")
        assert _draw_count(session) == 0

    def test_reference_can_be_posted_again_after_release(self, costing, widget, buy, send_back):
        buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 2, "DN-1", date(2024, 3, 5))
        costing.supplier_returns.release_supplier_return("DN-1")

        result = send_back(widget, 3, "DN-1", date(2024, 3, 5))

        assert result.quantity == Decimal("3")

    def test_unknown_reference(self, costing):
        with pytest.raises(SupplierReturnNotFoundError) as exc_info:
            costing.supplier_returns.release_supplier_return("DN-404")
        assert exc_info.value.return_ref == "DN-404"

    def test_restored_stock_recosts_short_sale(self, session, costing, gadget, sell, send_back):
        # transfers keep the 12.50 fallback
        costing.stock_events.create_lot_from_transfer(
            gadget.id, Decimal("2"), Decimal("8"), date(2024, 3, 1),
        )
        send_back(gadget, 2, "DN-2", date(2024, 3, 2))
        sale = sell(gadget, 2, date(2024, 3, 5))
        assert sale.cost_of_goods_sold == Decimal("25")

        result = costing.supplier_returns.release_supplier_return("DN-2")

        assert result.recalculation.reason is CostChangeReason.RECALCULATION
        assert session.get(SaleLine, sale.sale_line_id).cost_of_goods_sold == Decimal("16")
        record = costing.audit.for_sale_line(sale.sale_line_id)[0]
        assert record.old_cost == Decimal("25")
        assert record.trigger_description == "Supplier return DN-2 cancelled"


class TestCascadeInteraction:

    def test_draws_survive_a_backdated_replay(self, session, costing, widget, buy, sell, send_back):
        lot = buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 2, "DN-3", date(2024, 3, 2))
        sale = sell(widget, 3, date(2024, 3, 5))
        assert sale.cost_of_goods_sold == Decimal("30")

        early = buy(widget, 1, "4", date(2024, 2, 28))

        assert early.recalculated
        # 1 @ 4 from the new lot, 2 @ 10 from what the return left behind
        assert session.get(SaleLine, sale.sale_line_id).cost_of_goods_sold == Decimal("24")
        assert costing.stock.returned_to_supplier_by_lot(widget.id) == {lot.lot_id: Decimal("2")}

        stored = session.get(StockLot, lot.lot_id)
        consumed = costing.stock.consumed_quantity_by_lot(widget.id).get(lot.lot_id, Decimal("0"))
        assert consumed + Decimal("2") == stored.initial_quantity - stored.remaining_quantity

    def test_replayed_sale_cannot_draw_returned_units(self, session, costing, gadget, buy, sell, send_back):
        costing.stock_events.create_lot_from_transfer(
            gadget.id, Decimal("3"), Decimal("8"), date(2024, 3, 1),
        )
        send_back(gadget, 3, "DN-4", date(2024, 3, 2))
        sale = sell(gadget, 2, date(2024, 3, 5))

        costing.cascade.recalculate_from(gadget.id, date(2024, 3, 1))

        assert session.get(SaleLine, sale.sale_line_id).cost_of_goods_sold == Decimal("25")
        assert costing.stock.get_consumptions(sale.sale_line_id) == []


class TestCheckReturnableStock:

    def test_reports_available_and_shortfall(self, costing, widget, buy, sell):
        buy(widget, 5, "10", date(2024, 3, 1))
        sell(widget, 2, date(2024, 3, 2))

        check = costing.supplier_returns.check_returnable_stock(widget.id, Decimal("4"))

        assert check.available == Decimal("3")
        assert not check.can_return
        assert check.shortfall == Decimal("1")

    def test_respects_return_date(self, costing, widget, buy):
        buy(widget, 5, "10", date(2024, 3, 10))

        check = costing.supplier_returns.check_returnable_stock(
            widget.id, Decimal("1"), as_of_date=date(2024, 3, 5),
        )

        assert check.available == Decimal("0")
        assert check.shortfall == Decimal("1")

    def test_writes_nothing(self, session, costing, widget, buy):
        buy(widget, 5, "10", date(2024, 3, 1))

        check = costing.supplier_returns.check_returnable_stock(widget.id, Decimal("5"))

        assert check.can_return
        assert check.shortfall == Decimal("0")
        assert _draw_count(session) == 0


class TestLotMaintenance:

    def test_revision_keeps_returned_units_out(self, session, costing, widget, buy, send_back):
        lot = buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 2, "DN-1", date(2024, 3, 2))

        costing.stock_events.revise_lot(lot.lot_id, quantity=Decimal("8"))

        assert session.get(StockLot, lot.lot_id).remaining_quantity == Decimal("6")

    def test_revision_below_returned_quantity_rejected(self, session, costing, widget, buy, send_back):
        lot = buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 3, "DN-1", date(2024, 3, 2))

        with pytest.raises(InvalidQuantityError):
            costing.stock_events.revise_lot(lot.lot_id, quantity=Decimal("2"))

        assert session.get(StockLot, lot.lot_id).initial_quantity == Decimal("5")

    def test_retired_lot_with_draws_is_kept(self, session, costing, widget, buy, send_back):
        lot = buy(widget, 5, "10", date(2024, 3, 1))
        send_back(widget, 2, "DN-1", date(2024, 3, 2))

        result = costing.stock_events.retire_lot(lot.lot_id)

        assert not result.deleted
        assert session.get(StockLot, lot.lot_id).retired
