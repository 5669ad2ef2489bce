"""Tests for BackdatingDetector."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from costing_services.backdating import BackdatingDetector


class TestIsBackdated:

    def test_no_sales(self, costing, widget):
        assert not costing.detector.is_backdated(widget.id, date(2024, 3, 1))

    def test_costed_sale_after_event(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 10))

        assert costing.detector.is_backdated(widget.id, date(2024, 3, 9))

    def test_same_day_sale_is_not_after(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 10))

        assert not costing.detector.is_backdated(widget.id, date(2024, 3, 10))

    def test_same_day_sale_counts_when_included(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 10))

        assert costing.detector.is_backdated(widget.id, date(2024, 3, 10), include_same_day=True)
        assert not costing.detector.is_backdated(
            widget.id, date(2024, 3, 11), include_same_day=True,
        )

    def test_earlier_sale_only(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 1))

        assert not costing.detector.is_backdated(widget.id, date(2024, 3, 5))

    def test_other_product_ignored(self, costing, widget, gadget, sell):
        sell(gadget, 1, date(2024, 3, 10))

        assert not costing.detector.is_backdated(widget.id, date(2024, 3, 1))

    def test_unknown_product(self, costing):
        assert not costing.detector.is_backdated(uuid4(), date(2024, 3, 1))


class TestZeroCostLines:

    def test_finds_earliest_zero_cost_line(self, costing, widget, sell):
        sell(widget, 1, date(2024, 3, 12))
        first = sell(widget, 1, date(2024, 3, 5))

        line = costing.detector.find_earliest_zero_cost_sale_line(widget.id)

        assert line.id == first.sale_line_id

    def test_costed_lines_with_cost_ignored(self, costing, widget, buy, sell):
        buy(widget, 5, "10", date(2024, 3, 1))
        sell(widget, 1, date(2024, 3, 5))

        assert costing.detector.find_earliest_zero_cost_sale_line(widget.id) is None

    def test_fallback_costed_lines_are_not_zero(self, costing, gadget, sell):
        sale = sell(gadget, 2, date(2024, 3, 5))

        assert sale.cost_of_goods_sold == Decimal("25")
        assert costing.detector.find_earliest_zero_cost_sale_line(gadget.id) is None


class TestStartDate:

    def test_earlier_of_two_dates(self):
        assert BackdatingDetector.recalculation_start_date(
            date(2024, 3, 10), date(2024, 3, 4)
        ) == date(2024, 3, 4)
        assert BackdatingDetector.recalculation_start_date(
            date(2024, 3, 4), date(2024, 3, 10)
        ) == date(2024, 3, 4)
