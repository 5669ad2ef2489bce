"""Wiring tests for InventoryCostingEngine."""

from decimal import Decimal

import pytest

from costing_config import get_active_config
from costing_kernel.exceptions import InvalidCostError
from costing_services.engine import InventoryCostingEngine


class TestWiring:

    def test_single_instances_shared(self, costing):
        assert costing.cascade._consumer is costing.consumer
        assert costing.stock_events._cascade is costing.cascade
        assert costing.sales._cascade is costing.cascade
        assert costing.sales._locks is costing.locks
        assert costing.consumer._locks is costing.locks
        assert costing.audit_log._sequences is costing.sequences
        assert costing.supplier_returns._cascade is costing.cascade
        assert costing.supplier_returns._consumer is costing.consumer

    def test_policy_from_config(self, session):
        config = get_active_config()
        engine = InventoryCostingEngine(session, config=config)

        assert engine.policy == config.policy
        assert engine.locks._timeout_seconds == config.locking.timeout_seconds

    def test_default_policy(self, session):
        engine = InventoryCostingEngine(session)
        assert engine.policy.same_day_lots_eligible
        assert engine.policy.repair_zero_cost_sales


class TestProducts:

    def test_register_and_lookup(self, costing):
        product = costing.register_product("SKU-9", "Nine", Decimal("3"))

        assert costing.get_product_by_sku("SKU-9").id == product.id
        assert product.fallback_unit_cost == Decimal("3")
        assert product.fallback_cost_updated_at is not None

    def test_zero_fallback_has_no_timestamp(self, costing):
        product = costing.register_product("SKU-0", "Zero")
        assert product.fallback_cost_updated_at is None

    def test_negative_fallback_rejected(self, costing):
        with pytest.raises(InvalidCostError):
            costing.register_product("SKU-N", "Negative", Decimal("-1"))

    @pytest.mark.parametrize("fallback", ["NaN", "Infinity", "1.0000000001", "twelve"])
    def test_unstorable_fallback_rejected(self, costing, fallback):
        with pytest.raises(InvalidCostError):
            costing.register_product("SKU-X", "Unstorable", fallback)

    def test_unknown_sku(self, costing):
        assert costing.get_product_by_sku("missing") is None
