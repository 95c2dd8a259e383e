"""
Tests for stage costing and mid-production re-pricing.
"""

from decimal import Decimal

import pytest

from atelier.services import cost_service, inventory_service, order_service, workflow_service
from atelier.services.exceptions import OrderNotFound


def _finish(order_id, stage_id, minutes):
    workflow_service.start_stage(order_id, stage_id)
    workflow_service.complete_stage(order_id, stage_id, actual_minutes=minutes)


class TestShouldRecompute:
    """should_recompute() compares actual hours to the estimate."""

    @pytest.mark.parametrize(
        "estimated, actual, expected",
        [
            (1.0, 1.05, False),
            (1.0, 1.2, True),
            (1.0, 0.8, True),
            (2.0, 2.1, False),
        ],
    )
    def test_default_tolerance(self, estimated, actual, expected):
        assert cost_service.should_recompute(estimated, actual) is expected

    def test_explicit_tolerance(self):
        assert cost_service.should_recompute(2.0, 2.3, tolerance=0.2) is False
        assert cost_service.should_recompute(2.0, 2.3, tolerance=0.1) is True

    def test_missing_estimate_never_recomputes(self):
        assert cost_service.should_recompute(0, 5.0) is False
        assert cost_service.should_recompute(None, 5.0) is False
        assert cost_service.should_recompute(1.0, None) is False


class TestStageCosts:
    """Stage cost breakdown written at completion."""

    def test_slow_stage_costs_more_labor(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 90)
        summary = cost_service.get_order_cost_summary(order_id)

        # 1.5 h at 5.00, 20.00 of linen, 15% overhead on labor
        assert summary["labor_cost"] == Decimal("7.5")
        assert summary["material_cost"] == Decimal("20")
        assert summary["overhead_cost"] == Decimal("1.125")
        assert summary["accumulated_cost"] == Decimal("28.625")
        assert summary["final_cost"] is None

    def test_material_overrun_is_costed(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.start_stage(order_id, pipeline["stages"]["cut"])
        workflow_service.complete_stage(
            order_id,
            pipeline["stages"]["cut"],
            actual_minutes=60,
            material_usage={pipeline["materials"]["linen"]: 11},
        )

        summary = cost_service.get_order_cost_summary(order_id)

        assert summary["material_cost"] == Decimal("22")

    def test_summary_for_unknown_order(self, test_db):
        with pytest.raises(OrderNotFound):
            cost_service.get_order_cost_summary(77)


class TestRecomputeOrderCost:
    """recompute_order_cost() re-prices items during production."""

    def test_slow_stage_triggers_recompute(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 90)

        order = order_service.get_order(order_id)
        # projected 4.0 h against 3.5 h estimated scales the 10.00 labor
        assert Decimal(order["estimated_cost"]) > Decimal("91.25")
        assert Decimal(order["estimated_cost"]) < Decimal("93")

    def test_on_estimate_stage_keeps_price(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 62)

        assert Decimal(order_service.get_order(order_id)["estimated_cost"]) == Decimal("91.25")

    def test_labor_factor(self, make_order, pipeline):
        order_id = make_order()
        _finish(order_id, pipeline["stages"]["cut"], 90)

        result = cost_service.recompute_order_cost(order_id)

        assert result["labor_factor"] == pytest.approx(4.0 / 3.5)

    def test_skipped_stage_leaves_projection(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.skip_stage(order_id, pipeline["stages"]["press"], "customer will press")

        result = cost_service.recompute_order_cost(order_id)

        assert result["labor_factor"] == pytest.approx(1.0)

    def test_new_material_price_flows_into_estimate(self, make_order, pipeline):
        order_id = make_order(until="accepted")
        # 100 m @2.00 + 100 m @4.00 averages to 3.00
        inventory_service.receive_stock(pipeline["materials"]["linen"], 100, unit_cost="4.00")

        result = cost_service.recompute_order_cost(order_id)

        assert result["previous_estimated_cost"] == Decimal("91.25")
        assert result["estimated_cost"] == Decimal("101.25")
        assert Decimal(result["items"][0]["unit_cost"]) == Decimal("101.25")

    def test_unknown_order(self, test_db):
        with pytest.raises(OrderNotFound):
            cost_service.recompute_order_cost(3)
