"""
Tests for the derived order display status.
"""

import pytest

from atelier.services import workflow_service
from atelier.services.display_status import derive_display_status, get_order_display_status
from atelier.services.exceptions import OrderNotFound


def _rows(*statuses):
    return [
        {"status": status, "sequence": index, "stage_name": f"stage{index}"}
        for index, status in enumerate(statuses, start=1)
    ]


class TestDeriveDisplayStatus:
    """derive_display_status() is a pure projection."""

    def test_between_stages(self):
        result = derive_display_status("in_production", _rows("completed", "completed", "pending"))

        assert result["status"] == "between_stages"
        assert result["progress"] == 67
        assert result["completed_stages"] == 2
        assert result["total_stages"] == 3

    def test_in_stage_names_the_active_stage(self):
        result = derive_display_status("in_production", _rows("completed", "in_progress", "pending"))

        assert result["status"] == "in_stage"
        assert result["stage_name"] == "stage2"
        assert result["progress"] == 33

    @pytest.mark.parametrize("stage_status", ["quality_check", "rework_required"])
    def test_quality_states_count_as_in_stage(self, stage_status):
        result = derive_display_status("quality_check", _rows("completed", stage_status))

        assert result["status"] == "in_stage"
        assert result["stage_name"] == "stage2"

    def test_paused_stage_is_not_active(self):
        result = derive_display_status("in_production", _rows("completed", "paused", "pending"))

        assert result["status"] == "between_stages"

    def test_skipped_counts_as_done(self):
        result = derive_display_status("in_production", _rows("completed", "skipped", "assigned"))

        assert result["progress"] == 67

    def test_waiting_to_start(self):
        result = derive_display_status("materials_reserved", _rows("pending", "pending"))

        assert result["status"] == "waiting_to_start"
        assert result["progress"] == 0

    def test_completed_and_cancelled_verbatim(self):
        assert derive_display_status("completed", _rows("completed"))["status"] == "completed"
        assert derive_display_status("completed", _rows("completed"))["progress"] == 100
        cancelled = derive_display_status("cancelled", _rows("completed", "cancelled"))
        assert cancelled["status"] == "cancelled"
        assert cancelled["progress"] == 50

    def test_delivered_is_verbatim_at_full_progress(self):
        result = derive_display_status("delivered", _rows("completed", "completed", "completed"))

        assert result["status"] == "delivered"
        assert result["progress"] == 100

    def test_other_statuses_fall_through(self):
        result = derive_display_status("on_hold", _rows("pending", "pending"))

        assert result["status"] == "on_hold"
        assert result["progress"] == 0

    def test_rows_are_ordered_by_sequence(self):
        rows = list(reversed(_rows("completed", "in_progress", "in_progress")))

        result = derive_display_status("in_production", rows)

        assert result["stage_name"] == "stage2"
        assert result["active_stages"] == ["stage2", "stage3"]

    def test_projection_does_not_mutate_input(self):
        rows = _rows("completed", "pending")
        snapshot = [dict(row) for row in rows]

        first = derive_display_status("in_production", rows)
        second = derive_display_status("in_production", rows)

        assert first == second
        assert rows == snapshot


class TestOrderDisplayStatus:
    """get_order_display_status() reads the stage rows on every call."""

    def test_follows_stage_progress(self, make_order, pipeline):
        order_id = make_order()
        cut = pipeline["stages"]["cut"]

        assert get_order_display_status(order_id)["status"] == "in_production"
        workflow_service.start_stage(order_id, cut)
        in_stage = get_order_display_status(order_id)
        assert in_stage["status"] == "in_stage"
        assert in_stage["stage_display_name"] == "Cutting"

        workflow_service.complete_stage(order_id, cut, actual_minutes=60)
        between = get_order_display_status(order_id)
        assert between["status"] == "between_stages"
        assert between["progress"] == 33

    def test_unknown_order(self, test_db):
        with pytest.raises(OrderNotFound):
            get_order_display_status(1)
