"""
Tests for the workflow orchestrator.

The pipeline fixture runs cut -> sew (quality checked) -> press with one
qualified worker per stage and no auto-start, so every test drives the
stages explicitly.
"""

from decimal import Decimal

import pytest

from atelier.services import (
    catalog_service,
    inventory_service,
    order_service,
    reservation_service,
    stage_registry_service,
    worker_assignment_service,
    workflow_service,
)
from atelier.services.exceptions import (
    InvalidTransition,
    NoEligibleWorker,
    StageNotFound,
    ValidationError,
    WorkerNotFound,
)


def _row(order_id, stage_id):
    return next(
        row for row in workflow_service.get_stage_progress(order_id) if row["stage_id"] == stage_id
    )


def _finish(order_id, stage_id, minutes, quality_score=None):
    workflow_service.start_stage(order_id, stage_id)
    return workflow_service.complete_stage(
        order_id, stage_id, actual_minutes=minutes, quality_score=quality_score
    )


def _run_to_completion(order_id, stages):
    _finish(order_id, stages["cut"], 60)
    _finish(order_id, stages["sew"], 120)
    workflow_service.record_quality_check(order_id, stages["sew"], True, quality_score=9)
    return _finish(order_id, stages["press"], 30)


class TestStartProduction:
    """Tests for the first assignment when production starts."""

    def test_first_stage_is_assigned_to_qualified_worker(self, make_order, pipeline):
        order_id = make_order()

        cut = _row(order_id, pipeline["stages"]["cut"])
        sew = _row(order_id, pipeline["stages"]["sew"])

        assert cut["status"] == "assigned"
        assert cut["assigned_worker_id"] == pipeline["workers"]["cut"]
        assert cut["worker_name"] == "Ali"
        assert sew["status"] == "pending"

    def test_start_transition_is_recorded(self, make_order, pipeline):
        order_id = make_order()

        transitions = workflow_service.get_order_transitions(order_id)

        assert [t["transition_type"] for t in transitions] == ["start"]
        assert transitions[0]["from_stage_id"] is None
        assert transitions[0]["to_stage_id"] == pipeline["stages"]["cut"]
        assert transitions[0]["to_worker_id"] == pipeline["workers"]["cut"]

    def test_unstaffed_stage_is_reported_not_raised(self, pipeline, make_order):
        worker_assignment_service.set_availability(pipeline["workers"]["cut"], "unavailable")

        order_id = make_order(until="reserved")
        result = order_service.start_production(order_id)

        assert result["status"] == "in_production"
        assert result["assigned"] == []
        assert [u["stage_id"] for u in result["unassigned"]] == [pipeline["stages"]["cut"]]
        assert _row(order_id, pipeline["stages"]["cut"])["status"] == "pending"


class TestStageLifecycle:
    """Assign, start, pause, resume and complete."""

    def test_complete_advances_to_next_stage(self, make_order, pipeline):
        order_id = make_order()

        result = _finish(order_id, pipeline["stages"]["cut"], 60)

        assert result["progress"]["status"] == "completed"
        assert result["order_status"] == "in_production"
        assert result["assigned"] == [
            {"stage_id": pipeline["stages"]["sew"], "worker_id": pipeline["workers"]["sew"]}
        ]
        sew = _row(order_id, pipeline["stages"]["sew"])
        assert sew["status"] == "assigned"
        assert sew["received_from_worker_id"] == pipeline["workers"]["cut"]
        assert order_service.get_order(order_id)["progress_percentage"] == 33.0

    def test_completion_stores_raw_efficiency(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 90)

        cut = _row(order_id, pipeline["stages"]["cut"])
        assert cut["efficiency_percentage"] == pytest.approx(66.67, abs=0.01)
        assert cut["actual_hours"] == pytest.approx(1.5)

    def test_fast_work_is_not_capped(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 20)

        assert _row(order_id, pipeline["stages"]["cut"])["efficiency_percentage"] == pytest.approx(
            300.0
        )
        transition = workflow_service.get_order_transitions(order_id)[-1]
        assert transition["speed_efficiency"] == pytest.approx(300.0)
        assert transition["time_saved_minutes"] == pytest.approx(40.0)

    def test_stage_completion_consumes_its_reservations(self, make_order, pipeline):
        order_id = make_order()

        _finish(order_id, pipeline["stages"]["cut"], 60)

        used = reservation_service.get_order_reservations(order_id, status="used")
        assert [r["material_id"] for r in used] == [pipeline["materials"]["linen"]]
        stock = inventory_service.get_material_stock(pipeline["materials"]["linen"])
        assert stock["on_hand_quantity"] == Decimal("90")

    def test_quality_checked_stage_consumes_on_submission_once(self, make_order, pipeline):
        order_id = make_order()
        sew, silk = pipeline["stages"]["sew"], pipeline["materials"]["silk"]
        _finish(order_id, pipeline["stages"]["cut"], 60)

        submitted = _finish(order_id, sew, 120)

        assert submitted["progress"]["status"] == "quality_check"
        stock = inventory_service.get_material_stock(silk)
        assert stock["on_hand_quantity"] == Decimal("30")
        assert stock["reserved_quantity"] == 0

        workflow_service.record_quality_check(order_id, sew, False)
        workflow_service.start_rework(order_id, sew)
        workflow_service.complete_stage(order_id, sew, actual_minutes=30)

        assert inventory_service.get_material_stock(silk)["on_hand_quantity"] == Decimal("30")

    def test_material_usage_overrides_reserved_quantity(self, make_order, pipeline):
        order_id = make_order()
        linen = pipeline["materials"]["linen"]

        workflow_service.start_stage(order_id, pipeline["stages"]["cut"])
        workflow_service.complete_stage(
            order_id, pipeline["stages"]["cut"], actual_minutes=60, material_usage={linen: 12}
        )

        used = reservation_service.get_order_reservations(order_id, status="used")[0]
        assert used["variance_quantity"] == Decimal("2")
        assert inventory_service.get_material_stock(linen)["on_hand_quantity"] == Decimal("88")

    def test_pause_excludes_time_and_counts(self, make_order, pipeline):
        order_id = make_order()
        cut = pipeline["stages"]["cut"]
        workflow_service.start_stage(order_id, cut)

        paused = workflow_service.pause_stage(order_id, cut, "fabric delivery")
        assert paused["status"] == "paused"
        assert paused["pause_count"] == 1
        assert paused["status_reason"] == "fabric delivery"

        resumed = workflow_service.resume_stage(order_id, cut)
        assert resumed["status"] == "in_progress"
        assert resumed["status_reason"] is None

    def test_pause_requires_in_progress(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(InvalidTransition):
            workflow_service.pause_stage(order_id, pipeline["stages"]["cut"])

    def test_cannot_start_out_of_order(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(InvalidTransition):
            workflow_service.assign_stage(order_id, pipeline["stages"]["sew"])

    def test_cannot_complete_stage_that_was_not_started(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(InvalidTransition):
            workflow_service.complete_stage(order_id, pipeline["stages"]["cut"], actual_minutes=60)

    def test_negative_minutes_rejected(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.start_stage(order_id, pipeline["stages"]["cut"])

        with pytest.raises(ValidationError):
            workflow_service.complete_stage(order_id, pipeline["stages"]["cut"], actual_minutes=-5)

    def test_quality_score_out_of_range_rejected(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.start_stage(order_id, pipeline["stages"]["cut"])

        with pytest.raises(ValidationError):
            workflow_service.complete_stage(
                order_id, pipeline["stages"]["cut"], actual_minutes=60, quality_score=11
            )

    def test_unknown_stage_for_order(self, make_order):
        order_id = make_order()

        with pytest.raises(StageNotFound):
            workflow_service.start_stage(order_id, 999)

    def test_stage_operations_need_production(self, make_order, pipeline):
        order_id = make_order(until="reserved")

        with pytest.raises(InvalidTransition):
            workflow_service.start_stage(order_id, pipeline["stages"]["cut"])


class TestQualityCheck:
    """Quality pass/fail and the rework loop."""

    def test_quality_stage_waits_for_verdict(self, make_order, pipeline):
        order_id = make_order()
        _finish(order_id, pipeline["stages"]["cut"], 60)

        result = _finish(order_id, pipeline["stages"]["sew"], 120)

        assert result["progress"]["status"] == "quality_check"
        assert result["order_status"] == "in_production"
        assert _row(order_id, pipeline["stages"]["press"])["status"] == "pending"

    def test_pass_completes_and_advances(self, make_order, pipeline):
        order_id = make_order()
        _finish(order_id, pipeline["stages"]["cut"], 60)
        _finish(order_id, pipeline["stages"]["sew"], 120)

        result = workflow_service.record_quality_check(
            order_id, pipeline["stages"]["sew"], True, quality_score=9, checked_by="inspector"
        )

        assert result["progress"]["status"] == "completed"
        assert result["progress"]["quality_approved"] is True
        assert result["assigned"][0]["stage_id"] == pipeline["stages"]["press"]

    def test_fail_then_rework_then_pass(self, make_order, pipeline):
        order_id = make_order()
        sew = pipeline["stages"]["sew"]
        _finish(order_id, pipeline["stages"]["cut"], 60)
        _finish(order_id, sew, 120)

        failed = workflow_service.record_quality_check(order_id, sew, False, notes="crooked seam")
        assert failed["progress"]["status"] == "rework_required"
        assert failed["progress"]["rework_count"] == 1
        assert failed["progress"]["assigned_worker_id"] == pipeline["workers"]["sew"]

        reworked = workflow_service.start_rework(order_id, sew, authorized_by="supervisor")
        assert reworked["progress"]["status"] == "in_progress"

        workflow_service.complete_stage(order_id, sew, actual_minutes=150)
        passed = workflow_service.record_quality_check(order_id, sew, True, quality_score=8)
        assert passed["progress"]["status"] == "completed"
        assert passed["progress"]["rework_count"] == 1

        types = [t["transition_type"] for t in workflow_service.get_order_transitions(order_id)]
        assert types == ["start", "normal", "quality_fail", "rework", "normal"]

    def test_rework_with_another_worker(self, make_order, pipeline):
        order_id = make_order()
        sew = pipeline["stages"]["sew"]
        backup = worker_assignment_service.create_worker("Huda", "tailor", "6.00")
        worker_assignment_service.add_stage_assignment(backup["id"], sew)
        _finish(order_id, pipeline["stages"]["cut"], 60)
        _finish(order_id, sew, 120)
        workflow_service.record_quality_check(order_id, sew, False)

        result = workflow_service.start_rework(order_id, sew, worker_id=backup["id"])

        assert result["progress"]["assigned_worker_id"] == backup["id"]
        eligible = {w["worker_id"] for w in worker_assignment_service.find_eligible_workers(sew)}
        assert pipeline["workers"]["sew"] in eligible

    def test_rework_rejects_unqualified_worker(self, make_order, pipeline):
        order_id = make_order()
        sew = pipeline["stages"]["sew"]
        _finish(order_id, pipeline["stages"]["cut"], 60)
        _finish(order_id, sew, 120)
        workflow_service.record_quality_check(order_id, sew, False)

        with pytest.raises(ValidationError):
            workflow_service.start_rework(order_id, sew, worker_id=pipeline["workers"]["press"])

        row = _row(order_id, sew)
        assert row["status"] == "rework_required"
        assert row["assigned_worker_id"] == pipeline["workers"]["sew"]

    def test_verdict_requires_quality_check_status(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(InvalidTransition):
            workflow_service.record_quality_check(order_id, pipeline["stages"]["cut"], True)


class TestOrderCompletion:
    """The last stage closes the order."""

    def test_full_run_completes_order_with_stage_costs(self, make_order, pipeline):
        order_id = make_order()

        result = _run_to_completion(order_id, pipeline["stages"])

        assert result["order_completed"] is True
        order = order_service.get_order(order_id)
        assert order["status"] == "completed"
        assert order["progress_percentage"] == 100.0
        assert Decimal(order["final_cost"]) == Decimal("103.10")

        cut = _row(order_id, pipeline["stages"]["cut"])
        assert Decimal(cut["labor_cost"]) == Decimal("5")
        assert Decimal(cut["material_cost"]) == Decimal("20")
        assert Decimal(cut["overhead_cost"]) == Decimal("0.75")
        assert Decimal(cut["total_cost"]) == Decimal("25.75")

    def test_last_transition_is_complete(self, make_order, pipeline):
        order_id = make_order()
        _run_to_completion(order_id, pipeline["stages"])

        last = workflow_service.get_order_transitions(order_id)[-1]

        assert last["transition_type"] == "complete"
        assert last["to_stage_id"] is None
        assert last["from_worker_id"] == pipeline["workers"]["press"]

    def test_workers_are_free_after_completion(self, make_order, pipeline):
        order_id = make_order()
        _run_to_completion(order_id, pipeline["stages"])

        for stage_name, stage_id in pipeline["stages"].items():
            eligible = worker_assignment_service.find_eligible_workers(stage_id)
            assert [w["worker_id"] for w in eligible] == [pipeline["workers"][stage_name]]

    def test_ledger_is_consistent_after_completion(self, make_order, pipeline):
        order_id = make_order()
        _run_to_completion(order_id, pipeline["stages"])

        assert inventory_service.verify_ledger() == []
        assert reservation_service.get_order_reservations(order_id, status="reserved") == []


class TestSkipStage:
    """Skipping non-critical stages."""

    def test_skip_releases_stage_reservations(self, make_order, pipeline):
        order_id = make_order(until="reserved")

        result = workflow_service.skip_stage(
            order_id, pipeline["stages"]["press"], "customer presses at home", "manager"
        )

        assert result["progress"]["status"] == "skipped"
        stock = inventory_service.get_material_stock(pipeline["materials"]["buttons"])
        assert stock["reserved_quantity"] == 0
        skip = workflow_service.get_order_transitions(order_id)[-1]
        assert skip["transition_type"] == "skip"
        assert skip["transition_reason"] == "customer presses at home"

    def test_order_completes_without_skipped_stage(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.skip_stage(order_id, pipeline["stages"]["press"], "not needed")
        _finish(order_id, pipeline["stages"]["cut"], 60)
        _finish(order_id, pipeline["stages"]["sew"], 120)

        result = workflow_service.record_quality_check(order_id, pipeline["stages"]["sew"], True)

        assert result["order_completed"] is True
        order = order_service.get_order(order_id)
        assert Decimal(order["final_cost"]) == Decimal("99.55")

    def test_final_stage_quality_check_puts_order_in_quality_check(self, make_order, pipeline):
        order_id = make_order()
        workflow_service.skip_stage(order_id, pipeline["stages"]["press"], "not needed")
        _finish(order_id, pipeline["stages"]["cut"], 60)

        result = _finish(order_id, pipeline["stages"]["sew"], 120)

        assert result["order_status"] == "quality_check"

    def test_critical_stage_cannot_be_skipped(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(InvalidTransition):
            workflow_service.skip_stage(order_id, pipeline["stages"]["cut"], "in a hurry")

    def test_stage_required_by_product_cannot_be_skipped(self, make_order, pipeline):
        catalog_service.set_stage_requirement(
            pipeline["product_id"], pipeline["stages"]["press"], is_required=True
        )
        order_id = make_order()

        with pytest.raises(InvalidTransition, match="Dishdasha"):
            workflow_service.skip_stage(order_id, pipeline["stages"]["press"], "in a hurry")

    def test_reason_is_required(self, make_order, pipeline):
        order_id = make_order()

        with pytest.raises(ValidationError):
            workflow_service.skip_stage(order_id, pipeline["stages"]["press"], "  ")

    def test_started_stage_cannot_be_skipped(self, test_db):
        stage = stage_registry_service.create_stage(
            "trim", "Trimming", 1, "presser", 0.25, is_critical=False
        )
        worker = worker_assignment_service.create_worker("Sara", "presser", "4.00")
        worker_assignment_service.add_stage_assignment(worker["id"], stage["id"])
        product = catalog_service.create_product("Hem repair")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])
        order_service.start_production(order["id"])
        workflow_service.start_stage(order["id"], stage["id"])

        with pytest.raises(InvalidTransition):
            workflow_service.skip_stage(order["id"], stage["id"], "changed mind")

    def test_order_with_every_stage_skipped_completes_on_start(self, test_db):
        steam = stage_registry_service.create_stage(
            "steam", "Steaming", 1, "presser", 0.25, is_critical=False
        )
        fold = stage_registry_service.create_stage(
            "fold", "Folding", 2, "packer", 0.25, is_critical=False
        )
        product = catalog_service.create_product("Ready-made shemagh")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])
        workflow_service.skip_stage(order["id"], steam["id"], "sold as is")
        workflow_service.skip_stage(order["id"], fold["id"], "sold as is")

        started = order_service.start_production(order["id"], "manager")

        assert started["status"] == "completed"
        assert started["progress_percentage"] == 100.0
        assert started["completed_at"] is not None
        types = [t["transition_type"] for t in workflow_service.get_order_transitions(order["id"])]
        assert types == ["skip", "skip", "start", "complete"]
        assert order_service.mark_delivered(order["id"])["status"] == "delivered"

    def test_order_without_active_stages_completes_on_start(self, test_db):
        product = catalog_service.create_product("Gift card")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])

        started = order_service.start_production(order["id"])

        assert started["status"] == "completed"
        assert started["unassigned"] == []


class TestAssignment:
    """Ranked and manual assignment."""

    def test_manual_override_bypasses_availability(self, pipeline, make_order):
        cutter = pipeline["workers"]["cut"]
        worker_assignment_service.set_availability(cutter, "unavailable")
        order_id = make_order()

        with pytest.raises(NoEligibleWorker):
            workflow_service.assign_stage(order_id, pipeline["stages"]["cut"])

        result = workflow_service.assign_stage(
            order_id, pipeline["stages"]["cut"], worker_id=cutter, assigned_by="supervisor"
        )

        assert result["status"] == "assigned"
        assert result["assigned_worker_id"] == cutter
        assert result["assigned_by"] == "supervisor"

    def test_manual_override_needs_existing_worker(self, pipeline, make_order):
        worker_assignment_service.set_availability(pipeline["workers"]["cut"], "unavailable")
        order_id = make_order()

        with pytest.raises(WorkerNotFound):
            workflow_service.assign_stage(order_id, pipeline["stages"]["cut"], worker_id=999)

    def test_manual_override_rejects_worker_of_another_role(self, pipeline, make_order):
        worker_assignment_service.set_availability(pipeline["workers"]["cut"], "unavailable")
        order_id = make_order()

        with pytest.raises(ValidationError) as exc_info:
            workflow_service.assign_stage(
                order_id, pipeline["stages"]["cut"], worker_id=pipeline["workers"]["press"]
            )

        assert len(exc_info.value.errors) == 2
        row = _row(order_id, pipeline["stages"]["cut"])
        assert row["status"] == "pending"
        assert row["assigned_worker_id"] is None

    def test_manual_override_needs_assignment_for_the_stage(self, pipeline, make_order):
        worker_assignment_service.set_availability(pipeline["workers"]["cut"], "unavailable")
        trainee = worker_assignment_service.create_worker("Omar", "cutter", "4.50")
        order_id = make_order()

        with pytest.raises(ValidationError, match="no active assignment"):
            workflow_service.assign_stage(
                order_id, pipeline["stages"]["cut"], worker_id=trainee["id"]
            )

        assert _row(order_id, pipeline["stages"]["cut"])["status"] == "pending"

    def test_busy_worker_is_not_assigned_twice(self, make_order, pipeline):
        first = make_order()
        second = make_order(customer="Dana")

        assert _row(first, pipeline["stages"]["cut"])["status"] == "assigned"
        assert _row(second, pipeline["stages"]["cut"])["status"] == "pending"

        _finish(first, pipeline["stages"]["cut"], 60)
        retry = workflow_service.assign_eligible_stages(second)

        assert retry["assigned"] == [
            {"stage_id": pipeline["stages"]["cut"], "worker_id": pipeline["workers"]["cut"]}
        ]

    def test_auto_start_stage_starts_on_assignment(self, test_db):
        stage = stage_registry_service.create_stage(
            "measure", "Measuring", 1, "tailor", 0.5, auto_start=True
        )
        worker = worker_assignment_service.create_worker("Mona", "tailor", "6.00")
        worker_assignment_service.add_stage_assignment(worker["id"], stage["id"])
        product = catalog_service.create_product("Alteration")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])

        order_service.start_production(order["id"])

        assert _row(order["id"], stage["id"])["status"] == "in_progress"

    def test_auto_complete_stage_finishes_at_estimate(self, test_db):
        stage = stage_registry_service.create_stage(
            "label", "Labelling", 1, "packer", 0.5, auto_start=True, auto_complete=True
        )
        worker = worker_assignment_service.create_worker("Sara", "packer", "4.00")
        worker_assignment_service.add_stage_assignment(worker["id"], stage["id"])
        product = catalog_service.create_product("Gift wrap")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])

        order_service.start_production(order["id"])

        row = _row(order["id"], stage["id"])
        assert row["status"] == "completed"
        assert row["efficiency_percentage"] == pytest.approx(100.0)
        assert order_service.get_order(order["id"])["status"] == "completed"


class TestParallelStages:
    """Only parallel stages may be active together."""

    @pytest.fixture
    def parallel_order(self, test_db):
        stages = {}
        for sequence, name, parallel in ((1, "embroider", True), (2, "bead", True), (3, "finish", False)):
            stage = stage_registry_service.create_stage(
                name, name.title(), sequence, name, 1.0, is_parallel=parallel
            )
            worker = worker_assignment_service.create_worker(f"{name} worker", name, "5.00")
            worker_assignment_service.add_stage_assignment(worker["id"], stage["id"])
            stages[name] = stage["id"]
        product = catalog_service.create_product("Abaya")
        order = order_service.create_order("Reem", [{"product_id": product["id"], "quantity": 1}])
        order_service.approve_order(order["id"])
        order_service.reserve_order_materials(order["id"])
        order_service.start_production(order["id"])
        return order["id"], stages

    def test_parallel_stages_run_together(self, parallel_order):
        order_id, stages = parallel_order

        workflow_service.start_stage(order_id, stages["embroider"])
        workflow_service.start_stage(order_id, stages["bead"])

        assert _row(order_id, stages["embroider"])["status"] == "in_progress"
        assert _row(order_id, stages["bead"])["status"] == "in_progress"

    def test_non_parallel_stage_cannot_join_active_stages(self, parallel_order):
        order_id, stages = parallel_order
        workflow_service.start_stage(order_id, stages["embroider"])

        assert _row(order_id, stages["finish"])["status"] == "assigned"
        with pytest.raises(InvalidTransition, match="already active"):
            workflow_service.start_stage(order_id, stages["finish"])


class TestHoldBlocksStageWork:
    """Stage operations are rejected while the order is on hold."""

    def test_on_hold_rejects_and_resume_restores(self, make_order, pipeline):
        order_id = make_order()
        cut = pipeline["stages"]["cut"]
        workflow_service.start_stage(order_id, cut)
        order_service.hold_order(order_id, "customer unreachable")

        with pytest.raises(InvalidTransition, match="on hold"):
            workflow_service.complete_stage(order_id, cut, actual_minutes=60)

        order_service.resume_order(order_id)
        result = workflow_service.complete_stage(order_id, cut, actual_minutes=60)

        assert result["progress"]["status"] == "completed"
