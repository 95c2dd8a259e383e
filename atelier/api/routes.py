"""
API routes for orders, stages, reservations, materials and performance.

Handlers are thin: they call one service function each and let
ServiceError subclasses propagate to the handlers registered in app.py.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Query, status

from ..services import (
    cost_service,
    inventory_service,
    order_service,
    performance_service,
    reservation_service,
    worker_assignment_service,
    workflow_service,
)
from ..services.display_status import get_order_display_status
from .schemas import (
    ApproveRequest,
    AssignRequest,
    CancelRequest,
    CompleteStageRequest,
    ConsumeRequest,
    HoldRequest,
    OrderCreate,
    PauseRequest,
    PeriodRequest,
    QualityCheckRequest,
    ReleaseRequest,
    ReworkRequest,
    SkipRequest,
    StartProductionRequest,
)

orders = APIRouter(prefix="/orders", tags=["orders"])
stages = APIRouter(prefix="/orders/{order_id}/stages", tags=["stages"])
reservations = APIRouter(prefix="/reservations", tags=["reservations"])
materials = APIRouter(prefix="/materials", tags=["materials"])
performance = APIRouter(tags=["performance"])


# =============================================================================
# Orders
# =============================================================================


@orders.post("", status_code=status.HTTP_201_CREATED)
def create_order(body: OrderCreate) -> Dict[str, Any]:
    return order_service.create_order(
        body.customer_name,
        [item.model_dump() for item in body.items],
        priority=body.priority,
        selling_price=body.selling_price,
        currency=body.currency,
        notes=body.notes,
    )


@orders.post("/clone", status_code=status.HTTP_201_CREATED)
def clone_external_order(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    """Clone an order received from the web shop."""
    return order_service.clone_external_order(payload)


@orders.get("")
def list_orders(
    order_status: Optional[str] = Query(None, alias="status"),
    by_priority: bool = False,
) -> List[Dict[str, Any]]:
    return order_service.list_orders(order_status, by_priority=by_priority)


@orders.get("/{order_id}")
def get_order(order_id: int) -> Dict[str, Any]:
    return order_service.get_order(order_id)


@orders.delete("/{order_id}")
def delete_order(order_id: int) -> Dict[str, Any]:
    return order_service.delete_order(order_id)


@orders.post("/{order_id}/approve")
def approve_order(order_id: int, body: Optional[ApproveRequest] = None):
    body = body or ApproveRequest()
    return order_service.approve_order(order_id, body.approved_by)


@orders.post("/{order_id}/reserve")
def reserve_order_materials(order_id: int) -> Dict[str, Any]:
    return order_service.reserve_order_materials(order_id)


@orders.post("/{order_id}/start")
def start_production(order_id: int, body: Optional[StartProductionRequest] = None):
    body = body or StartProductionRequest()
    return order_service.start_production(order_id, body.started_by)


@orders.post("/{order_id}/hold")
def hold_order(order_id: int, body: Optional[HoldRequest] = None):
    body = body or HoldRequest()
    return order_service.hold_order(order_id, body.reason)


@orders.post("/{order_id}/resume")
def resume_order(order_id: int) -> Dict[str, Any]:
    return order_service.resume_order(order_id)


@orders.post("/{order_id}/cancel")
def cancel_order(order_id: int, body: Optional[CancelRequest] = None):
    body = body or CancelRequest()
    return order_service.cancel_order(order_id, body.reason, body.cancelled_by)


@orders.post("/{order_id}/deliver")
def mark_delivered(order_id: int) -> Dict[str, Any]:
    return order_service.mark_delivered(order_id)


@orders.get("/{order_id}/display-status")
def display_status(order_id: int) -> Dict[str, Any]:
    return get_order_display_status(order_id)


@orders.get("/{order_id}/transitions")
def order_transitions(order_id: int) -> List[Dict[str, Any]]:
    return workflow_service.get_order_transitions(order_id)


@orders.get("/{order_id}/reservations")
def order_reservations(
    order_id: int, reservation_status: Optional[str] = Query(None, alias="status")
) -> List[Dict[str, Any]]:
    return reservation_service.get_order_reservations(order_id, status=reservation_status)


@orders.get("/{order_id}/cost")
def order_cost(order_id: int) -> Dict[str, Any]:
    return cost_service.get_order_cost_summary(order_id)


@orders.post("/{order_id}/cost/recompute")
def recompute_order_cost(order_id: int) -> Dict[str, Any]:
    return cost_service.recompute_order_cost(order_id)


# =============================================================================
# Stages
# =============================================================================


@stages.get("")
def stage_progress(order_id: int) -> List[Dict[str, Any]]:
    return workflow_service.get_stage_progress(order_id)


@stages.post("/assign-eligible")
def assign_eligible(order_id: int) -> Dict[str, Any]:
    return workflow_service.assign_eligible_stages(order_id)


@stages.post("/{stage_id}/assign")
def assign_stage(order_id: int, stage_id: int, body: Optional[AssignRequest] = None):
    body = body or AssignRequest()
    return workflow_service.assign_stage(order_id, stage_id, body.worker_id, body.assigned_by)


@stages.post("/{stage_id}/start")
def start_stage(order_id: int, stage_id: int) -> Dict[str, Any]:
    return workflow_service.start_stage(order_id, stage_id)


@stages.post("/{stage_id}/pause")
def pause_stage(order_id: int, stage_id: int, body: Optional[PauseRequest] = None):
    body = body or PauseRequest()
    return workflow_service.pause_stage(order_id, stage_id, body.reason)


@stages.post("/{stage_id}/resume")
def resume_stage(order_id: int, stage_id: int) -> Dict[str, Any]:
    return workflow_service.resume_stage(order_id, stage_id)


@stages.post("/{stage_id}/complete")
def complete_stage(
    order_id: int,
    stage_id: int,
    body: Optional[CompleteStageRequest] = None,
):
    body = body or CompleteStageRequest()
    return workflow_service.complete_stage(
        order_id,
        stage_id,
        actual_minutes=body.actual_minutes,
        quality_score=body.quality_score,
        material_usage=body.material_usage,
        completed_by=body.completed_by,
    )


@stages.post("/{stage_id}/quality-check")
def quality_check(order_id: int, stage_id: int, body: QualityCheckRequest):
    return workflow_service.record_quality_check(
        order_id,
        stage_id,
        body.passed,
        quality_score=body.quality_score,
        notes=body.notes,
        checked_by=body.checked_by,
    )


@stages.post("/{stage_id}/rework")
def start_rework(order_id: int, stage_id: int, body: Optional[ReworkRequest] = None):
    body = body or ReworkRequest()
    return workflow_service.start_rework(order_id, stage_id, body.worker_id, body.authorized_by)


@stages.post("/{stage_id}/skip")
def skip_stage(order_id: int, stage_id: int, body: SkipRequest):
    return workflow_service.skip_stage(order_id, stage_id, body.reason, body.authorized_by)


# =============================================================================
# Reservations and materials
# =============================================================================


@reservations.post("/{reservation_id}/consume")
def consume_reservation(reservation_id: int, body: Optional[ConsumeRequest] = None):
    body = body or ConsumeRequest()
    return reservation_service.consume(reservation_id, body.actual_quantity)


@reservations.post("/{reservation_id}/release")
def release_reservation(reservation_id: int, body: Optional[ReleaseRequest] = None):
    body = body or ReleaseRequest()
    return reservation_service.release(reservation_id, notes=body.notes)


@reservations.post("/sweep")
def sweep_reservations() -> Dict[str, Any]:
    return reservation_service.sweep_expired_reservations()


@materials.get("")
def list_materials(low_stock: bool = False) -> List[Dict[str, Any]]:
    if low_stock:
        return inventory_service.get_low_stock_materials()
    return inventory_service.list_materials()


@materials.get("/{material_id}")
def material_stock(material_id: int) -> Dict[str, Any]:
    return inventory_service.get_material_stock(material_id)


@materials.get("/{material_id}/movements")
def material_movements(material_id: int) -> List[Dict[str, Any]]:
    return inventory_service.get_material_movements(material_id)


# =============================================================================
# Workers and performance
# =============================================================================


@performance.get("/stages/{stage_id}/eligible-workers", tags=["workers"])
def eligible_workers(stage_id: int) -> List[Dict[str, Any]]:
    return worker_assignment_service.find_eligible_workers(stage_id)


@performance.get("/workers/{worker_id}/performance")
def worker_performance(
    worker_id: int, start: date = Query(...), end: date = Query(...)
) -> Dict[str, Any]:
    return performance_service.compute_worker_rollup(worker_id, start, end)


@performance.get("/performance/ranking")
def worker_ranking(start: date = Query(...), end: date = Query(...)) -> List[Dict[str, Any]]:
    return performance_service.rank_workers(start, end)


@performance.post("/performance/rollup")
def rollup_performance(body: PeriodRequest) -> Dict[str, Any]:
    summaries = performance_service.rollup_worker_performance(body.start, body.end)
    ratings = performance_service.refresh_efficiency_ratings(body.start, body.end)
    return {"summaries": summaries, "ratings": ratings}
