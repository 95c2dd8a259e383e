"""
Workflow Orchestrator - moves an order's stages through production.

This module provides functions for:
- Assigning workers to stages (ranked selection or manual override)
- Starting, pausing and resuming stage work
- Completing stages, with or without a quality check
- Quality pass/fail and the rework loop
- Skipping non-critical stages
- Auto-advancing to the next eligible stages after each completion

Ordering rules:
    A stage may be assigned, started or completed only when every
    lower-sequence, non-parallel stage of the order is terminal. Two
    stages may be active at once only when both are parallel. Stage
    operations are rejected while the order is on hold.

Each completed stage writes a StageTransition with the departing worker's
performance scores, costs its labor/material/overhead and frees the worker.
When the last stage closes the order is completed and its final cost is
the sum of its stage costs.

All functions are stateless and follow the session pattern:
- If session provided: caller owns transaction, don't commit
- If session is None: create own transaction via session_scope()
"""

import logging
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import (
    Order,
    OrderItem,
    OrderStageProgress,
    OrderStatus,
    ProductStageRequirement,
    ReleaseReason,
    StageStatus,
    StageTransition,
    TransitionType,
    WorkflowStage,
)
from ..models.enums import STAGE_ACTIVE_STATUSES, STAGE_DONE_STATUSES, STAGE_TERMINAL_STATUSES
from ..utils.datetime_utils import minutes_between, utc_now
from .cost_service import (
    calculate_stage_costs,
    recompute_order_cost,
    should_recompute,
    sum_stage_costs,
)
from .database import flush_guarded, session_scope
from .exceptions import (
    InvalidTransition,
    InvariantViolation,
    NoEligibleWorker,
    OrderNotFound,
    StageNotFound,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .performance_service import calculate_efficiency, score_task
from .reservation_service import consume_stage_reservations, release_order_reservations
from .stage_registry_service import (
    find_blocking_stages,
    find_conflicting_active_stages,
    is_stage_eligible,
    next_stage_row,
)
from .worker_assignment_service import (
    mark_assigned,
    release_worker,
    require_qualified_worker,
    select_worker,
)

logger = get_service_logger(__name__)

_PRODUCTION_STATUSES = {OrderStatus.IN_PRODUCTION.value, OrderStatus.QUALITY_CHECK.value}
_SKIPPABLE_ORDER_STATUSES = _PRODUCTION_STATUSES | {OrderStatus.MATERIALS_RESERVED.value}
_TERMINAL = {status.value for status in STAGE_TERMINAL_STATUSES}
_ACTIVE = {status.value for status in STAGE_ACTIVE_STATUSES}
_DONE = {status.value for status in STAGE_DONE_STATUSES}


# =============================================================================
# Helpers
# =============================================================================


def _get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _require_order_status(order: Order, allowed, action: str) -> None:
    if order.status == OrderStatus.ON_HOLD.value:
        raise InvalidTransition("order", order.status, action, "order is on hold")
    if order.status not in allowed:
        raise InvalidTransition("order", order.status, action)


def order_rows(session: Session, order_id: int) -> List[OrderStageProgress]:
    """An order's stage progress rows in sequence order."""
    return (
        session.query(OrderStageProgress)
        .join(WorkflowStage, WorkflowStage.id == OrderStageProgress.stage_id)
        .filter(OrderStageProgress.order_id == order_id)
        .order_by(WorkflowStage.sequence)
        .all()
    )


def _find_row(rows: List[OrderStageProgress], stage_id: int, order_id: int) -> OrderStageProgress:
    for row in rows:
        if row.stage_id == stage_id:
            return row
    raise StageNotFound(stage_id, order_id)


def _require_stage_status(row: OrderStageProgress, allowed, action: str) -> None:
    if row.status not in {getattr(status, "value", status) for status in allowed}:
        raise InvalidTransition("stage", row.status, action, f"stage '{row.stage.name}'")


def _require_eligible(row: OrderStageProgress, rows, action: str) -> None:
    blocking = find_blocking_stages(row.stage, rows)
    if blocking:
        names = ", ".join(b.stage.name for b in blocking)
        raise InvalidTransition("stage", row.status, action, f"waiting on {names}")


def _require_no_conflicts(row: OrderStageProgress, rows, action: str) -> None:
    conflicts = find_conflicting_active_stages(row.stage, rows)
    if conflicts:
        names = ", ".join(c.stage.name for c in conflicts)
        raise InvalidTransition("stage", row.status, action, f"{names} already active")


def _is_startable(row: OrderStageProgress, rows) -> bool:
    return not find_blocking_stages(row.stage, rows) and not find_conflicting_active_stages(
        row.stage, rows
    )


def _check_active_invariant(order_id: int, rows) -> None:
    active = [row for row in rows if row.status in _ACTIVE]
    if len(active) > 1 and not all(row.stage.is_parallel for row in active):
        raise InvariantViolation(
            f"Order {order_id} has non-parallel stages active together: "
            f"{[row.stage.name for row in active]}"
        )


def _final_row(rows) -> Optional[OrderStageProgress]:
    candidates = [
        row
        for row in rows
        if row.status not in (StageStatus.SKIPPED.value, StageStatus.CANCELLED.value)
    ]
    return candidates[-1] if candidates else None


def _close_segment(row: OrderStageProgress, now: datetime) -> None:
    if row.work_segment_started_at is not None:
        row.worked_minutes = (row.worked_minutes or 0.0) + minutes_between(
            row.work_segment_started_at, now
        )
        row.work_segment_started_at = None


def _record_transition(
    session: Session, order_id: int, transition_type: TransitionType, now: datetime, **fields
) -> StageTransition:
    transition = StageTransition(
        order_id=order_id,
        transition_type=transition_type.value,
        transition_time=now,
        **fields,
    )
    session.add(transition)
    return transition


def _sync_order_status(order: Order, rows) -> None:
    """Keep an order in quality_check exactly while its final stage is."""
    if order.status not in _PRODUCTION_STATUSES:
        return
    final = _final_row(rows)
    if final is not None and final.status == StageStatus.QUALITY_CHECK.value:
        order.status = OrderStatus.QUALITY_CHECK.value
    else:
        order.status = OrderStatus.IN_PRODUCTION.value


def _validate_quality_score(quality_score: Optional[float]) -> None:
    if quality_score is not None and not 0 <= quality_score <= 10:
        raise ValidationError([f"Quality score must be between 0 and 10, got {quality_score}"])


def _progress_dict(row: OrderStageProgress) -> Dict[str, Any]:
    result = row.to_dict()
    result["worker_name"] = row.assigned_worker.name if row.assigned_worker else None
    return result


def _stage_result(order: Order, row: OrderStageProgress, advance: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "progress": _progress_dict(row),
        "order_id": order.id,
        "order_status": order.status,
        "order_completed": order.status == OrderStatus.COMPLETED.value,
        "assigned": advance.get("assigned", []),
        "unassigned": advance.get("unassigned", []),
    }


# =============================================================================
# Core transitions (caller holds the session)
# =============================================================================


def _assign(
    session: Session,
    order: Order,
    row: OrderStageProgress,
    rows,
    worker_id: Optional[int],
    assigned_by: Optional[str],
    now: datetime,
) -> None:
    stage = row.stage
    if worker_id is not None:
        worker = require_qualified_worker(session, worker_id, stage)
    else:
        worker = select_worker(session, stage).worker

    row.status = StageStatus.ASSIGNED.value
    row.assigned_worker_id = worker.id
    row.assigned_at = now
    row.assigned_by = assigned_by

    handed_over = [
        r
        for r in rows
        if r.stage.sequence < stage.sequence
        and r.status == StageStatus.COMPLETED.value
        and r.assigned_worker_id is not None
    ]
    if handed_over:
        previous = handed_over[-1]
        previous.delivered_to_worker_id = worker.id
        row.received_from_worker_id = previous.assigned_worker_id
        row.handover_time = now

    flush_guarded(session, "order_stage_progress", row.id)
    mark_assigned(session, worker.id, stage.id, now)

    log_operation(
        logger,
        operation="assign_stage",
        outcome="success",
        order_id=order.id,
        stage=stage.name,
        worker_id=worker.id,
        manual=worker_id is not None,
    )

    if stage.auto_start and _is_startable(row, rows):
        _start(session, order, row, rows, now)


def _start(session: Session, order: Order, row: OrderStageProgress, rows, now: datetime) -> Dict:
    row.status = StageStatus.IN_PROGRESS.value
    if row.started_at is None:
        row.started_at = now
    row.work_segment_started_at = now
    flush_guarded(session, "order_stage_progress", row.id)
    _check_active_invariant(order.id, rows)

    log_operation(
        logger, operation="start_stage", outcome="success", order_id=order.id, stage=row.stage.name
    )

    if row.stage.auto_complete:
        return _submit(
            session,
            order,
            row,
            rows,
            now,
            actual_minutes=float(row.estimated_hours or 0) * 60.0,
        )
    return {}


def _submit(
    session: Session,
    order: Order,
    row: OrderStageProgress,
    rows,
    now: datetime,
    actual_minutes: Optional[float] = None,
    quality_score: Optional[float] = None,
    material_usage: Optional[Dict[int, Any]] = None,
    completed_by: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Hand in a stage's work: stop the clock, consume its material.

    The stage's reservations are consumed here, on submission, not when a
    quality check later passes: the cloth is cut whatever the verdict, and
    rework draws no further material.
    """
    _close_segment(row, now)
    minutes = actual_minutes if actual_minutes is not None else (row.worked_minutes or 0.0)
    row.actual_hours = minutes / 60.0
    if quality_score is not None:
        row.quality_score = quality_score

    consume_stage_reservations(order.id, row.stage_id, material_usage, session=session)

    if row.stage.requires_quality_check:
        row.status = StageStatus.QUALITY_CHECK.value
        _sync_order_status(order, rows)
        flush_guarded(session, "order_stage_progress", row.id)
        log_operation(
            logger,
            operation="submit_stage",
            outcome="awaiting_quality_check",
            order_id=order.id,
            stage=row.stage.name,
        )
        return {}

    return _finalize(session, order, row, rows, now, completed_by)


def _finalize(
    session: Session,
    order: Order,
    row: OrderStageProgress,
    rows,
    now: datetime,
    completed_by: Optional[str] = None,
) -> Dict[str, Any]:
    stage = row.stage
    estimated_minutes = float(row.estimated_hours or 0) * 60.0
    actual_minutes = float(row.actual_hours or 0) * 60.0

    row.efficiency_percentage = calculate_efficiency(estimated_minutes, actual_minutes)
    row.status = StageStatus.COMPLETED.value
    row.completed_at = now
    calculate_stage_costs(row)
    flush_guarded(session, "order_stage_progress", row.id)

    release_worker(session, row.assigned_worker_id, stage.id, now, completed=True)

    following = next_stage_row(stage, rows)
    scores = score_task(estimated_minutes, actual_minutes, row.quality_score)
    _record_transition(
        session,
        order.id,
        TransitionType.NORMAL if following is not None else TransitionType.COMPLETE,
        now,
        from_stage_id=stage.id,
        to_stage_id=following.stage_id if following is not None else None,
        from_worker_id=row.assigned_worker_id,
        to_worker_id=following.assigned_worker_id if following is not None else None,
        authorized_by=completed_by,
        actual_duration_minutes=actual_minutes,
        **scores,
    )

    log_operation(
        logger,
        operation="complete_stage",
        outcome="success",
        order_id=order.id,
        stage=stage.name,
        actual_minutes=round(actual_minutes, 2),
        efficiency=row.efficiency_percentage,
    )

    if should_recompute(row.estimated_hours, row.actual_hours):
        recompute_order_cost(order.id, session=session)

    return _after_stage_closed(session, order, rows, now, completed_by)


def _complete_order(session: Session, order: Order, now: datetime) -> None:
    leftover = release_order_reservations(
        order.id, ReleaseReason.MANUAL, notes="order completed", session=session
    )
    order.status = OrderStatus.COMPLETED.value
    order.progress_percentage = 100.0
    order.completed_at = now
    flush_guarded(session, "order", order.id)
    order.final_cost = sum_stage_costs(session, order.id)
    flush_guarded(session, "order", order.id)

    log_operation(
        logger,
        operation="complete_order",
        outcome="success",
        order_id=order.id,
        final_cost=str(order.final_cost),
        released_leftovers=len(leftover),
    )


def _after_stage_closed(
    session: Session, order: Order, rows, now: datetime, assigned_by: Optional[str] = None
) -> Dict[str, Any]:
    """Complete the order or advance it once a stage reaches a terminal state."""
    if all(row.status in _TERMINAL for row in rows):
        _complete_order(session, order, now)
        return {}

    _sync_order_status(order, rows)
    done = sum(1 for row in rows if row.status in _DONE)
    fraction = round(done / len(rows) * 100) if rows else 0
    order.progress_percentage = float(min(max(order.progress_percentage or 0, fraction), 100))
    flush_guarded(session, "order", order.id)

    return advance_order(session, order, rows, now, assigned_by)


def advance_order(
    session: Session,
    order: Order,
    rows,
    now: datetime,
    assigned_by: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Assign every eligible pending stage and start assigned auto-start stages.

    A stage with no eligible worker stays pending; it is reported in the
    result's "unassigned" list rather than failing the caller.
    """
    assigned = []
    unassigned = []
    for row in rows:
        if order.status not in _PRODUCTION_STATUSES:
            break
        if row.status == StageStatus.PENDING.value and is_stage_eligible(row.stage, rows):
            try:
                _assign(session, order, row, rows, None, assigned_by, now)
            except NoEligibleWorker as e:
                unassigned.append(
                    {"stage_id": row.stage_id, "stage_name": row.stage.name, "reason": str(e)}
                )
                continue
            assigned.append({"stage_id": row.stage_id, "worker_id": row.assigned_worker_id})
        elif (
            row.status == StageStatus.ASSIGNED.value
            and row.stage.auto_start
            and _is_startable(row, rows)
        ):
            _start(session, order, row, rows, now)
    return {"assigned": assigned, "unassigned": unassigned}


# =============================================================================
# Order-level hooks (used by order_service)
# =============================================================================


def begin_production(session: Session, order: Order, started_by: Optional[str] = None) -> Dict:
    """
    Assign the first eligible stages and record the order's start transition.

    An order with no stage left to work (all skipped before the start, or
    no active stages at all) completes immediately.
    """
    now = utc_now()
    rows = order_rows(session, order.id)
    advance = advance_order(session, order, rows, now, started_by)

    first = next((row for row in rows if row.status not in _TERMINAL), None)
    _record_transition(
        session,
        order.id,
        TransitionType.START,
        now,
        from_stage_id=None,
        to_stage_id=first.stage_id if first is not None else None,
        to_worker_id=first.assigned_worker_id if first is not None else None,
        authorized_by=started_by,
    )
    flush_guarded(session, "order", order.id)

    if all(row.status in _TERMINAL for row in rows):
        _record_transition(
            session,
            order.id,
            TransitionType.COMPLETE,
            now,
            authorized_by=started_by,
            transition_reason="no stages left to work",
        )
        _complete_order(session, order, now)
    return advance


def suspend_open_work(session: Session, order_id: int, now: datetime) -> int:
    """Close the open work segments of an order's running stages."""
    rows = [row for row in order_rows(session, order_id) if row.work_segment_started_at]
    for row in rows:
        _close_segment(row, now)
    return len(rows)


def resume_open_work(session: Session, order_id: int, now: datetime) -> int:
    """Reopen work segments for an order's in-progress stages."""
    rows = [
        row
        for row in order_rows(session, order_id)
        if row.status == StageStatus.IN_PROGRESS.value and row.work_segment_started_at is None
    ]
    for row in rows:
        row.work_segment_started_at = now
    return len(rows)


def cancel_open_stages(
    session: Session, order: Order, reason: Optional[str], now: datetime
) -> Dict[str, Any]:
    """
    Cancel every non-terminal stage of an order and free its workers.

    Returns:
        Dict with keys: cancelled_stage_ids, current_stage_id (the first
        active stage at cancellation, if any), freed_worker_ids
    """
    rows = order_rows(session, order.id)
    current = next((row for row in rows if row.status in _ACTIVE), None)
    cancelled = []
    holders = []
    for row in rows:
        if row.status in _TERMINAL:
            continue
        _close_segment(row, now)
        if row.assigned_worker_id is not None:
            holders.append((row.assigned_worker_id, row.stage_id))
        row.status = StageStatus.CANCELLED.value
        row.status_reason = reason
        cancelled.append(row.stage_id)

    flush_guarded(session, "order_stage_progress")
    for worker_id, stage_id in holders:
        release_worker(session, worker_id, stage_id, now)

    return {
        "cancelled_stage_ids": cancelled,
        "current_stage_id": current.stage_id if current is not None else None,
        "freed_worker_ids": sorted({worker_id for worker_id, _ in holders}),
    }


# =============================================================================
# Stage operations
# =============================================================================


def assign_stage(
    order_id: int,
    stage_id: int,
    worker_id: Optional[int] = None,
    assigned_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Assign a worker to a pending stage.

    Without worker_id the best-ranked eligible worker is chosen. With
    worker_id (manual override) ranking and availability are bypassed, but
    the worker must be active, hold the stage's role and have an active
    assignment for the stage. Auto-start stages start right away
    when nothing blocks them.

    Raises:
        OrderNotFound / StageNotFound: Unknown order or stage row
        InvalidTransition: Order not in production, stage not pending or
            a predecessor is unfinished
        NoEligibleWorker: No ranked candidate; the stage stays pending
        WorkerNotFound: Manual override names an unknown worker
        ValidationError: Manual override names an unqualified worker
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "assign stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.PENDING], "assign")
        _require_eligible(row, rows, "assign")

        _assign(session, order, row, rows, worker_id, assigned_by, utc_now())
        return _progress_dict(row)


def start_stage(order_id: int, stage_id: int, *, session: Optional[Session] = None) -> Dict:
    """
    Start an assigned stage.

    Raises:
        InvalidTransition: Stage not assigned, a predecessor is unfinished,
            or a non-parallel stage is already active
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "start stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.ASSIGNED], "start")
        _require_eligible(row, rows, "start")
        _require_no_conflicts(row, rows, "start")

        advance = _start(session, order, row, rows, utc_now())
        return _stage_result(order, row, advance)


def pause_stage(
    order_id: int,
    stage_id: int,
    reason: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Pause an in-progress stage; paused time is not worked time."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "pause stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.IN_PROGRESS], "pause")

        now = utc_now()
        _close_segment(row, now)
        row.status = StageStatus.PAUSED.value
        row.paused_at = now
        row.pause_count = (row.pause_count or 0) + 1
        row.status_reason = reason
        flush_guarded(session, "order_stage_progress", row.id)

        log_operation(
            logger, operation="pause_stage", outcome="success", order_id=order_id, stage_id=stage_id
        )
        return _progress_dict(row)


def resume_stage(order_id: int, stage_id: int, *, session: Optional[Session] = None) -> Dict:
    """Resume a paused stage."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "resume stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.PAUSED], "resume")
        _require_no_conflicts(row, rows, "resume")

        now = utc_now()
        row.total_pause_minutes = (row.total_pause_minutes or 0.0) + minutes_between(
            row.paused_at, now
        )
        row.resumed_at = now
        row.work_segment_started_at = now
        row.status = StageStatus.IN_PROGRESS.value
        row.status_reason = None
        flush_guarded(session, "order_stage_progress", row.id)
        _check_active_invariant(order_id, rows)

        log_operation(
            logger, operation="resume_stage", outcome="success", order_id=order_id, stage_id=stage_id
        )
        return _progress_dict(row)


def complete_stage(
    order_id: int,
    stage_id: int,
    actual_minutes: Optional[float] = None,
    quality_score: Optional[float] = None,
    material_usage: Optional[Dict[int, Any]] = None,
    completed_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Finish the work on an in-progress stage.

    The stage's reservations are consumed (material_usage maps material_id
    to the quantity actually used; omitted materials use their reserved
    quantity). Stages requiring a quality check move to quality_check and
    wait for record_quality_check(); others complete immediately.

    Args:
        actual_minutes: Worked time; defaults to the accumulated work
            segments (pauses excluded)
        quality_score: Optional 0-10 score for the work

    Returns:
        Dict with keys: progress, order_id, order_status, order_completed,
        assigned, unassigned (stages auto-advance could not staff)

    Raises:
        InvalidTransition: Stage not in progress or completed out of order
        InsufficientStock: Actual usage exceeds on-hand stock
    """
    if actual_minutes is not None and actual_minutes < 0:
        raise ValidationError([f"Actual minutes cannot be negative, got {actual_minutes}"])
    _validate_quality_score(quality_score)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "complete stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.IN_PROGRESS], "complete")
        _require_eligible(row, rows, "complete")

        advance = _submit(
            session,
            order,
            row,
            rows,
            utc_now(),
            actual_minutes=actual_minutes,
            quality_score=quality_score,
            material_usage=material_usage,
            completed_by=completed_by,
        )
        return _stage_result(order, row, advance)


def record_quality_check(
    order_id: int,
    stage_id: int,
    passed: bool,
    quality_score: Optional[float] = None,
    notes: Optional[str] = None,
    checked_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Record the quality verdict on a stage awaiting its check.

    A pass completes the stage. A fail sends it to rework_required (the
    worker keeps the task), increments rework_count and logs a
    quality_fail transition.
    """
    _validate_quality_score(quality_score)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "record quality check for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.QUALITY_CHECK], "record quality check for")

        now = utc_now()
        row.quality_checked_at = now
        if notes is not None:
            row.quality_notes = notes
        if quality_score is not None:
            row.quality_score = quality_score

        if passed:
            row.quality_approved = True
            advance = _finalize(session, order, row, rows, now, checked_by)
            return _stage_result(order, row, advance)

        row.quality_approved = False
        row.status = StageStatus.REWORK_REQUIRED.value
        row.rework_count = (row.rework_count or 0) + 1
        row.status_reason = notes
        _record_transition(
            session,
            order_id,
            TransitionType.QUALITY_FAIL,
            now,
            from_stage_id=row.stage_id,
            to_stage_id=row.stage_id,
            from_worker_id=row.assigned_worker_id,
            to_worker_id=row.assigned_worker_id,
            authorized_by=checked_by,
            transition_reason=notes,
        )
        _sync_order_status(order, rows)
        flush_guarded(session, "order_stage_progress", row.id)

        log_operation(
            logger,
            operation="record_quality_check",
            outcome="failed",
            level=logging.WARNING,
            order_id=order_id,
            stage=row.stage.name,
            rework_count=row.rework_count,
        )
        return _stage_result(order, row, {})


def start_rework(
    order_id: int,
    stage_id: int,
    worker_id: Optional[int] = None,
    authorized_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Put a failed stage back in progress, optionally with another worker.

    Rework time accumulates into the same stage's worked time.
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "start rework for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.REWORK_REQUIRED], "start rework on")
        _require_no_conflicts(row, rows, "start rework on")

        now = utc_now()
        previous_worker_id = row.assigned_worker_id
        if worker_id is not None and worker_id != previous_worker_id:
            worker = require_qualified_worker(session, worker_id, row.stage)
            row.assigned_worker_id = worker.id
            row.assigned_at = now
            row.assigned_by = authorized_by

        row.status = StageStatus.IN_PROGRESS.value
        row.work_segment_started_at = now
        row.status_reason = None
        flush_guarded(session, "order_stage_progress", row.id)

        if row.assigned_worker_id != previous_worker_id:
            release_worker(session, previous_worker_id, stage_id, now)
            mark_assigned(session, row.assigned_worker_id, stage_id, now)

        _record_transition(
            session,
            order_id,
            TransitionType.REWORK,
            now,
            from_stage_id=row.stage_id,
            to_stage_id=row.stage_id,
            from_worker_id=previous_worker_id,
            to_worker_id=row.assigned_worker_id,
            authorized_by=authorized_by,
        )
        _sync_order_status(order, rows)
        flush_guarded(session, "order", order_id)
        _check_active_invariant(order_id, rows)

        log_operation(
            logger,
            operation="start_rework",
            outcome="success",
            order_id=order_id,
            stage=row.stage.name,
            worker_id=row.assigned_worker_id,
        )
        return _stage_result(order, row, {})


def _blocking_product_requirements(session: Session, order_id: int, stage_id: int) -> List[str]:
    rows = (
        session.query(OrderItem.product_name)
        .join(
            ProductStageRequirement,
            ProductStageRequirement.product_id == OrderItem.product_id,
        )
        .filter(
            OrderItem.order_id == order_id,
            ProductStageRequirement.stage_id == stage_id,
            (ProductStageRequirement.is_required.is_(True))
            | (ProductStageRequirement.is_critical.is_(True)),
        )
        .all()
    )
    return sorted({name for (name,) in rows})


def skip_stage(
    order_id: int,
    stage_id: int,
    reason: str,
    authorized_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Skip a stage that has not started.

    Critical stages, and stages a product on the order requires, can never
    be skipped. The stage's reservations are released.

    Raises:
        ValidationError: If no reason is given
        InvalidTransition: Stage already started/terminal, critical or
            required by a product
    """
    if not reason or not reason.strip():
        raise ValidationError(["A reason is required to skip a stage"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _SKIPPABLE_ORDER_STATUSES, "skip stage for")
        rows = order_rows(session, order_id)
        row = _find_row(rows, stage_id, order_id)
        _require_stage_status(row, [StageStatus.PENDING, StageStatus.ASSIGNED], "skip")

        stage = row.stage
        if stage.is_critical:
            raise InvalidTransition("stage", row.status, "skip", f"stage '{stage.name}' is critical")
        required_by = _blocking_product_requirements(session, order_id, stage_id)
        if required_by:
            raise InvalidTransition(
                "stage", row.status, "skip", f"required by {', '.join(required_by)}"
            )

        now = utc_now()
        holder = row.assigned_worker_id
        row.status = StageStatus.SKIPPED.value
        row.status_reason = reason
        flush_guarded(session, "order_stage_progress", row.id)
        release_worker(session, holder, stage_id, now)

        released = release_order_reservations(
            order_id, ReleaseReason.MANUAL, stage_id=stage_id, notes="stage skipped", session=session
        )

        following = next_stage_row(stage, rows)
        _record_transition(
            session,
            order_id,
            TransitionType.SKIP,
            now,
            from_stage_id=stage_id,
            to_stage_id=following.stage_id if following is not None else None,
            from_worker_id=holder,
            authorized_by=authorized_by,
            transition_reason=reason,
        )
        flush_guarded(session, "order", order_id)

        log_operation(
            logger,
            operation="skip_stage",
            outcome="success",
            order_id=order_id,
            stage=stage.name,
            released_materials=len(released),
        )

        advance = {}
        if order.status in _PRODUCTION_STATUSES:
            advance = _after_stage_closed(session, order, rows, now, authorized_by)
        return _stage_result(order, row, advance)


def assign_eligible_stages(
    order_id: int, assigned_by: Optional[str] = None, *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Retry staffing for every eligible pending stage of an order."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_order_status(order, _PRODUCTION_STATUSES, "assign stages for")
        rows = order_rows(session, order_id)
        return advance_order(session, order, rows, utc_now(), assigned_by)


def get_stage_progress(order_id: int, *, session: Optional[Session] = None) -> List[Dict]:
    """An order's stage rows in sequence order."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        _get_order(session, order_id)
        return [_progress_dict(row) for row in order_rows(session, order_id)]


def get_order_transitions(order_id: int, *, session: Optional[Session] = None) -> List[Dict]:
    """An order's transition log, oldest first."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        _get_order(session, order_id)
        transitions = (
            session.query(StageTransition)
            .filter_by(order_id=order_id)
            .order_by(StageTransition.id)
            .all()
        )
        return [transition.to_dict() for transition in transitions]
