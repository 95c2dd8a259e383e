"""
Worker Assignment Index - picks a worker for a production stage.

This module provides functions for:
- Maintaining workers and their stage qualifications (seeding/HR pushes)
- Listing eligible workers for a stage, ranked
- Marking workers busy on assignment and available again when freed

Eligibility: the worker and the (worker, stage) assignment are active, the
worker's role matches the stage's required_role, availability_status is
'available' and the worker holds fewer open tasks than the assignment's
max_concurrent_tasks.

Ranking: the configured assignment_ranking keys, each descending
(default: is_primary_assignment, efficiency_rating, priority_level), then
least-recently-assigned first (never-assigned before anyone), then worker id.
"""

import logging
from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import (
    AvailabilityStatus,
    OrderStageProgress,
    StageStatus,
    Worker,
    WorkerStageAssignment,
    WorkflowStage,
)
from ..models.enums import SKILL_LEVEL_RANK
from ..utils.config import get_config
from ..utils.constants import EFFICIENCY_RATING_MAX, EFFICIENCY_RATING_MIN
from ..utils.datetime_utils import ensure_utc, utc_now
from .database import session_scope
from .exceptions import NoEligibleWorker, StageNotFound, ValidationError, WorkerNotFound
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

# Stage statuses that occupy one of a worker's concurrent task slots
OPEN_TASK_STATUSES = (
    StageStatus.ASSIGNED.value,
    StageStatus.IN_PROGRESS.value,
    StageStatus.PAUSED.value,
    StageStatus.QUALITY_CHECK.value,
    StageStatus.REWORK_REQUIRED.value,
)

_ASSIGNMENT_FIELDS = (
    "skill_level",
    "efficiency_rating",
    "experience_months",
    "is_primary_assignment",
    "priority_level",
    "max_concurrent_tasks",
    "availability_status",
    "is_active",
)


# =============================================================================
# Worker maintenance
# =============================================================================


def create_worker(
    name: str,
    role: str,
    hourly_rate=0,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Create a worker."""
    errors = []
    if not name or not name.strip():
        errors.append("Worker name is required")
    if not role:
        errors.append("Worker role is required")
    rate = Decimal(str(hourly_rate))
    if rate < 0:
        errors.append("hourly_rate cannot be negative")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        worker = Worker(name=name.strip(), role=role, hourly_rate=rate)
        session.add(worker)
        session.flush()
        return worker.to_dict()


def add_stage_assignment(
    worker_id: int,
    stage_id: int,
    *,
    session: Optional[Session] = None,
    **attributes: Any,
) -> Dict[str, Any]:
    """
    Qualify a worker for a stage.

    Args:
        worker_id: Worker to qualify
        stage_id: Stage the worker may be assigned to
        session: Optional database session
        **attributes: Any WorkerStageAssignment field among skill_level,
            efficiency_rating, experience_months, is_primary_assignment,
            priority_level, max_concurrent_tasks, availability_status,
            is_active

    Raises:
        WorkerNotFound, StageNotFound: Unknown references
        ValidationError: Unknown field, bad enum value or duplicate pair
    """
    unknown = sorted(set(attributes) - set(_ASSIGNMENT_FIELDS))
    errors = [f"Unknown assignment fields: {unknown}"] if unknown else []
    if "skill_level" in attributes and attributes["skill_level"] not in SKILL_LEVEL_RANK:
        errors.append(f"Unknown skill level '{attributes['skill_level']}'")
    if "availability_status" in attributes:
        valid = {s.value for s in AvailabilityStatus}
        if attributes["availability_status"] not in valid:
            errors.append(f"Unknown availability status '{attributes['availability_status']}'")
    rating = attributes.get("efficiency_rating")
    if rating is not None and not (EFFICIENCY_RATING_MIN <= rating <= EFFICIENCY_RATING_MAX):
        errors.append(
            f"efficiency_rating must be within {EFFICIENCY_RATING_MIN}-{EFFICIENCY_RATING_MAX}"
        )
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.get(Worker, worker_id) is None:
            raise WorkerNotFound(worker_id)
        if session.get(WorkflowStage, stage_id) is None:
            raise StageNotFound(stage_id)
        existing = (
            session.query(WorkerStageAssignment)
            .filter_by(worker_id=worker_id, stage_id=stage_id)
            .first()
        )
        if existing:
            raise ValidationError([f"Worker {worker_id} is already assigned to stage {stage_id}"])

        assignment = WorkerStageAssignment(worker_id=worker_id, stage_id=stage_id, **attributes)
        assignment.availability_updated_at = utc_now()
        session.add(assignment)
        session.flush()
        return assignment.to_dict()


def set_availability(
    worker_id: int,
    availability_status: str,
    *,
    stage_id: Optional[int] = None,
    session: Optional[Session] = None,
) -> int:
    """
    Set a worker's availability for one stage or for all their stages.

    Returns:
        Number of assignment rows updated
    """
    valid = {s.value for s in AvailabilityStatus}
    if availability_status not in valid:
        raise ValidationError([f"Unknown availability status '{availability_status}'"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.get(Worker, worker_id) is None:
            raise WorkerNotFound(worker_id)
        query = session.query(WorkerStageAssignment).filter_by(worker_id=worker_id)
        if stage_id is not None:
            query = query.filter_by(stage_id=stage_id)
        rows = query.all()
        now = utc_now()
        for row in rows:
            row.availability_status = availability_status
            row.availability_updated_at = now
        session.flush()
        log_operation(
            logger,
            operation="set_availability",
            outcome="success",
            worker_id=worker_id,
            stage_id=stage_id,
            availability_status=availability_status,
        )
        return len(rows)


# =============================================================================
# Eligibility and ranking
# =============================================================================


def count_open_tasks(session: Session, worker_id: int) -> int:
    """Stage rows currently held by a worker (assigned through rework)."""
    return (
        session.query(func.count(OrderStageProgress.id))
        .filter(
            OrderStageProgress.assigned_worker_id == worker_id,
            OrderStageProgress.status.in_(OPEN_TASK_STATUSES),
        )
        .scalar()
        or 0
    )


def _ranking_value(assignment: WorkerStageAssignment, key: str):
    if key == "skill_level":
        return SKILL_LEVEL_RANK.get(assignment.skill_level, 0)
    value = getattr(assignment, key)
    if isinstance(value, bool):
        return int(value)
    return value or 0


def rank_candidates(
    assignments: Sequence[WorkerStageAssignment],
    ranking: Optional[Sequence[str]] = None,
) -> List[WorkerStageAssignment]:
    """
    Order eligible assignments best-first.

    Each ranking key sorts descending; ties go to the least recently assigned
    worker (never assigned first), then to the lowest worker id.
    """
    ranking = list(ranking) if ranking is not None else get_config().assignment_ranking

    def sort_key(assignment: WorkerStageAssignment):
        last = ensure_utc(assignment.last_assigned_at)
        return (
            tuple(-_ranking_value(assignment, key) for key in ranking),
            last is not None,
            last.timestamp() if last is not None else 0.0,
            assignment.worker_id,
        )

    return sorted(assignments, key=sort_key)


def _eligible_assignments(
    session: Session,
    stage: WorkflowStage,
    exclude_worker_ids: Sequence[int] = (),
) -> List[WorkerStageAssignment]:
    candidates = (
        session.query(WorkerStageAssignment)
        .join(Worker, Worker.id == WorkerStageAssignment.worker_id)
        .filter(
            WorkerStageAssignment.stage_id == stage.id,
            WorkerStageAssignment.is_active.is_(True),
            WorkerStageAssignment.availability_status == AvailabilityStatus.AVAILABLE.value,
            Worker.is_active.is_(True),
            Worker.role == stage.required_role,
        )
        .all()
    )
    eligible = []
    for assignment in candidates:
        if assignment.worker_id in exclude_worker_ids:
            continue
        if count_open_tasks(session, assignment.worker_id) >= assignment.max_concurrent_tasks:
            continue
        eligible.append(assignment)
    return eligible


def find_eligible_workers(
    stage_id: int,
    *,
    exclude_worker_ids: Sequence[int] = (),
    ranking: Optional[Sequence[str]] = None,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    List workers eligible for a stage, best candidate first.

    Returns:
        List of dicts with keys: worker_id, worker_name, rank (1-based) and
        the assignment's ranking fields

    Raises:
        StageNotFound: If stage doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        stage = session.get(WorkflowStage, stage_id)
        if stage is None:
            raise StageNotFound(stage_id)
        ranked = rank_candidates(_eligible_assignments(session, stage, exclude_worker_ids), ranking)
        return [
            {
                "rank": position,
                "worker_id": a.worker_id,
                "worker_name": a.worker.name,
                "skill_level": a.skill_level,
                "efficiency_rating": a.efficiency_rating,
                "is_primary_assignment": a.is_primary_assignment,
                "priority_level": a.priority_level,
                "last_assigned_at": a.last_assigned_at,
            }
            for position, a in enumerate(ranked, start=1)
        ]


def select_worker(
    session: Session,
    stage: WorkflowStage,
    *,
    exclude_worker_ids: Sequence[int] = (),
) -> WorkerStageAssignment:
    """
    Pick the best eligible worker for a stage.

    Raises:
        NoEligibleWorker: If the filtered set is empty
    """
    ranked = rank_candidates(_eligible_assignments(session, stage, exclude_worker_ids))
    if not ranked:
        log_operation(
            logger,
            operation="select_worker",
            outcome="no_eligible_worker",
            level=logging.WARNING,
            stage_id=stage.id,
            required_role=stage.required_role,
        )
        raise NoEligibleWorker(
            stage.name, stage.id, reason=f"no available '{stage.required_role}' worker"
        )
    return ranked[0]


def require_qualified_worker(session: Session, worker_id: int, stage: WorkflowStage) -> Worker:
    """
    Check a manually chosen worker against a stage.

    Availability and ranking are not consulted; the worker must still be
    active, hold the stage's role and have an active assignment for it.

    Raises:
        WorkerNotFound: If worker doesn't exist
        ValidationError: If the worker is not qualified for the stage
    """
    worker = session.get(Worker, worker_id)
    if worker is None:
        raise WorkerNotFound(worker_id)

    errors = []
    if not worker.is_active:
        errors.append(f"Worker {worker_id} is inactive")
    if worker.role != stage.required_role:
        errors.append(
            f"Worker {worker_id} is a '{worker.role}', stage '{stage.name}' "
            f"needs a '{stage.required_role}'"
        )
    assignment = (
        session.query(WorkerStageAssignment)
        .filter_by(worker_id=worker_id, stage_id=stage.id, is_active=True)
        .first()
    )
    if assignment is None:
        errors.append(f"Worker {worker_id} has no active assignment for stage '{stage.name}'")
    if errors:
        raise ValidationError(errors)
    return worker


# =============================================================================
# Availability bookkeeping
# =============================================================================


def _refresh_capacity(session: Session, worker_id: int, now: datetime) -> None:
    """Flip a worker's available/busy rows to match their open task count."""
    session.flush()
    open_tasks = count_open_tasks(session, worker_id)
    rows = session.query(WorkerStageAssignment).filter_by(worker_id=worker_id).all()
    for row in rows:
        if row.availability_status not in (
            AvailabilityStatus.AVAILABLE.value,
            AvailabilityStatus.BUSY.value,
        ):
            continue
        target = (
            AvailabilityStatus.BUSY.value
            if open_tasks >= row.max_concurrent_tasks
            else AvailabilityStatus.AVAILABLE.value
        )
        if row.availability_status != target:
            row.availability_status = target
            row.availability_updated_at = now


def mark_assigned(session: Session, worker_id: int, stage_id: int, now: datetime) -> None:
    """Record an assignment: stamp last_assigned_at and mark busy at capacity."""
    assignment = (
        session.query(WorkerStageAssignment)
        .filter_by(worker_id=worker_id, stage_id=stage_id)
        .first()
    )
    if assignment is not None:
        assignment.last_assigned_at = now
    _refresh_capacity(session, worker_id, now)


def release_worker(
    session: Session,
    worker_id: Optional[int],
    stage_id: int,
    now: datetime,
    *,
    completed: bool = False,
) -> None:
    """
    Free a worker's slot after their stage row stops holding them.

    Call after the row's status has left the open-task statuses.
    """
    if worker_id is None:
        return
    if completed:
        assignment = (
            session.query(WorkerStageAssignment)
            .filter_by(worker_id=worker_id, stage_id=stage_id)
            .first()
        )
        if assignment is not None:
            assignment.completed_tasks_count = (assignment.completed_tasks_count or 0) + 1
            assignment.last_task_completed_at = now
    _refresh_capacity(session, worker_id, now)
