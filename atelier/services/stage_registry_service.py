"""
Stage Definition Registry - the ordered production pipeline.

This module provides functions for:
- Seeding and maintaining WorkflowStage rows
- Reading the active pipeline in sequence order
- Pure ordering rules used by the workflow orchestrator:
    * a stage is eligible once every non-parallel stage with a lower
      sequence is terminal for the order
    * two stages may be active together only if both are parallel
"""

from contextlib import nullcontext
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models import StageStatus, WorkflowStage
from ..models.enums import STAGE_ACTIVE_STATUSES, STAGE_TERMINAL_STATUSES
from .database import session_scope
from .exceptions import StageNotFound, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


DEFAULT_STAGES: List[Dict[str, Any]] = [
    {
        "name": "cutting",
        "display_name": "Cutting",
        "sequence": 1,
        "required_role": "cutter",
        "estimated_hours": 2.0,
        "max_workers": 2,
        "requires_quality_check": True,
        "auto_start": True,
        "is_critical": True,
    },
    {
        "name": "sewing",
        "display_name": "Sewing",
        "sequence": 2,
        "required_role": "tailor",
        "estimated_hours": 4.0,
        "max_workers": 3,
        "requires_quality_check": True,
        "auto_start": True,
        "is_critical": True,
    },
    {
        "name": "embroidery",
        "display_name": "Embroidery",
        "sequence": 3,
        "required_role": "embroiderer",
        "estimated_hours": 3.0,
        "max_workers": 2,
        "requires_quality_check": True,
        "auto_start": True,
        "is_critical": False,
    },
    {
        "name": "quality_control",
        "display_name": "Quality Control",
        "sequence": 4,
        "required_role": "quality_inspector",
        "estimated_hours": 1.0,
        "auto_start": True,
        "is_critical": True,
    },
    {
        "name": "packaging",
        "display_name": "Packaging",
        "sequence": 5,
        "required_role": "packer",
        "estimated_hours": 0.5,
        "max_workers": 2,
        "auto_start": True,
        "is_critical": False,
    },
    {
        "name": "delivery",
        "display_name": "Delivery",
        "sequence": 6,
        "required_role": "courier",
        "estimated_hours": 0.25,
        "auto_start": True,
        "is_critical": True,
    },
]

_STAGE_FLAGS = (
    "is_parallel",
    "requires_quality_check",
    "auto_start",
    "auto_complete",
    "is_critical",
    "is_active",
)


# =============================================================================
# Maintenance
# =============================================================================


def create_stage(
    name: str,
    display_name: str,
    sequence: int,
    required_role: str,
    estimated_hours: float,
    *,
    min_workers: int = 1,
    max_workers: int = 1,
    session: Optional[Session] = None,
    **flags: bool,
) -> Dict[str, Any]:
    """
    Create a workflow stage.

    Args:
        name: Unique machine name
        display_name: Name shown in the display status
        sequence: Unique pipeline position (> 0)
        required_role: Worker role qualified for the stage
        estimated_hours: Duration estimate (> 0)
        min_workers, max_workers: Staffing bounds
        session: Optional database session
        **flags: Any of is_parallel, requires_quality_check, auto_start,
            auto_complete, is_critical, is_active

    Raises:
        ValidationError: On bad values, unknown flags or a duplicate
            name/sequence
    """
    errors = []
    if not name:
        errors.append("Stage name is required")
    if sequence is None or sequence <= 0:
        errors.append("sequence must be positive")
    if estimated_hours is None or estimated_hours <= 0:
        errors.append("estimated_hours must be positive")
    if min_workers < 1 or max_workers < min_workers:
        errors.append("worker bounds must satisfy 1 <= min_workers <= max_workers")
    unknown = sorted(set(flags) - set(_STAGE_FLAGS))
    if unknown:
        errors.append(f"Unknown stage flags: {unknown}")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        clash = (
            session.query(WorkflowStage)
            .filter((WorkflowStage.name == name) | (WorkflowStage.sequence == sequence))
            .first()
        )
        if clash:
            raise ValidationError(
                [f"Stage name '{name}' or sequence {sequence} already used by '{clash.name}'"]
            )

        stage = WorkflowStage(
            name=name,
            display_name=display_name,
            sequence=sequence,
            required_role=required_role,
            estimated_hours=float(estimated_hours),
            min_workers=min_workers,
            max_workers=max_workers,
            **flags,
        )
        session.add(stage)
        session.flush()
        return stage.to_dict()


def seed_default_stages(*, session: Optional[Session] = None) -> int:
    """
    Create the default tailoring pipeline stages that don't exist yet.

    Idempotent: stages are matched by name.

    Returns:
        Number of stages created
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        existing = {name for (name,) in session.query(WorkflowStage.name).all()}
        created = 0
        for definition in DEFAULT_STAGES:
            if definition["name"] in existing:
                continue
            session.add(WorkflowStage(**definition))
            created += 1
        session.flush()

        if created:
            log_operation(logger, operation="seed_default_stages", outcome="success", created=created)
        return created


# =============================================================================
# Reads
# =============================================================================


def get_stage(stage_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        stage = session.get(WorkflowStage, stage_id)
        if stage is None:
            raise StageNotFound(stage_id)
        return stage.to_dict()


def get_stage_by_name(name: str, *, session: Optional[Session] = None) -> Dict[str, Any]:
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        stage = session.query(WorkflowStage).filter_by(name=name).first()
        if stage is None:
            raise StageNotFound(name)
        return stage.to_dict()


def list_stages(
    *, active_only: bool = True, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """List stages in sequence order."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return [stage.to_dict() for stage in get_active_stages(session, active_only=active_only)]


def get_active_stages(session: Session, *, active_only: bool = True) -> List[WorkflowStage]:
    """Stage models in sequence order (ORM objects, for use inside a transaction)."""
    query = session.query(WorkflowStage)
    if active_only:
        query = query.filter(WorkflowStage.is_active.is_(True))
    return query.order_by(WorkflowStage.sequence).all()


def get_first_active_stage(session: Session) -> Optional[WorkflowStage]:
    return (
        session.query(WorkflowStage)
        .filter(WorkflowStage.is_active.is_(True))
        .order_by(WorkflowStage.sequence)
        .first()
    )


# =============================================================================
# Ordering rules (pure)
# =============================================================================


def _status(value) -> StageStatus:
    return value if isinstance(value, StageStatus) else StageStatus(value)


def find_blocking_stages(stage: WorkflowStage, progress_rows: Iterable) -> List:
    """
    Rows that keep `stage` from being eligible for an order.

    A row blocks when its stage has a lower sequence, is not parallel and
    is not yet terminal. Parallel predecessors never block.

    Args:
        stage: The stage being considered
        progress_rows: The order's OrderStageProgress rows (stage loaded)

    Returns:
        Blocking rows in sequence order
    """
    blocking = [
        row
        for row in progress_rows
        if row.stage.sequence < stage.sequence
        and not row.stage.is_parallel
        and _status(row.status) not in STAGE_TERMINAL_STATUSES
    ]
    return sorted(blocking, key=lambda row: row.stage.sequence)


def is_stage_eligible(stage: WorkflowStage, progress_rows: Iterable) -> bool:
    return not find_blocking_stages(stage, progress_rows)


def find_conflicting_active_stages(stage: WorkflowStage, progress_rows: Iterable) -> List:
    """
    Active rows that `stage` may not run alongside.

    Two stages may be active at once only when both are parallel.
    """
    conflicts = []
    for row in progress_rows:
        if row.stage_id == stage.id:
            continue
        if _status(row.status) not in STAGE_ACTIVE_STATUSES:
            continue
        if not (stage.is_parallel and row.stage.is_parallel):
            conflicts.append(row)
    return conflicts


def next_stage_row(stage: WorkflowStage, progress_rows: Iterable):
    """The order's next non-terminal row after `stage` in sequence, if any."""
    later = [
        row
        for row in progress_rows
        if row.stage.sequence > stage.sequence
        and _status(row.status) not in STAGE_TERMINAL_STATUSES
    ]
    return min(later, key=lambda row: row.stage.sequence) if later else None
