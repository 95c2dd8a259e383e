"""
Performance Service - worker efficiency, scoring and period rollups.

Efficiency is estimated / actual * 100 and is stored raw on stage rows and
transitions; the configured display range only clips what dashboards and
scores see.

Scores:
    productivity = efficiency * 0.6 + quality * 10 * 0.4
    total        = efficiency * 0.4 + quality * 10 * 0.4 + completion * 0.2
                   + 10 if efficiency > 120
                   + 15 if quality >= 9
                   + 5  if completion >= 95

A worker is bonus eligible when their total score reaches the configured
threshold.
"""

from contextlib import nullcontext
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..models import (
    OrderStageProgress,
    StageStatus,
    Worker,
    WorkerPerformanceSummary,
    WorkerStageAssignment,
)
from ..utils.config import get_config
from ..utils.constants import (
    DEFAULT_QUALITY_SCORE,
    EFFICIENCY_RATING_MAX,
    EFFICIENCY_RATING_MIN,
)
from ..utils.datetime_utils import ensure_utc, utc_now
from .database import flush_guarded, session_scope
from .exceptions import ValidationError, WorkerNotFound
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


# =============================================================================
# Per-task scoring (pure)
# =============================================================================


def calculate_efficiency(estimated_minutes: float, actual_minutes: float) -> Optional[float]:
    """
    Raw speed efficiency, estimated / actual * 100.

    Returns None when there is no positive actual time to compare against.
    """
    if actual_minutes is None or actual_minutes <= 0 or estimated_minutes is None:
        return None
    return estimated_minutes / actual_minutes * 100.0


def clip_efficiency(value: Optional[float], display_range: Optional[Tuple[float, float]] = None):
    """Clamp an efficiency into the display range (None passes through)."""
    if value is None:
        return None
    low, high = display_range or get_config().efficiency_display_range
    return max(low, min(high, value))


def productivity_score(efficiency: float, quality_score: float) -> float:
    return efficiency * 0.6 + quality_score * 10 * 0.4


def total_score(efficiency: float, quality_score: float, completion_rate: float) -> float:
    score = efficiency * 0.4 + quality_score * 10 * 0.4 + completion_rate * 0.2
    if efficiency > 120:
        score += 10
    if quality_score >= 9:
        score += 15
    if completion_rate >= 95:
        score += 5
    return score


def score_task(
    estimated_minutes: float,
    actual_minutes: float,
    quality_score: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Score one finished stage for its StageTransition row.

    A missing quality score counts as DEFAULT_QUALITY_SCORE. The single
    task counts as fully completed.

    Returns:
        Dict with keys: speed_efficiency (raw), quality_efficiency,
        performance_score, time_saved_minutes, performance_bonus_eligible
    """
    quality = DEFAULT_QUALITY_SCORE if quality_score is None else quality_score
    raw = calculate_efficiency(estimated_minutes, actual_minutes)
    shown = clip_efficiency(raw if raw is not None else 100.0)

    time_saved = None
    if estimated_minutes is not None and actual_minutes is not None:
        time_saved = estimated_minutes - actual_minutes

    return {
        "speed_efficiency": raw,
        "quality_efficiency": quality * 10.0,
        "performance_score": productivity_score(shown, quality),
        "time_saved_minutes": time_saved,
        "performance_bonus_eligible": total_score(shown, quality, 100.0)
        >= get_config().bonus_score_threshold,
    }


# =============================================================================
# Period rollups
# =============================================================================


def _period_bounds(period_start: date, period_end: date) -> Tuple[datetime, datetime]:
    if period_end < period_start:
        raise ValidationError([f"Period end {period_end} is before start {period_start}"])
    start = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def _within(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    value = ensure_utc(value)
    return value is not None and start <= value < end


def _completed_in_period(
    session: Session, start: datetime, end: datetime, worker_id: Optional[int] = None
) -> List[OrderStageProgress]:
    query = session.query(OrderStageProgress).filter(
        OrderStageProgress.status == StageStatus.COMPLETED.value,
        OrderStageProgress.assigned_worker_id.isnot(None),
    )
    if worker_id is not None:
        query = query.filter(OrderStageProgress.assigned_worker_id == worker_id)
    return [row for row in query.all() if _within(row.completed_at, start, end)]


def _rollup(session: Session, worker: Worker, start: datetime, end: datetime) -> Dict[str, Any]:
    rows = session.query(OrderStageProgress).filter_by(assigned_worker_id=worker.id).all()
    assigned = [row for row in rows if _within(row.assigned_at, start, end)]
    completed = [
        row
        for row in rows
        if row.status == StageStatus.COMPLETED.value and _within(row.completed_at, start, end)
    ]

    tasks_assigned = len(assigned)
    tasks_completed = len(completed)
    if tasks_assigned:
        completion_rate = min(tasks_completed / tasks_assigned * 100.0, 100.0)
    else:
        completion_rate = 100.0 if tasks_completed else 0.0

    worked = [float(row.actual_hours or 0) * 60.0 for row in completed]
    estimated = sum(float(row.estimated_hours or 0) * 60.0 for row in completed)
    total_worked = sum(worked)
    average_minutes = total_worked / tasks_completed if tasks_completed else 0.0

    scores = [row.quality_score for row in completed if row.quality_score is not None]
    if scores:
        quality = sum(scores) / len(scores)
    else:
        quality = float(DEFAULT_QUALITY_SCORE) if tasks_completed else 0.0

    speed = calculate_efficiency(estimated, total_worked) or 0.0
    rework = sum(row.rework_count or 0 for row in completed)
    first_pass = sum(1 for row in completed if not row.rework_count)
    first_pass_yield = first_pass / tasks_completed * 100.0 if tasks_completed else 0.0

    shown = clip_efficiency(speed)
    productivity = productivity_score(shown, quality) if tasks_completed else 0.0
    total = total_score(shown, quality, completion_rate) if tasks_completed else 0.0

    return {
        "worker_id": worker.id,
        "worker_name": worker.name,
        "tasks_assigned": tasks_assigned,
        "tasks_completed": tasks_completed,
        "completion_rate": completion_rate,
        "average_task_minutes": average_minutes,
        "total_worked_minutes": total_worked,
        "average_quality_score": quality,
        "speed_efficiency": speed,
        "rework_count": rework,
        "first_pass_yield": first_pass_yield,
        "productivity_score": productivity,
        "total_score": total,
        "bonus_eligible": total >= get_config().bonus_score_threshold,
    }


def compute_worker_rollup(
    worker_id: int,
    period_start: date,
    period_end: date,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Compute one worker's performance over a period without storing it.

    A task counts as assigned when its assigned_at falls in the period and
    as completed when its completed_at does. Skipped and cancelled stages
    never count as completed.

    Raises:
        WorkerNotFound: If worker doesn't exist
        ValidationError: If the period is inverted
    """
    start, end = _period_bounds(period_start, period_end)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        worker = session.get(Worker, worker_id)
        if worker is None:
            raise WorkerNotFound(worker_id)
        result = _rollup(session, worker, start, end)
        result["period_start"] = period_start.isoformat()
        result["period_end"] = period_end.isoformat()
        return result


def rollup_worker_performance(
    period_start: date,
    period_end: date,
    *,
    worker_ids: Optional[List[int]] = None,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    Compute and store period summaries for workers (all active by default).

    Rerunning for the same period overwrites the stored summary.
    """
    start, end = _period_bounds(period_start, period_end)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Worker)
        if worker_ids is not None:
            query = query.filter(Worker.id.in_(worker_ids))
        else:
            query = query.filter(Worker.is_active.is_(True))

        now = utc_now()
        results = []
        for worker in query.order_by(Worker.id).all():
            data = _rollup(session, worker, start, end)
            summary = (
                session.query(WorkerPerformanceSummary)
                .filter_by(worker_id=worker.id, period_start=period_start, period_end=period_end)
                .first()
            )
            if summary is None:
                summary = WorkerPerformanceSummary(
                    worker_id=worker.id, period_start=period_start, period_end=period_end
                )
                session.add(summary)
            for key, value in data.items():
                if hasattr(summary, key) and key != "worker_id":
                    setattr(summary, key, value)
            summary.computed_at = now
            results.append(data)

        flush_guarded(session, "worker_performance")

        log_operation(
            logger,
            operation="rollup_worker_performance",
            outcome="success",
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
            workers=len(results),
        )
        return results


def refresh_efficiency_ratings(
    period_start: date,
    period_end: date,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    Write period efficiency back to worker stage assignments.

    The rating is total estimated over total actual time for the worker's
    completed rows of that stage, clamped to the rating bounds. Assignments
    with no completed work in the period keep their rating.
    """
    start, end = _period_bounds(period_start, period_end)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        totals: Dict[Tuple[int, int], List[float]] = {}
        for row in _completed_in_period(session, start, end):
            bucket = totals.setdefault((row.assigned_worker_id, row.stage_id), [0.0, 0.0])
            bucket[0] += float(row.estimated_hours or 0)
            bucket[1] += float(row.actual_hours or 0)

        updated = []
        for (worker_id, stage_id), (estimated, actual) in sorted(totals.items()):
            if actual <= 0:
                continue
            assignment = (
                session.query(WorkerStageAssignment)
                .filter_by(worker_id=worker_id, stage_id=stage_id)
                .first()
            )
            if assignment is None:
                continue
            rating = max(EFFICIENCY_RATING_MIN, min(EFFICIENCY_RATING_MAX, estimated / actual))
            previous = assignment.efficiency_rating
            assignment.efficiency_rating = rating
            updated.append(
                {
                    "worker_id": worker_id,
                    "stage_id": stage_id,
                    "previous_rating": previous,
                    "efficiency_rating": rating,
                }
            )

        flush_guarded(session, "worker_stage_assignment")
        logger.info(f"Refreshed {len(updated)} efficiency ratings")
        return updated


def rank_workers(
    period_start: date,
    period_end: date,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """Active workers' period rollups, best total score first."""
    start, end = _period_bounds(period_start, period_end)
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        workers = session.query(Worker).filter(Worker.is_active.is_(True)).all()
        rollups = [_rollup(session, worker, start, end) for worker in workers]
        rollups.sort(key=lambda r: (-r["total_score"], r["worker_id"]))
        for position, rollup in enumerate(rollups, start=1):
            rollup["rank"] = position
        return rollups
