"""
WorkerPerformanceSummary model - per-period worker rollups.

Summaries are derived data: performance_service recomputes them from
OrderStageProgress rows and upserts by (worker, period), so rerunning a
rollup for the same period overwrites rather than duplicates.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel


class WorkerPerformanceSummary(BaseModel):
    """Rollup of one worker's stage work over [period_start, period_end]."""

    __tablename__ = "worker_performance_summaries"

    worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    tasks_assigned = Column(Integer, nullable=False, default=0)
    tasks_completed = Column(Integer, nullable=False, default=0)
    completion_rate = Column(Float, nullable=False, default=0.0)
    average_task_minutes = Column(Float, nullable=False, default=0.0)
    total_worked_minutes = Column(Float, nullable=False, default=0.0)
    average_quality_score = Column(Float, nullable=False, default=0.0)
    speed_efficiency = Column(Float, nullable=False, default=0.0)
    rework_count = Column(Integer, nullable=False, default=0)
    first_pass_yield = Column(Float, nullable=False, default=0.0)
    productivity_score = Column(Float, nullable=False, default=0.0)
    total_score = Column(Float, nullable=False, default=0.0)
    bonus_eligible = Column(Boolean, nullable=False, default=False)
    computed_at = Column(DateTime, nullable=True)

    worker = relationship("Worker")

    __table_args__ = (
        UniqueConstraint(
            "worker_id", "period_start", "period_end", name="uq_worker_performance_period"
        ),
    )
