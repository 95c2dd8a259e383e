"""
Worker and WorkerStageAssignment models.

Workers and their stage qualifications are maintained by HR administration.
The workflow services only touch availability_status, last_assigned_at and
the completed-task counters, plus efficiency_rating via the performance
rollup.
"""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import AvailabilityStatus, SkillLevel


class Worker(BaseModel):
    """
    Workshop employee.

    Attributes:
        name: Display name
        role: Production role (cutter, tailor, embroiderer, qc, ...)
        hourly_rate: Labor cost per hour, used for stage costing
        is_active: Inactive workers are never assigned
    """

    __tablename__ = "workers"

    name = Column(String(200), nullable=False)
    role = Column(String(50), nullable=False, index=True)
    hourly_rate = Column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    is_active = Column(Boolean, nullable=False, default=True)

    stage_assignments = relationship(
        "WorkerStageAssignment",
        back_populates="worker",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def __repr__(self) -> str:
        return f"Worker(id={self.id}, name='{self.name}', role='{self.role}')"


class WorkerStageAssignment(BaseModel):
    """
    Qualification of a worker for one stage.

    efficiency_rating is a multiplier (1.0 = nominal) kept within
    EFFICIENCY_RATING_MIN..EFFICIENCY_RATING_MAX. availability_status flips
    between available and busy as the worker takes and finishes tasks.
    """

    __tablename__ = "worker_stage_assignments"

    worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    skill_level = Column(String(20), nullable=False, default=SkillLevel.INTERMEDIATE.value)
    efficiency_rating = Column(Float, nullable=False, default=1.0)
    experience_months = Column(Integer, nullable=False, default=0)
    is_primary_assignment = Column(Boolean, nullable=False, default=False)
    priority_level = Column(Integer, nullable=False, default=1)
    max_concurrent_tasks = Column(Integer, nullable=False, default=1)
    availability_status = Column(
        String(20), nullable=False, default=AvailabilityStatus.AVAILABLE.value
    )
    availability_updated_at = Column(DateTime, nullable=True)
    last_assigned_at = Column(DateTime, nullable=True)
    completed_tasks_count = Column(Integer, nullable=False, default=0)
    last_task_completed_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    worker = relationship("Worker", back_populates="stage_assignments")
    stage = relationship("WorkflowStage")

    __table_args__ = (
        UniqueConstraint("worker_id", "stage_id", name="uq_worker_stage_assignment"),
        Index("idx_worker_stage_availability", "stage_id", "availability_status"),
        CheckConstraint(
            "max_concurrent_tasks >= 1", name="ck_worker_stage_max_tasks_positive"
        ),
        CheckConstraint(
            "efficiency_rating > 0", name="ck_worker_stage_efficiency_positive"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"WorkerStageAssignment(worker_id={self.worker_id}, stage_id={self.stage_id}, "
            f"status='{self.availability_status}')"
        )
