"""
WorkflowStage model - the ordered production pipeline definition.

Stages are static configuration. Sequence numbers are unique and define the
total order; a stage's predecessors are every stage with a lower sequence
except those marked parallel.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, Float, Integer, String, Text

from .base import BaseModel


class WorkflowStage(BaseModel):
    """
    One step of the production pipeline (cutting, sewing, embroidery, ...).

    Attributes:
        name: Unique machine name
        display_name: Human-readable name surfaced in the display status
        sequence: Unique position in the pipeline
        required_role: Worker role qualified for the stage
        estimated_hours: Default duration estimate per order
        min_workers / max_workers: Staffing bounds
        is_parallel: May run alongside its neighbours
        requires_quality_check: Completion goes through quality_check first
        auto_start: Starts as soon as a worker is assigned
        auto_complete: Completes as soon as it starts
        is_critical: Can never be skipped
        is_active: Inactive stages are not part of new orders' pipelines
    """

    __tablename__ = "workflow_stages"

    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    sequence = Column(Integer, nullable=False, unique=True)
    required_role = Column(String(50), nullable=False)
    estimated_hours = Column(Float, nullable=False, default=1.0)
    min_workers = Column(Integer, nullable=False, default=1)
    max_workers = Column(Integer, nullable=False, default=1)
    is_parallel = Column(Boolean, nullable=False, default=False)
    requires_quality_check = Column(Boolean, nullable=False, default=False)
    auto_start = Column(Boolean, nullable=False, default=False)
    auto_complete = Column(Boolean, nullable=False, default=False)
    is_critical = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("sequence > 0", name="ck_workflow_stage_sequence_positive"),
        CheckConstraint("estimated_hours > 0", name="ck_workflow_stage_hours_positive"),
        CheckConstraint(
            "min_workers >= 1 AND max_workers >= min_workers",
            name="ck_workflow_stage_worker_bounds",
        ),
    )

    @property
    def estimated_minutes(self) -> float:
        return float(self.estimated_hours or 0) * 60.0

    def __repr__(self) -> str:
        return f"WorkflowStage(id={self.id}, name='{self.name}', sequence={self.sequence})"
