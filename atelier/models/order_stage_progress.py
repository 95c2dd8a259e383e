"""
OrderStageProgress model - one row per (order, stage) pair.

Rows are created for every active stage when the order's materials are
reserved and are kept after completion as the production audit trail.
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
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import BaseModel
from .enums import StageStatus


class OrderStageProgress(BaseModel):
    """
    Progress of one production stage for one order.

    Time accounting:
        worked_minutes accumulates closed work segments. While the stage is
        in_progress, work_segment_started_at marks the open segment. Pauses
        close the segment and accumulate into total_pause_minutes, so paused
        time never counts as worked time.

    efficiency_percentage is stored raw (estimated / actual * 100); clipping
    only happens for display.
    """

    __tablename__ = "order_stage_progress"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status = Column(String(30), nullable=False, default=StageStatus.PENDING.value)
    status_reason = Column(Text, nullable=True)

    assigned_worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_by = Column(String(100), nullable=True)

    assigned_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    resumed_at = Column(DateTime, nullable=True)
    quality_checked_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)

    estimated_hours = Column(Float, nullable=False, default=0.0)
    actual_hours = Column(Float, nullable=True)
    worked_minutes = Column(Float, nullable=False, default=0.0)
    work_segment_started_at = Column(DateTime, nullable=True)
    efficiency_percentage = Column(Float, nullable=True)
    pause_count = Column(Integer, nullable=False, default=0)
    total_pause_minutes = Column(Float, nullable=False, default=0.0)
    rework_count = Column(Integer, nullable=False, default=0)

    quality_score = Column(Float, nullable=True)
    quality_notes = Column(Text, nullable=True)
    quality_approved = Column(Boolean, nullable=True)

    labor_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    material_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    overhead_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    total_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))

    # Handover between workers
    received_from_worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="SET NULL"), nullable=True
    )
    delivered_to_worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="SET NULL"), nullable=True
    )
    handover_time = Column(DateTime, nullable=True)

    version_id = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="stage_progress")
    stage = relationship("WorkflowStage", lazy="joined")
    assigned_worker = relationship("Worker", foreign_keys=[assigned_worker_id])

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        UniqueConstraint("order_id", "stage_id", name="uq_order_stage_progress"),
        Index("idx_order_stage_progress_status", "status"),
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 10)",
            name="ck_order_stage_progress_quality_range",
        ),
        CheckConstraint("pause_count >= 0", name="ck_order_stage_progress_pause_count"),
        CheckConstraint("rework_count >= 0", name="ck_order_stage_progress_rework_count"),
    )

    @property
    def stage_sequence(self) -> int:
        return self.stage.sequence if self.stage else 0

    def to_dict(self, include_relationships: bool = False) -> dict:
        result = super().to_dict(include_relationships)
        if self.stage is not None:
            result["stage_name"] = self.stage.name
            result["stage_display_name"] = self.stage.display_name
            result["sequence"] = self.stage.sequence
        return result

    def __repr__(self) -> str:
        return (
            f"OrderStageProgress(order_id={self.order_id}, stage_id={self.stage_id}, "
            f"status='{self.status}')"
        )
