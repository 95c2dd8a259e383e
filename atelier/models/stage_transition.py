"""
StageTransition model - immutable log of stage-to-stage movements.

Each row records one move of an order: the first stage start (from_stage_id
null), a normal handover, a skip, a quality failure, a rework loop, order
completion or cancellation (to_stage_id null). Rows are never updated.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..utils.datetime_utils import utc_now

from .base import BaseModel


class StageTransition(BaseModel):
    """
    Stage transition event.

    The performance fields score the departing worker on the stage they
    finished: speed efficiency (estimated/actual), quality efficiency
    (quality score scaled to 100) and their blend.

    This model is IMMUTABLE after creation - no updated_at field.
    """

    __tablename__ = "stage_transitions"

    # Override BaseModel's updated_at - transitions are immutable
    updated_at = None

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True
    )
    to_stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True
    )
    from_worker_id = Column(
        Integer, ForeignKey("workers.id", ondelete="SET NULL"), nullable=True
    )
    to_worker_id = Column(Integer, ForeignKey("workers.id", ondelete="SET NULL"), nullable=True)
    authorized_by = Column(String(100), nullable=True)

    transition_type = Column(String(20), nullable=False)
    transition_reason = Column(Text, nullable=True)

    performance_score = Column(Float, nullable=True)
    speed_efficiency = Column(Float, nullable=True)
    quality_efficiency = Column(Float, nullable=True)
    time_saved_minutes = Column(Float, nullable=True)
    performance_bonus_eligible = Column(Boolean, nullable=False, default=False)
    actual_duration_minutes = Column(Float, nullable=True)

    transition_time = Column(DateTime, nullable=False, default=utc_now)

    order = relationship("Order", back_populates="transitions")
    from_stage = relationship("WorkflowStage", foreign_keys=[from_stage_id])
    to_stage = relationship("WorkflowStage", foreign_keys=[to_stage_id])

    __table_args__ = (
        Index("idx_stage_transition_order_time", "order_id", "transition_time"),
        Index("idx_stage_transition_type", "transition_type"),
    )

    def __repr__(self) -> str:
        return (
            f"StageTransition(order_id={self.order_id}, type='{self.transition_type}', "
            f"from={self.from_stage_id}, to={self.to_stage_id})"
        )
