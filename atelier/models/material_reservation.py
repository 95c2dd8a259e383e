"""
MaterialReservation model - the reservation log.

Each row holds a quantity of one material for one order and the stage whose
completion consumes it. The sum of 'reserved' rows per material is what
Material.reserved_quantity must equal.
"""

from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..utils.datetime_utils import utc_now

from .base import BaseModel
from .enums import ReservationStatus


class MaterialReservation(BaseModel):
    """
    Reservation of a material quantity for an order.

    Status flow: reserved -> used (stage completed) or reserved -> released
    (cancelled, expired or manual). Both targets are final.

    Attributes:
        reserved_quantity: Quantity held against the material
        consumed_quantity: Actual quantity used (may differ from reserved)
        variance_quantity: consumed - reserved (positive = overrun)
        release_reason: 'cancelled', 'expired' or 'manual'
        expires_at: Soft deadline; cleared once the order is in production
    """

    __tablename__ = "material_reservations"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    material_id = Column(
        Integer, ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True, index=True
    )

    reserved_quantity = Column(Numeric(12, 4), nullable=False)
    consumed_quantity = Column(Numeric(12, 4), nullable=True)
    variance_quantity = Column(Numeric(12, 4), nullable=True)

    status = Column(String(20), nullable=False, default=ReservationStatus.RESERVED.value)
    release_reason = Column(String(20), nullable=True)

    reserved_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=True)
    consumed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    version_id = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="reservations")
    material = relationship("Material")
    stage = relationship("WorkflowStage")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_material_reservation_status_expiry", "status", "expires_at"),
        Index("idx_material_reservation_order_stage", "order_id", "stage_id"),
        CheckConstraint("reserved_quantity > 0", name="ck_reservation_quantity_positive"),
        CheckConstraint(
            "consumed_quantity IS NULL OR consumed_quantity >= 0",
            name="ck_reservation_consumed_non_negative",
        ),
        CheckConstraint(
            "status IN ('reserved', 'used', 'released')", name="ck_reservation_status"
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.RESERVED.value

    def __repr__(self) -> str:
        return (
            f"MaterialReservation(id={self.id}, order_id={self.order_id}, "
            f"material_id={self.material_id}, qty={self.reserved_quantity}, "
            f"status='{self.status}')"
        )
