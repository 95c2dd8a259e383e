"""
Material model for raw materials held in the workshop inventory.

reserved_quantity is a maintained counter. The reservation log
(MaterialReservation rows in 'reserved' status) is the source of truth and
inventory_service.recompute_reserved_quantity() rebuilds the counter from it.
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Index, Integer, Numeric, String, Text

from .base import BaseModel


class Material(BaseModel):
    """
    Material model with on-hand and reserved stock counters.

    Rows are updated under a row lock (SELECT ... FOR UPDATE) and guarded by
    an optimistic version counter, so a lost update surfaces as a
    StaleDataError instead of silently over-reserving.

    Attributes:
        name: Material display name (e.g. "White cotton fabric")
        unit: Stock unit (see constants.ALL_UNITS)
        on_hand_quantity: Physical stock
        reserved_quantity: Stock promised to orders, not yet consumed
        unit_cost: Current cost per unit, used for costing
        reorder_level: Available quantity at or below which stock is low
        version_id: Optimistic concurrency counter
    """

    __tablename__ = "materials"

    name = Column(String(200), nullable=False)
    unit = Column(String(20), nullable=False, default="m")
    on_hand_quantity = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    reserved_quantity = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    unit_cost = Column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    reorder_level = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    notes = Column(Text, nullable=True)

    version_id = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_material_name", "name"),
        CheckConstraint("on_hand_quantity >= 0", name="ck_material_on_hand_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_material_reserved_non_negative"),
        CheckConstraint(
            "reserved_quantity <= on_hand_quantity", name="ck_material_reserved_within_on_hand"
        ),
        CheckConstraint("unit_cost >= 0", name="ck_material_unit_cost_non_negative"),
    )

    @property
    def available_quantity(self) -> Decimal:
        """On-hand stock not promised to any order."""
        return Decimal(str(self.on_hand_quantity or 0)) - Decimal(str(self.reserved_quantity or 0))

    def to_dict(self, include_relationships: bool = False) -> dict:
        result = super().to_dict(include_relationships)
        result["available_quantity"] = str(self.available_quantity)
        return result

    def __repr__(self) -> str:
        return (
            f"Material(id={self.id}, name='{self.name}', "
            f"on_hand={self.on_hand_quantity}, reserved={self.reserved_quantity})"
        )
