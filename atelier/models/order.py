"""
Order and OrderItem models.

An Order is one unit of production work for a customer. Its lifecycle status
is owned by the workflow services; the customer-facing display status is
never stored here (see services/display_status.py).
"""

import json
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
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
)
from sqlalchemy.orm import relationship

from ..utils.constants import DEFAULT_CURRENCY

from .base import BaseModel
from .enums import OrderStatus


class Order(BaseModel):
    """
    Order model.

    Attributes:
        order_number: Human-readable number, WS-YYYYMMDD-NNNN
        source_type: 'manual' or 'external' (cloned from the web shop)
        source_id: External order id for cloned orders
        status: OrderStatus value
        held_from_status: Status to restore when resuming from on_hold
        hold_reason: Why the order was put on hold
        priority: low / normal / high / urgent
        estimated_cost / final_cost / selling_price: Money, in currency
        quantity: Sum of item quantities
        progress_percentage: Stored progress; 5 once production starts,
            100 on completion
        version_id: Optimistic concurrency counter

    Relationships:
        items, stage_progress, transitions, reservations: all cascade-deleted,
        which only happens on explicit order removal.
    """

    __tablename__ = "orders"

    order_number = Column(String(30), nullable=False, unique=True, index=True)
    source_type = Column(String(20), nullable=False, default="manual")
    source_id = Column(String(100), nullable=True)
    customer_name = Column(String(200), nullable=False)

    status = Column(String(30), nullable=False, default=OrderStatus.PENDING_ACCEPTANCE.value)
    held_from_status = Column(String(30), nullable=True)
    hold_reason = Column(Text, nullable=True)
    priority = Column(String(10), nullable=False, default="normal")

    estimated_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    final_cost = Column(Numeric(12, 4), nullable=True)
    selling_price = Column(Numeric(12, 4), nullable=True)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    quantity = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float, nullable=False, default=0.0)

    accepted_at = Column(DateTime, nullable=True)
    accepted_by = Column(String(100), nullable=True)
    production_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    version_id = Column(Integer, nullable=False, default=1)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="select",
    )
    stage_progress = relationship(
        "OrderStageProgress",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="select",
    )
    transitions = relationship(
        "StageTransition",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="select",
        order_by="StageTransition.id",
    )
    reservations = relationship(
        "MaterialReservation",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="select",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("idx_order_status", "status"),
        CheckConstraint("quantity >= 0", name="ck_order_quantity_non_negative"),
        CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_order_progress_range",
        ),
        CheckConstraint("source_type IN ('manual', 'external')", name="ck_order_source_type"),
    )

    def to_dict(self, include_relationships: bool = False) -> dict:
        result = super().to_dict(False)
        if include_relationships:
            result["items"] = [item.to_dict() for item in self.items]
        return result

    def __repr__(self) -> str:
        return f"Order(id={self.id}, number='{self.order_number}', status='{self.status}')"


class OrderItem(BaseModel):
    """
    One product line of an order.

    materials_breakdown stores a JSON snapshot of the BOM calculation made
    at intake (or at the last cost recomputation).
    """

    __tablename__ = "order_items"

    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True
    )
    product_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    total_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    unit_price = Column(Numeric(12, 4), nullable=True)

    # JSON stored as Text for SQLite compatibility
    materials_breakdown = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),)

    def get_materials_breakdown(self) -> List[Dict[str, Any]]:
        if not self.materials_breakdown:
            return []
        try:
            return json.loads(self.materials_breakdown)
        except json.JSONDecodeError:
            return []

    def set_materials_breakdown(self, breakdown: List[Dict[str, Any]]) -> None:
        self.materials_breakdown = json.dumps(breakdown, default=str)

    def to_dict(self, include_relationships: bool = False) -> dict:
        result = super().to_dict(include_relationships)
        result["materials_breakdown"] = self.get_materials_breakdown()
        return result
