"""
Product catalog models.

A Product is something the workshop makes (a dishdasha, an abaya, a suit).
Its BillOfMaterialsEntry rows list the materials consumed per unit, and its
ProductStageRequirement rows decide which production stages may be skipped
for that product type.
"""

from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
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


class Product(BaseModel):
    """
    Product model representing a made-to-order garment type.

    Attributes:
        name: Product display name
        sku: Optional catalog SKU (unique when present)
        product_type: Free-form grouping (e.g. "dishdasha", "suit")
        labor_cost: Per-unit labor cost override; the configured
            labor_cost_per_unit is used when null
        is_active: Inactive products cannot be ordered

    Relationships:
        bom_entries: One-to-Many with BillOfMaterialsEntry (cascade delete)
        stage_requirements: One-to-Many with ProductStageRequirement
    """

    __tablename__ = "products"

    name = Column(String(200), nullable=False, index=True)
    sku = Column(String(100), nullable=True, unique=True)
    product_type = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    labor_cost = Column(Numeric(10, 4), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    bom_entries = relationship(
        "BillOfMaterialsEntry",
        back_populates="product",
        cascade="all, delete-orphan",
        lazy="select",
    )
    stage_requirements = relationship(
        "ProductStageRequirement",
        back_populates="product",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def __repr__(self) -> str:
        return f"Product(id={self.id}, name='{self.name}')"


class BillOfMaterialsEntry(BaseModel):
    """
    One material line of a product's bill of materials.

    quantity_required is per finished unit; waste_percentage inflates it to
    cover cutting loss. stage_id names the production stage whose completion
    consumes the material (null means the first active stage).
    """

    __tablename__ = "bill_of_materials"

    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    material_id = Column(
        Integer, ForeignKey("materials.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True
    )
    quantity_required = Column(Numeric(12, 4), nullable=False)
    waste_percentage = Column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    notes = Column(Text, nullable=True)

    product = relationship("Product", back_populates="bom_entries")
    material = relationship("Material", lazy="joined")
    stage = relationship("WorkflowStage")

    __table_args__ = (
        UniqueConstraint("product_id", "material_id", name="uq_bom_product_material"),
        CheckConstraint("quantity_required > 0", name="ck_bom_quantity_positive"),
        CheckConstraint(
            "waste_percentage >= 0 AND waste_percentage < 100",
            name="ck_bom_waste_percentage_range",
        ),
    )

    @property
    def total_quantity_with_waste(self) -> Decimal:
        """Quantity per unit including the waste allowance."""
        waste = Decimal(str(self.waste_percentage or 0))
        return Decimal(str(self.quantity_required)) * (Decimal("1") + waste / Decimal("100"))

    def __repr__(self) -> str:
        return (
            f"BillOfMaterialsEntry(product_id={self.product_id}, "
            f"material_id={self.material_id}, quantity={self.quantity_required})"
        )


class ProductStageRequirement(BaseModel):
    """Whether a production stage is required/critical for a product."""

    __tablename__ = "product_stage_requirements"

    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    stage_id = Column(
        Integer, ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False
    )
    is_required = Column(Boolean, nullable=False, default=True)
    is_critical = Column(Boolean, nullable=False, default=False)

    product = relationship("Product", back_populates="stage_requirements")
    stage = relationship("WorkflowStage")

    __table_args__ = (
        UniqueConstraint("product_id", "stage_id", name="uq_product_stage_requirement"),
        Index("idx_product_stage_requirement_stage", "stage_id"),
    )
