"""
Catalog Service - products, materials and bill-of-materials costing.

This module provides functions for:
- Maintaining catalog rows used by the engine (materials, products, BOM)
- Calculating a product's materials breakdown for an order quantity
- Calculating blended unit cost (materials at current cost + labor)

Catalog administration proper lives outside the engine; the create/add
helpers here exist so intake, seeding and tests share one code path.

All functions are stateless and follow the session pattern:
- If session provided: caller owns transaction, don't commit
- If session is None: create own transaction via session_scope()
"""

import logging
from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import (
    BillOfMaterialsEntry,
    Material,
    Product,
    ProductStageRequirement,
    WorkflowStage,
)
from ..utils.config import get_config
from ..utils.constants import ALL_UNITS
from .database import session_scope
from .exceptions import MaterialNotFound, ProductNotFound, StageNotFound, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


# =============================================================================
# Catalog maintenance
# =============================================================================


def create_material(
    name: str,
    unit: str = "m",
    *,
    on_hand_quantity=0,
    unit_cost=0,
    reorder_level=0,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Create a material with an opening stock level.

    Raises:
        ValidationError: If name is blank, unit unknown or a quantity negative
    """
    errors = []
    if not name or not name.strip():
        errors.append("Material name is required")
    if unit not in ALL_UNITS:
        errors.append(f"Unknown unit '{unit}'")
    on_hand = _to_decimal(on_hand_quantity)
    cost = _to_decimal(unit_cost)
    if on_hand < 0:
        errors.append("on_hand_quantity cannot be negative")
    if cost < 0:
        errors.append("unit_cost cannot be negative")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        material = Material(
            name=name.strip(),
            unit=unit,
            on_hand_quantity=on_hand,
            reserved_quantity=Decimal("0"),
            unit_cost=cost,
            reorder_level=_to_decimal(reorder_level),
            notes=notes,
        )
        session.add(material)
        session.flush()
        return material.to_dict()


def create_product(
    name: str,
    *,
    sku: Optional[str] = None,
    product_type: Optional[str] = None,
    labor_cost=None,
    bom: Optional[List[Dict[str, Any]]] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Create a product, optionally with its bill of materials.

    Args:
        name: Product name
        sku: Optional unique SKU
        product_type: Grouping used by stage requirements
        labor_cost: Optional per-unit labor override
        bom: Optional list of dicts with material_id, quantity_required,
            waste_percentage and stage_id
        session: Optional database session

    Returns:
        Product dict including "bom_entries"
    """
    if not name or not name.strip():
        raise ValidationError(["Product name is required"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        product = Product(
            name=name.strip(),
            sku=sku,
            product_type=product_type,
            labor_cost=_to_decimal(labor_cost) if labor_cost is not None else None,
        )
        session.add(product)
        session.flush()

        for entry in bom or []:
            add_bom_entry(
                product.id,
                entry["material_id"],
                entry["quantity_required"],
                waste_percentage=entry.get("waste_percentage", 0),
                stage_id=entry.get("stage_id"),
                session=session,
            )

        result = product.to_dict()
        result["bom_entries"] = _list_bom_entries(session, product.id)
        return result


def add_bom_entry(
    product_id: int,
    material_id: int,
    quantity_required,
    *,
    waste_percentage=0,
    stage_id: Optional[int] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Add one material line to a product's bill of materials.

    Raises:
        ProductNotFound, MaterialNotFound, StageNotFound: Unknown references
        ValidationError: Non-positive quantity, waste outside [0, 100) or a
            duplicate (product, material) pair
    """
    quantity = _to_decimal(quantity_required)
    waste = _to_decimal(waste_percentage)
    errors = []
    if quantity <= 0:
        errors.append("quantity_required must be positive")
    if waste < 0 or waste >= 100:
        errors.append("waste_percentage must be in [0, 100)")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.get(Product, product_id) is None:
            raise ProductNotFound(product_id)
        if session.get(Material, material_id) is None:
            raise MaterialNotFound(material_id)
        if stage_id is not None and session.get(WorkflowStage, stage_id) is None:
            raise StageNotFound(stage_id)

        existing = (
            session.query(BillOfMaterialsEntry)
            .filter_by(product_id=product_id, material_id=material_id)
            .first()
        )
        if existing:
            raise ValidationError(
                [f"Material {material_id} is already in the BOM of product {product_id}"]
            )

        entry = BillOfMaterialsEntry(
            product_id=product_id,
            material_id=material_id,
            quantity_required=quantity,
            waste_percentage=waste,
            stage_id=stage_id,
        )
        session.add(entry)
        session.flush()
        return _bom_entry_to_dict(entry)


def set_stage_requirement(
    product_id: int,
    stage_id: int,
    *,
    is_required: bool = True,
    is_critical: bool = False,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Create or update whether a stage is required/critical for a product."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.get(Product, product_id) is None:
            raise ProductNotFound(product_id)
        if session.get(WorkflowStage, stage_id) is None:
            raise StageNotFound(stage_id)

        requirement = (
            session.query(ProductStageRequirement)
            .filter_by(product_id=product_id, stage_id=stage_id)
            .first()
        )
        if requirement is None:
            requirement = ProductStageRequirement(product_id=product_id, stage_id=stage_id)
            session.add(requirement)
        requirement.is_required = is_required
        requirement.is_critical = is_critical
        session.flush()
        return requirement.to_dict()


def _bom_entry_to_dict(entry: BillOfMaterialsEntry) -> Dict[str, Any]:
    result = entry.to_dict()
    result["total_quantity_with_waste"] = str(entry.total_quantity_with_waste)
    return result


# =============================================================================
# Costing
# =============================================================================


def get_labor_cost(product: Product) -> Decimal:
    """Per-unit labor cost: the product override, else the configured default."""
    if product.labor_cost is not None:
        return _to_decimal(product.labor_cost)
    return get_config().labor_cost_per_unit


def calculate_materials_breakdown(
    product_id: int,
    quantity: int,
    *,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """
    Calculate the materials needed to make `quantity` units of a product.

    For each BOM entry:
        total_quantity_needed = quantity_required * (1 + waste/100) * quantity

    Args:
        product_id: Product to break down
        quantity: Units ordered
        session: Optional database session

    Returns:
        List of dicts with keys: material_id, material_name, unit, stage_id,
        quantity_per_unit, waste_percentage, total_quantity_with_waste,
        total_quantity_needed (Decimal), unit_cost (Decimal), line_cost (Decimal)

    Raises:
        ProductNotFound: If product doesn't exist
        ValidationError: If quantity is not positive
    """
    if quantity is None or quantity <= 0:
        raise ValidationError(["quantity must be positive"])

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        product = session.get(Product, product_id)
        if product is None:
            raise ProductNotFound(product_id)

        breakdown = []
        entries = (
            session.query(BillOfMaterialsEntry)
            .filter_by(product_id=product_id)
            .order_by(BillOfMaterialsEntry.material_id)
            .all()
        )
        for entry in entries:
            per_unit = entry.total_quantity_with_waste
            needed = per_unit * Decimal(quantity)
            unit_cost = _to_decimal(entry.material.unit_cost)
            breakdown.append(
                {
                    "material_id": entry.material_id,
                    "material_name": entry.material.name,
                    "unit": entry.material.unit,
                    "stage_id": entry.stage_id,
                    "quantity_per_unit": _to_decimal(entry.quantity_required),
                    "waste_percentage": _to_decimal(entry.waste_percentage),
                    "total_quantity_with_waste": per_unit,
                    "total_quantity_needed": needed,
                    "unit_cost": unit_cost,
                    "line_cost": needed * unit_cost,
                }
            )
        return breakdown


def calculate_unit_cost(
    product_id: int,
    *,
    session: Optional[Session] = None,
) -> Decimal:
    """
    Calculate the blended cost of one unit of a product.

    unit_cost = sum(total_quantity_with_waste * material.unit_cost) + labor

    Raises:
        ProductNotFound: If product doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        return calculate_product_cost(product_id, 1, session=session)["unit_cost"]


def calculate_product_cost(
    product_id: int,
    quantity: int,
    *,
    labor_factor: float = 1.0,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Cost `quantity` units of a product at current material prices.

    Args:
        product_id: Product to cost
        quantity: Units ordered
        labor_factor: Multiplier on the labor component (projected/estimated
            hours during production; 1.0 at intake)
        session: Optional database session

    Returns:
        Dict with keys: product_id, product_name, quantity, breakdown,
        material_cost_per_unit, labor_cost_per_unit, unit_cost, total_cost
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        product = session.get(Product, product_id)
        if product is None:
            raise ProductNotFound(product_id)

        breakdown = calculate_materials_breakdown(product_id, quantity, session=session)
        material_per_unit = sum(
            (row["total_quantity_with_waste"] * row["unit_cost"] for row in breakdown),
            Decimal("0"),
        )
        labor = get_labor_cost(product) * Decimal(str(labor_factor))
        unit_cost = material_per_unit + labor
        total_cost = unit_cost * Decimal(quantity)

        log_operation(
            logger,
            operation="calculate_product_cost",
            outcome="success",
            level=logging.DEBUG,
            product_id=product_id,
            quantity=quantity,
            unit_cost=str(unit_cost),
        )

        return {
            "product_id": product.id,
            "product_name": product.name,
            "quantity": quantity,
            "breakdown": breakdown,
            "material_cost_per_unit": material_per_unit,
            "labor_cost_per_unit": labor,
            "unit_cost": unit_cost,
            "total_cost": total_cost,
        }


def get_product(product_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get a product with its BOM entries."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        product = session.get(Product, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        result = product.to_dict()
        result["bom_entries"] = _list_bom_entries(session, product.id)
        return result


def _list_bom_entries(session: Session, product_id: int) -> List[Dict[str, Any]]:
    entries = (
        session.query(BillOfMaterialsEntry)
        .filter_by(product_id=product_id)
        .order_by(BillOfMaterialsEntry.material_id)
        .all()
    )
    return [_bom_entry_to_dict(e) for e in entries]
