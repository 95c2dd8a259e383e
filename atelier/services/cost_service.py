"""
Cost Service - stage costing and mid-production order cost projection.

This module provides functions for:
- Costing a finished stage (labor, material, overhead)
- Deciding when a stage's actual time diverges enough to re-price
- Re-pricing an order's items with current material costs and labor
  scaled by projected/estimated hours
- Summing stage costs into an order's final cost

Stage costing:
    labor    = actual hours * assigned worker's hourly rate
    material = consumed quantity * material unit cost (this stage's
               reservations)
    overhead = labor * configured overhead_rate
"""

import logging
from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, object_session

from ..models import (
    Material,
    MaterialReservation,
    Order,
    OrderItem,
    OrderStageProgress,
    ReservationStatus,
    StageStatus,
    Worker,
)
from ..utils.config import get_config
from .catalog_service import calculate_product_cost
from .database import session_scope
from .exceptions import OrderNotFound
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

ZERO = Decimal("0")
_EXCLUDED_FROM_PROJECTION = (StageStatus.SKIPPED.value, StageStatus.CANCELLED.value)


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def stage_material_cost(session: Session, order_id: int, stage_id: int) -> Decimal:
    """Cost of the material consumed by one stage of an order."""
    rows = (
        session.query(MaterialReservation, Material)
        .join(Material, Material.id == MaterialReservation.material_id)
        .filter(
            MaterialReservation.order_id == order_id,
            MaterialReservation.stage_id == stage_id,
            MaterialReservation.status == ReservationStatus.USED.value,
        )
        .all()
    )
    return sum(
        (_dec(reservation.consumed_quantity) * _dec(material.unit_cost) for reservation, material in rows),
        ZERO,
    )


def calculate_stage_costs(progress: OrderStageProgress) -> Dict[str, Decimal]:
    """
    Cost a stage and store the breakdown on its progress row.

    Must be called on a row attached to a session, after actual_hours is
    final and the stage's reservations are consumed.

    Returns:
        Dict with keys: labor_cost, material_cost, overhead_cost, total_cost
    """
    session = object_session(progress)
    config = get_config()

    hourly_rate = ZERO
    if progress.assigned_worker_id is not None:
        worker = session.get(Worker, progress.assigned_worker_id)
        if worker is not None:
            hourly_rate = _dec(worker.hourly_rate)

    hours = Decimal(str(progress.actual_hours or 0))
    labor = (hours * hourly_rate).quantize(Decimal("0.0001"))
    material = stage_material_cost(session, progress.order_id, progress.stage_id)
    overhead = (labor * config.overhead_rate).quantize(Decimal("0.0001"))
    total = labor + material + overhead

    progress.labor_cost = labor
    progress.material_cost = material
    progress.overhead_cost = overhead
    progress.total_cost = total

    return {
        "labor_cost": labor,
        "material_cost": material,
        "overhead_cost": overhead,
        "total_cost": total,
    }


def should_recompute(estimated_hours: float, actual_hours: float, tolerance: Optional[float] = None) -> bool:
    """True when actual time diverges from the estimate by more than tolerance."""
    if tolerance is None:
        tolerance = get_config().cost_tolerance
    if not estimated_hours or estimated_hours <= 0 or actual_hours is None:
        return False
    return abs(actual_hours - estimated_hours) / estimated_hours > tolerance


def projected_labor_factor(session: Session, order_id: int) -> float:
    """
    Projected over estimated production hours for an order.

    Finished stages contribute their actual hours, open stages their
    estimate. Skipped and cancelled stages are left out of both sums.
    """
    rows = (
        session.query(OrderStageProgress)
        .filter(
            OrderStageProgress.order_id == order_id,
            OrderStageProgress.status.notin_(_EXCLUDED_FROM_PROJECTION),
        )
        .all()
    )
    estimated = sum(float(row.estimated_hours or 0) for row in rows)
    projected = sum(
        float(row.actual_hours)
        if row.status == StageStatus.COMPLETED.value and row.actual_hours is not None
        else float(row.estimated_hours or 0)
        for row in rows
    )
    if estimated <= 0:
        return 1.0
    return projected / estimated


def recompute_order_cost(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Re-price an order's items with current material costs and projected labor.

    Items whose product was removed from the catalog keep their last cost.

    Returns:
        Dict with keys: order_id, previous_estimated_cost, estimated_cost,
        labor_factor, items (List[Dict])

    Raises:
        OrderNotFound: If order doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)

        previous = _dec(order.estimated_cost)
        factor = projected_labor_factor(session, order_id)
        items = session.query(OrderItem).filter_by(order_id=order_id).order_by(OrderItem.id).all()

        total = ZERO
        for item in items:
            if item.product_id is not None:
                cost = calculate_product_cost(
                    item.product_id, item.quantity, labor_factor=factor, session=session
                )
                item.unit_cost = cost["unit_cost"]
                item.total_cost = cost["total_cost"]
                item.set_materials_breakdown(cost["breakdown"])
            total += _dec(item.total_cost)

        order.estimated_cost = total
        session.flush()

        log_operation(
            logger,
            operation="recompute_order_cost",
            outcome="success",
            order_id=order_id,
            previous=str(previous),
            estimated=str(total),
            labor_factor=round(factor, 4),
        )

        return {
            "order_id": order_id,
            "previous_estimated_cost": previous,
            "estimated_cost": total,
            "labor_factor": factor,
            "items": [item.to_dict() for item in items],
        }


def sum_stage_costs(session: Session, order_id: int) -> Decimal:
    """Final cost of an order: the sum of its stages' total costs."""
    rows = session.query(OrderStageProgress).filter_by(order_id=order_id).all()
    return sum((_dec(row.total_cost) for row in rows), ZERO)


def get_order_cost_summary(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Estimated vs. accumulated stage costs of an order."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        rows = session.query(OrderStageProgress).filter_by(order_id=order_id).all()
        summary = {
            "order_id": order_id,
            "estimated_cost": _dec(order.estimated_cost),
            "final_cost": _dec(order.final_cost) if order.final_cost is not None else None,
            "labor_cost": sum((_dec(r.labor_cost) for r in rows), ZERO),
            "material_cost": sum((_dec(r.material_cost) for r in rows), ZERO),
            "overhead_cost": sum((_dec(r.overhead_cost) for r in rows), ZERO),
        }
        summary["accumulated_cost"] = (
            summary["labor_cost"] + summary["material_cost"] + summary["overhead_cost"]
        )
        logger.log(logging.DEBUG, f"Cost summary for order {order_id}: {summary['accumulated_cost']}")
        return summary
