"""
Order Service - intake and lifecycle of workshop orders.

This module provides functions for:
- Creating manual orders and cloning external web-shop orders, costing
  every item from its bill of materials
- Approving orders and reserving their materials
- Starting production, holding, resuming and delivering
- Cancelling orders atomically (reservations, stages, workers)
- Listing, reading and removing orders

Lifecycle:
    pending_acceptance -> accepted -> materials_reserved -> in_production
    -> quality_check -> completed -> delivered
    on_hold and cancelled are reachable from any non-terminal state;
    delivered and cancelled are terminal.

Order numbers are WS-YYYYMMDD-NNNN with a per-day sequence.
"""

import logging
from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import (
    Order,
    OrderItem,
    OrderStageProgress,
    OrderStatus,
    Product,
    ReleaseReason,
    StageTransition,
    TransitionType,
)
from ..models.enums import ORDER_TERMINAL_STATUSES
from ..utils.config import get_config
from ..utils.constants import DEFAULT_CURRENCY, ORDER_NUMBER_PREFIX, ORDER_PRIORITIES, PRIORITY_RANK
from ..utils.datetime_utils import utc_now
from . import workflow_service
from .catalog_service import calculate_product_cost
from .database import flush_guarded, session_scope
from .display_status import get_order_display_status
from .exceptions import (
    ConcurrentModification,
    InvalidTransition,
    OrderNotFound,
    ProductNotFound,
    ValidationError,
)
from .logging_utils import get_service_logger, log_operation
from .reservation_service import (
    clear_order_expiry,
    release_order_reservations,
    reserve_for_order,
)
from .stage_registry_service import get_active_stages

logger = get_service_logger(__name__)

_TERMINAL = {status.value for status in ORDER_TERMINAL_STATUSES}


def _get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _require_status(order: Order, expected: OrderStatus, action: str) -> None:
    if order.status != expected.value:
        raise InvalidTransition("order", order.status, action)


def _to_money(value, field: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError([f"{field} must be a number, got {value!r}"]) from e
    if amount < 0:
        raise ValidationError([f"{field} cannot be negative"])
    return amount


def _order_dict(session: Session, order: Order) -> Dict[str, Any]:
    result = order.to_dict()
    items = session.query(OrderItem).filter_by(order_id=order.id).order_by(OrderItem.id).all()
    result["items"] = [item.to_dict() for item in items]
    return result


# =============================================================================
# Intake
# =============================================================================


def generate_order_number(session: Session, now: Optional[datetime] = None) -> str:
    """Next WS-YYYYMMDD-NNNN number for the day of `now`."""
    now = now or utc_now()
    prefix = f"{ORDER_NUMBER_PREFIX}-{now.strftime('%Y%m%d')}-"
    last = (
        session.query(Order.order_number)
        .filter(Order.order_number.like(f"{prefix}%"))
        .order_by(Order.order_number.desc())
        .first()
    )
    sequence = 1
    if last is not None:
        try:
            sequence = int(last[0].rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            logger.warning(f"Unparseable order number {last[0]}, restarting sequence")
    return f"{prefix}{sequence:04d}"


def _validate_items(items: List[Dict[str, Any]]) -> List[str]:
    errors = []
    if not items:
        errors.append("An order needs at least one item")
    for index, item in enumerate(items or []):
        if item.get("product_id") is None:
            errors.append(f"Item {index}: product_id is required")
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            errors.append(f"Item {index}: quantity must be a positive integer")
    return errors


def _build_order(
    session: Session,
    customer_name: str,
    items: List[Dict[str, Any]],
    *,
    priority: str,
    selling_price,
    currency: Optional[str],
    notes: Optional[str],
    source_type: str,
    source_id: Optional[str],
) -> Order:
    errors = _validate_items(items)
    if not customer_name or not customer_name.strip():
        errors.append("Customer name is required")
    if priority not in ORDER_PRIORITIES:
        errors.append(f"Priority must be one of {ORDER_PRIORITIES}")
    if errors:
        raise ValidationError(errors)

    now = utc_now()
    order = Order(
        order_number=generate_order_number(session, now),
        source_type=source_type,
        source_id=source_id,
        customer_name=customer_name.strip(),
        status=OrderStatus.PENDING_ACCEPTANCE.value,
        priority=priority,
        selling_price=_to_money(selling_price, "selling_price"),
        currency=currency or DEFAULT_CURRENCY,
        notes=notes,
        quantity=0,
        progress_percentage=0.0,
    )
    session.add(order)

    estimated = Decimal("0")
    for item in items:
        product = session.get(Product, item["product_id"])
        if product is None:
            raise ProductNotFound(item["product_id"])
        cost = calculate_product_cost(product.id, item["quantity"], session=session)
        line = OrderItem(
            product_id=product.id,
            product_name=item.get("product_name") or product.name,
            quantity=item["quantity"],
            unit_cost=cost["unit_cost"],
            total_cost=cost["total_cost"],
            unit_price=_to_money(item.get("unit_price"), "unit_price"),
        )
        line.set_materials_breakdown(cost["breakdown"])
        order.items.append(line)
        order.quantity += item["quantity"]
        estimated += cost["total_cost"]

    order.estimated_cost = estimated
    flush_guarded(session, "order")
    return order


def create_order(
    customer_name: str,
    items: List[Dict[str, Any]],
    priority: str = "normal",
    selling_price=None,
    currency: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Create a manual order in pending_acceptance.

    Args:
        customer_name: Customer display name
        items: List of dicts with product_id, quantity and optional
            unit_price / product_name
        priority: low / normal / high / urgent

    Returns:
        Order dict with its items

    Raises:
        ValidationError: Missing customer, empty or malformed items
        ProductNotFound: An item names an unknown product
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _build_order(
            session,
            customer_name,
            items,
            priority=priority,
            selling_price=selling_price,
            currency=currency,
            notes=notes,
            source_type="manual",
            source_id=None,
        )
        log_operation(
            logger,
            operation="create_order",
            outcome="success",
            order_id=order.id,
            order_number=order.order_number,
            estimated_cost=str(order.estimated_cost),
        )
        return _order_dict(session, order)


def clone_external_order(
    payload: Dict[str, Any], *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """
    Clone an order received from the web shop into the workshop.

    The payload carries "id" (external order id), "customer_name",
    optional "currency", "total_amount", "priority", "notes" and "items"
    (product_id, quantity, unit_price, product_name). Items without a
    catalog product are dropped with a warning. Cloning the same external
    id twice is rejected.

    Raises:
        ValidationError: Duplicate clone, or nothing left to produce
    """
    source_id = payload.get("id") or payload.get("source_id")
    if source_id is None:
        raise ValidationError(["External order id is required"])
    source_id = str(source_id)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        existing = (
            session.query(Order).filter_by(source_type="external", source_id=source_id).first()
        )
        if existing is not None:
            raise ValidationError(
                [f"External order {source_id} already cloned as {existing.order_number}"]
            )

        items = []
        for raw in payload.get("items") or []:
            if raw.get("product_id") is None:
                logger.warning(
                    f"Skipping item '{raw.get('product_name', '?')}' of external order "
                    f"{source_id}: no catalog product"
                )
                continue
            items.append(
                {
                    "product_id": raw["product_id"],
                    "quantity": int(raw.get("quantity", 1)),
                    "unit_price": raw.get("unit_price"),
                    "product_name": raw.get("product_name"),
                }
            )

        order = _build_order(
            session,
            payload.get("customer_name", ""),
            items,
            priority=payload.get("priority", "normal"),
            selling_price=payload.get("total_amount"),
            currency=payload.get("currency"),
            notes=payload.get("notes"),
            source_type="external",
            source_id=source_id,
        )
        log_operation(
            logger,
            operation="clone_external_order",
            outcome="success",
            order_id=order.id,
            source_id=source_id,
            items=len(items),
        )
        return _order_dict(session, order)


# =============================================================================
# Reads and removal
# =============================================================================


def get_order(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Get an order with its items and current display status."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        result = _order_dict(session, order)
        result["display_status"] = get_order_display_status(order_id, session=session)
        return result


def list_orders(
    status: Optional[str] = None,
    *,
    by_priority: bool = False,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """List orders, optionally filtered by status, oldest (or most urgent) first."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(Order)
        if status is not None:
            query = query.filter(Order.status == getattr(status, "value", status))
        orders = query.order_by(Order.id).all()
        if by_priority:
            orders.sort(key=lambda o: (-PRIORITY_RANK.get(o.priority, 0), o.id))
        return [order.to_dict() for order in orders]


def delete_order(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Remove an order and everything that cascades from it.

    Active reservations are released and held workers freed first so the
    material ledger and worker capacity stay consistent.
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        released = release_order_reservations(
            order_id, ReleaseReason.MANUAL, notes="order deleted", session=session
        )
        if order.status not in _TERMINAL:
            workflow_service.cancel_open_stages(session, order, "order deleted", utc_now())

        order_number = order.order_number
        session.delete(order)
        flush_guarded(session, "order", order_id)

        log_operation(
            logger,
            operation="delete_order",
            outcome="success",
            order_id=order_id,
            order_number=order_number,
        )
        return {"order_id": order_id, "order_number": order_number, "released": released}


# =============================================================================
# Lifecycle
# =============================================================================


def approve_order(
    order_id: int, approved_by: Optional[str] = None, *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """pending_acceptance -> accepted."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_status(order, OrderStatus.PENDING_ACCEPTANCE, "approve")
        order.status = OrderStatus.ACCEPTED.value
        order.accepted_at = utc_now()
        order.accepted_by = approved_by
        flush_guarded(session, "order", order_id)

        log_operation(
            logger, operation="approve_order", outcome="success", order_id=order_id,
            approved_by=approved_by,
        )
        return order.to_dict()


def reserve_order_materials(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    accepted -> materials_reserved.

    Reserves the order's BOM materials and creates one pending progress
    row per active stage.

    Raises:
        InsufficientStock: Nothing is reserved and the order stays accepted
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_status(order, OrderStatus.ACCEPTED, "reserve materials for")

        reservation = reserve_for_order(order_id, session=session)

        existing = {
            row.stage_id
            for row in session.query(OrderStageProgress).filter_by(order_id=order_id).all()
        }
        created = 0
        for stage in get_active_stages(session):
            if stage.id in existing:
                continue
            session.add(
                OrderStageProgress(
                    order_id=order_id,
                    stage_id=stage.id,
                    estimated_hours=stage.estimated_hours,
                )
            )
            created += 1

        order.status = OrderStatus.MATERIALS_RESERVED.value
        flush_guarded(session, "order", order_id)

        log_operation(
            logger,
            operation="reserve_order_materials",
            outcome="success",
            order_id=order_id,
            stages=created,
            reservations=len(reservation["reservations"]),
        )
        result = order.to_dict()
        result["reservations"] = reservation["reservations"]
        result["expires_at"] = reservation["expires_at"].isoformat()
        return result


def start_production(
    order_id: int, started_by: Optional[str] = None, *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """
    materials_reserved -> in_production.

    Reservations stop expiring, the start transition is recorded and every
    eligible stage is assigned. Stages nobody can take are reported under
    "unassigned" and stay pending. An order with no stage left to work
    completes at once.
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_status(order, OrderStatus.MATERIALS_RESERVED, "start production for")

        order.status = OrderStatus.IN_PRODUCTION.value
        order.production_started_at = utc_now()
        order.progress_percentage = float(get_config().initial_progress)
        flush_guarded(session, "order", order_id)
        clear_order_expiry(order_id, session=session)

        advance = workflow_service.begin_production(session, order, started_by)

        log_operation(
            logger,
            operation="start_production",
            outcome="success",
            order_id=order_id,
            assigned=len(advance["assigned"]),
            unassigned=len(advance["unassigned"]),
        )
        result = order.to_dict()
        result["assigned"] = advance["assigned"]
        result["unassigned"] = advance["unassigned"]
        return result


def mark_delivered(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """completed -> delivered."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_status(order, OrderStatus.COMPLETED, "deliver")
        order.status = OrderStatus.DELIVERED.value
        order.delivered_at = utc_now()
        flush_guarded(session, "order", order_id)
        log_operation(logger, operation="mark_delivered", outcome="success", order_id=order_id)
        return order.to_dict()


def hold_order(
    order_id: int, reason: Optional[str] = None, *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """Put a non-terminal order on hold; running stages stop accruing time."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        if order.status in _TERMINAL or order.status == OrderStatus.ON_HOLD.value:
            raise InvalidTransition("order", order.status, "hold")

        now = utc_now()
        order.held_from_status = order.status
        order.status = OrderStatus.ON_HOLD.value
        order.hold_reason = reason
        workflow_service.suspend_open_work(session, order_id, now)
        flush_guarded(session, "order", order_id)

        log_operation(
            logger,
            operation="hold_order",
            outcome="success",
            order_id=order_id,
            held_from=order.held_from_status,
        )
        return order.to_dict()


def resume_order(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Restore an on-hold order to the status it was held from."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        _require_status(order, OrderStatus.ON_HOLD, "resume")

        order.status = order.held_from_status or OrderStatus.PENDING_ACCEPTANCE.value
        order.held_from_status = None
        order.hold_reason = None
        workflow_service.resume_open_work(session, order_id, utc_now())
        flush_guarded(session, "order", order_id)

        log_operation(
            logger, operation="resume_order", outcome="success", order_id=order_id,
            restored=order.status,
        )
        return order.to_dict()


def _cancel(
    session: Session, order_id: int, reason: Optional[str], cancelled_by: Optional[str]
) -> Dict[str, Any]:
    order = _get_order(session, order_id)
    if order.status in _TERMINAL:
        raise InvalidTransition("order", order.status, "cancel")

    now = utc_now()
    released = release_order_reservations(
        order_id, ReleaseReason.CANCELLED, notes=reason, session=session
    )
    stages = workflow_service.cancel_open_stages(session, order, reason, now)

    order.status = OrderStatus.CANCELLED.value
    order.cancelled_at = now
    order.cancellation_reason = reason
    order.held_from_status = None
    session.add(
        StageTransition(
            order_id=order_id,
            from_stage_id=stages["current_stage_id"],
            to_stage_id=None,
            transition_type=TransitionType.CANCEL.value,
            transition_reason=reason,
            authorized_by=cancelled_by,
            transition_time=now,
        )
    )
    flush_guarded(session, "order", order_id)

    log_operation(
        logger,
        operation="cancel_order",
        outcome="success",
        order_id=order_id,
        released_materials=len(released),
        cancelled_stages=len(stages["cancelled_stage_ids"]),
    )
    result = order.to_dict()
    result["released"] = released
    result["cancelled_stage_ids"] = stages["cancelled_stage_ids"]
    result["freed_worker_ids"] = stages["freed_worker_ids"]
    return result


def cancel_order(
    order_id: int,
    reason: Optional[str] = None,
    cancelled_by: Optional[str] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Cancel an order in one transaction.

    Releases every active reservation, cancels every non-terminal stage
    and frees its worker, then marks the order cancelled. Any failure rolls
    the whole cancellation back. When the function owns its transaction a
    ConcurrentModification is retried up to cancel_retry_attempts times.

    Returns:
        Order dict plus "released" (material_id -> quantity returned to
        stock), "cancelled_stage_ids" and "freed_worker_ids"
    """
    if session is not None:
        return _cancel(session, order_id, reason, cancelled_by)

    attempts = max(get_config().cancel_retry_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            with session_scope() as scoped:
                return _cancel(scoped, order_id, reason, cancelled_by)
        except ConcurrentModification:
            if attempt == attempts:
                log_operation(
                    logger,
                    operation="cancel_order",
                    outcome="gave_up",
                    level=logging.ERROR,
                    order_id=order_id,
                    attempts=attempts,
                )
                raise
            log_operation(
                logger,
                operation="cancel_order",
                outcome="retry",
                level=logging.WARNING,
                order_id=order_id,
                attempt=attempt,
            )
