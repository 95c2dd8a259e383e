"""
Reservation Manager - holds, consumes and releases BOM material for orders.

This module provides functions for:
- Reserving every material an order needs, all-or-nothing
- Consuming a stage's reservations when the stage completes
- Releasing reservations on cancellation, expiry or by hand
- Sweeping expired reservations with bounded retry
- Dry-run shortage reports

Reservation rules:
    required = quantity_required * (1 + waste/100) * ordered quantity,
    summed per (material, stage). Material rows are locked in ascending id
    order and checked before anything is written, so a shortage on any
    material leaves every counter untouched.

All functions are stateless and follow the session pattern:
- If session provided: caller owns transaction, don't commit
- If session is None: create own transaction via session_scope()
"""

import logging
import time
from contextlib import nullcontext
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import (
    BillOfMaterialsEntry,
    Material,
    MaterialReservation,
    Order,
    OrderItem,
    Product,
    ReleaseReason,
    ReservationStatus,
)
from ..utils.config import get_config
from ..utils.datetime_utils import ensure_utc, utc_now
from .database import flush_guarded, session_scope
from .exceptions import (
    ConcurrentModification,
    DatabaseError,
    InsufficientStock,
    InvalidTransition,
    InvariantViolation,
    OrderNotFound,
    ProductNotFound,
    ReservationExpired,
    ReservationNotFound,
    ServiceError,
    ValidationError,
)
from .inventory_service import apply_consumption, apply_reservation_delta, lock_materials
from .logging_utils import get_service_logger, log_operation
from .stage_registry_service import get_first_active_stage

logger = get_service_logger(__name__)

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _reservation_to_dict(reservation: MaterialReservation) -> Dict[str, Any]:
    result = reservation.to_dict()
    result["reserved_quantity"] = _dec(reservation.reserved_quantity)
    result["consumed_quantity"] = (
        _dec(reservation.consumed_quantity) if reservation.consumed_quantity is not None else None
    )
    result["variance_quantity"] = (
        _dec(reservation.variance_quantity) if reservation.variance_quantity is not None else None
    )
    if reservation.material is not None:
        result["material_name"] = reservation.material.name
    return result


def _get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _get_reservation(session: Session, reservation_id: int) -> MaterialReservation:
    reservation = session.get(MaterialReservation, reservation_id)
    if reservation is None:
        raise ReservationNotFound(reservation_id)
    return reservation


# =============================================================================
# Requirement calculation
# =============================================================================


def collect_requirements(
    session: Session,
    order: Order,
    product_quantities: Optional[Dict[int, int]] = None,
) -> Dict[Tuple[int, Optional[int]], Decimal]:
    """
    Sum the BOM requirements of an order per (material_id, stage_id).

    Args:
        session: Active session
        order: The order being reserved
        product_quantities: product_id -> ordered quantity; defaults to the
            order's items

    Returns:
        Dict keyed by (material_id, stage_id) with required quantities.
        stage_id falls back to the first active stage when the BOM entry
        names none.
    """
    if product_quantities is None:
        product_quantities = {}
        for item in session.query(OrderItem).filter_by(order_id=order.id).all():
            if item.product_id is None:
                continue
            product_quantities[item.product_id] = (
                product_quantities.get(item.product_id, 0) + item.quantity
            )

    first_stage = get_first_active_stage(session)
    default_stage_id = first_stage.id if first_stage else None

    requirements: Dict[Tuple[int, Optional[int]], Decimal] = {}
    for product_id, quantity in sorted(product_quantities.items()):
        if quantity is None or quantity <= 0:
            raise ValidationError([f"Quantity for product {product_id} must be positive"])
        product = session.get(Product, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        entries = session.query(BillOfMaterialsEntry).filter_by(product_id=product_id).all()
        for entry in entries:
            required = entry.total_quantity_with_waste * Decimal(quantity)
            key = (entry.material_id, entry.stage_id or default_stage_id)
            requirements[key] = requirements.get(key, ZERO) + required
    return requirements


# =============================================================================
# Reserve
# =============================================================================


def reserve_for_order(
    order_id: int,
    product_quantities: Optional[Dict[int, int]] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Reserve every BOM material an order needs, all-or-nothing.

    Args:
        order_id: Order to reserve for
        product_quantities: Optional product_id -> quantity mapping; defaults
            to the order's items
        session: Optional database session

    Returns:
        Dict with keys:
            - "order_id": int
            - "reservations": List[Dict] - created reservation rows
            - "totals": Dict[int, Decimal] - reserved quantity per material
            - "expires_at": datetime

    Raises:
        OrderNotFound: If order doesn't exist
        InvalidTransition: If the order already holds active reservations
        InsufficientStock: On the first material whose available quantity
            can't cover the requirement; nothing is reserved
        ConcurrentModification: If a material row changed concurrently
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)

        active = (
            session.query(MaterialReservation)
            .filter_by(order_id=order_id, status=ReservationStatus.RESERVED.value)
            .count()
        )
        if active:
            raise InvalidTransition(
                "reservation", "reserved", "reserve", f"order {order_id} already holds reservations"
            )

        requirements = collect_requirements(session, order, product_quantities)
        materials = lock_materials(session, [material_id for material_id, _ in requirements])

        # Check every material before writing anything
        per_material: Dict[int, Decimal] = {}
        for (material_id, _stage_id), required in sorted(
            requirements.items(), key=lambda kv: (kv[0][0], kv[0][1] or 0)
        ):
            per_material[material_id] = per_material.get(material_id, ZERO) + required
        for material_id in sorted(per_material):
            material = materials[material_id]
            required = per_material[material_id]
            available = material.available_quantity
            if available < required:
                log_operation(
                    logger,
                    operation="reserve_for_order",
                    outcome="insufficient_stock",
                    level=logging.WARNING,
                    order_id=order_id,
                    material_id=material_id,
                    required=str(required),
                    available=str(available),
                )
                raise InsufficientStock(material.name, required, available, material_id=material_id)

        config = get_config()
        now = utc_now()
        expires_at = now + timedelta(days=config.reservation_ttl_days)
        created = []
        for (material_id, stage_id), required in sorted(
            requirements.items(), key=lambda kv: (kv[0][0], kv[0][1] or 0)
        ):
            material = materials[material_id]
            apply_reservation_delta(material, required)
            reservation = MaterialReservation(
                order_id=order_id,
                material_id=material_id,
                stage_id=stage_id,
                reserved_quantity=required,
                status=ReservationStatus.RESERVED.value,
                reserved_at=now,
                expires_at=expires_at,
            )
            session.add(reservation)
            created.append(reservation)

        flush_guarded(session, "material")

        log_operation(
            logger,
            operation="reserve_for_order",
            outcome="success",
            order_id=order_id,
            reservation_count=len(created),
        )

        return {
            "order_id": order_id,
            "reservations": [_reservation_to_dict(r) for r in created],
            "totals": per_material,
            "expires_at": expires_at,
        }


# =============================================================================
# Consume
# =============================================================================


def _consume_locked(
    session: Session,
    reservation: MaterialReservation,
    material,
    actual_quantity: Optional[Decimal],
    now: datetime,
) -> Dict[str, Any]:
    if reservation.status == ReservationStatus.RELEASED.value:
        if reservation.release_reason == ReleaseReason.EXPIRED.value:
            raise ReservationExpired(reservation.id)
        raise InvalidTransition(
            "reservation", reservation.status, "consume", f"released ({reservation.release_reason})"
        )
    if reservation.status != ReservationStatus.RESERVED.value:
        raise InvalidTransition("reservation", reservation.status, "consume")

    reserved = _dec(reservation.reserved_quantity)
    actual = reserved if actual_quantity is None else _dec(actual_quantity)
    if actual < 0:
        raise ValidationError(["actual_quantity cannot be negative"])

    apply_consumption(material, reserved, actual)

    reservation.status = ReservationStatus.USED.value
    reservation.consumed_quantity = actual
    reservation.variance_quantity = actual - reserved
    reservation.consumed_at = now
    reservation.expires_at = None

    log_operation(
        logger,
        operation="consume_reservation",
        outcome="success",
        reservation_id=reservation.id,
        order_id=reservation.order_id,
        material_id=reservation.material_id,
        reserved=str(reserved),
        consumed=str(actual),
    )

    result = _reservation_to_dict(reservation)
    result["line_cost"] = actual * _dec(material.unit_cost)
    return result


def consume(
    reservation_id: int,
    actual_quantity=None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Consume a reservation: mark it used and take the stock off the shelf.

    on_hand drops by the actual quantity and reserved by the full reserved
    quantity, so an underrun returns the remainder to available. The
    variance (actual - reserved) is recorded on the reservation.

    Args:
        reservation_id: Reservation to consume
        actual_quantity: Quantity really used; defaults to the reserved quantity
        session: Optional database session

    Returns:
        Reservation dict plus "line_cost" (actual * material unit cost)

    Raises:
        ReservationNotFound: If reservation doesn't exist
        ReservationExpired: If the expiry sweep already released it
        InvalidTransition: If it was already used or otherwise released
        InsufficientStock: If an overrun can't be covered by free stock
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        reservation = _get_reservation(session, reservation_id)
        material = lock_materials(session, [reservation.material_id])[reservation.material_id]
        session.refresh(reservation, with_for_update=True)

        result = _consume_locked(session, reservation, material, actual_quantity, utc_now())
        flush_guarded(session, "reservation", reservation_id)
        return result


def consume_stage_reservations(
    order_id: int,
    stage_id: int,
    actual_usage: Optional[Dict[int, Any]] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Consume every active reservation an order holds for one stage.

    Args:
        order_id: Order whose stage completed
        stage_id: The completed stage
        actual_usage: Optional material_id -> actual quantity used
        session: Optional database session

    Returns:
        Dict with keys: "consumed" (List[Dict]) and "material_cost" (Decimal)
    """
    actual_usage = actual_usage or {}

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        reservations = (
            session.query(MaterialReservation)
            .filter_by(
                order_id=order_id,
                stage_id=stage_id,
                status=ReservationStatus.RESERVED.value,
            )
            .order_by(MaterialReservation.material_id)
            .all()
        )
        unknown = set(actual_usage) - {r.material_id for r in reservations}
        if unknown:
            raise ValidationError(
                [f"No active reservation for material(s) {sorted(unknown)} at stage {stage_id}"]
            )

        materials = lock_materials(session, [r.material_id for r in reservations])
        now = utc_now()
        consumed = []
        material_cost = ZERO
        for reservation in reservations:
            result = _consume_locked(
                session,
                reservation,
                materials[reservation.material_id],
                actual_usage.get(reservation.material_id),
                now,
            )
            material_cost += result["line_cost"]
            consumed.append(result)

        flush_guarded(session, "material")
        return {"consumed": consumed, "material_cost": material_cost}


# =============================================================================
# Release
# =============================================================================


def _release_locked(
    reservation: MaterialReservation,
    material,
    reason: str,
    now: datetime,
    notes: Optional[str] = None,
) -> bool:
    """Release one reservation under lock. Returns False when already settled."""
    if reservation.status != ReservationStatus.RESERVED.value:
        return False

    quantity = _dec(reservation.reserved_quantity)
    apply_reservation_delta(material, -quantity)
    reservation.status = ReservationStatus.RELEASED.value
    reservation.release_reason = reason
    reservation.released_at = now
    if notes:
        reservation.notes = notes

    log_operation(
        logger,
        operation="release_reservation",
        outcome="success",
        reservation_id=reservation.id,
        order_id=reservation.order_id,
        material_id=reservation.material_id,
        quantity=str(quantity),
        reason=reason,
    )
    return True


def _validate_reason(reason) -> str:
    value = reason.value if isinstance(reason, ReleaseReason) else reason
    valid = {r.value for r in ReleaseReason}
    if value not in valid:
        raise ValidationError([f"Release reason must be one of {sorted(valid)}"])
    return value


def release(
    reservation_id: int,
    reason=ReleaseReason.MANUAL,
    *,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Release a reservation back to available stock.

    Idempotent: releasing a reservation that is already released (or used)
    changes nothing.

    Returns:
        Reservation dict plus "released" (bool): False for a no-op

    Raises:
        ReservationNotFound: If reservation doesn't exist
        ValidationError: If reason isn't cancelled / expired / manual
    """
    reason = _validate_reason(reason)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        reservation = _get_reservation(session, reservation_id)
        material = lock_materials(session, [reservation.material_id])[reservation.material_id]
        session.refresh(reservation, with_for_update=True)

        released = _release_locked(reservation, material, reason, utc_now(), notes)
        flush_guarded(session, "reservation", reservation_id)

        result = _reservation_to_dict(reservation)
        result["released"] = released
        return result


def release_order_reservations(
    order_id: int,
    reason=ReleaseReason.CANCELLED,
    *,
    stage_id: Optional[int] = None,
    notes: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[int, Decimal]:
    """
    Release every active reservation of an order (optionally one stage's).

    Consumed reservations are left alone; their stock is gone.

    Returns:
        Dict of material_id -> total quantity released
    """
    reason = _validate_reason(reason)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        query = session.query(MaterialReservation).filter_by(
            order_id=order_id, status=ReservationStatus.RESERVED.value
        )
        if stage_id is not None:
            query = query.filter_by(stage_id=stage_id)
        reservations = query.order_by(MaterialReservation.material_id).all()

        materials = lock_materials(session, [r.material_id for r in reservations])
        now = utc_now()
        totals: Dict[int, Decimal] = {}
        for reservation in reservations:
            if _release_locked(reservation, materials[reservation.material_id], reason, now, notes):
                totals[reservation.material_id] = totals.get(
                    reservation.material_id, ZERO
                ) + _dec(reservation.reserved_quantity)

        flush_guarded(session, "material")
        return totals


def clear_order_expiry(order_id: int, *, session: Optional[Session] = None) -> int:
    """
    Stop an order's active reservations from expiring.

    Called when the order enters production. Returns the number of rows
    touched.
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        reservations = (
            session.query(MaterialReservation)
            .filter_by(order_id=order_id, status=ReservationStatus.RESERVED.value)
            .all()
        )
        for reservation in reservations:
            reservation.expires_at = None
        flush_guarded(session, "reservation")
        return len(reservations)


# =============================================================================
# Expiry sweep
# =============================================================================


def _expire_one(session: Session, reservation_id: int, now: datetime) -> bool:
    reservation = session.get(MaterialReservation, reservation_id)
    if reservation is None:
        return False
    material = lock_materials(session, [reservation.material_id])[reservation.material_id]
    session.refresh(reservation, with_for_update=True)

    # Re-check under lock: the order may have started production meanwhile
    expires_at = ensure_utc(reservation.expires_at)
    if expires_at is None or expires_at > now:
        return False

    released = _release_locked(reservation, material, ReleaseReason.EXPIRED.value, now)
    flush_guarded(session, "reservation", reservation_id)
    return released


def sweep_expired_reservations(
    now: Optional[datetime] = None,
    *,
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    Release every reserved row whose expires_at has passed.

    Each reservation is released in its own short transaction. Conflicts and
    database errors are retried up to max_attempts with exponential backoff
    (backoff_seconds * 2 ** (attempt - 1)); a reservation that still fails
    is logged and left for the next sweep. Nothing is raised to the caller
    except InvariantViolation.

    Args:
        now: Sweep reference time (default: current UTC time)
        max_attempts: Attempts per reservation (default: config)
        backoff_seconds: Base backoff delay (default: config)
        sleep: Sleep function, injectable for tests

    Returns:
        Dict with keys: "released" (List[int]), "failed" (List[int]),
        "skipped" (List[int])
    """
    config = get_config()
    now = ensure_utc(now) if now is not None else utc_now()
    max_attempts = max_attempts or config.sweep_max_attempts
    backoff = config.sweep_backoff_seconds if backoff_seconds is None else backoff_seconds

    with session_scope() as session:
        candidate_ids = [
            rid
            for (rid,) in session.query(MaterialReservation.id)
            .filter(
                MaterialReservation.status == ReservationStatus.RESERVED.value,
                MaterialReservation.expires_at.isnot(None),
                MaterialReservation.expires_at <= now,
            )
            .order_by(MaterialReservation.material_id, MaterialReservation.id)
            .all()
        ]

    released, failed, skipped = [], [], []
    for reservation_id in candidate_ids:
        for attempt in range(1, max_attempts + 1):
            try:
                with session_scope() as session:
                    done = _expire_one(session, reservation_id, now)
                (released if done else skipped).append(reservation_id)
                break
            except InvariantViolation:
                raise
            except (ConcurrentModification, DatabaseError, SQLAlchemyError) as e:
                if attempt >= max_attempts:
                    log_operation(
                        logger,
                        operation="sweep_expired_reservations",
                        outcome="gave_up",
                        level=logging.ERROR,
                        reservation_id=reservation_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    failed.append(reservation_id)
                    break
                delay = backoff * (2 ** (attempt - 1))
                log_operation(
                    logger,
                    operation="sweep_expired_reservations",
                    outcome="retrying",
                    level=logging.WARNING,
                    reservation_id=reservation_id,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                sleep(delay)
            except ServiceError as e:
                log_operation(
                    logger,
                    operation="sweep_expired_reservations",
                    outcome="error",
                    level=logging.ERROR,
                    reservation_id=reservation_id,
                    error=str(e),
                )
                failed.append(reservation_id)
                break

    log_operation(
        logger,
        operation="sweep_expired_reservations",
        outcome="complete",
        released=len(released),
        failed=len(failed),
        skipped=len(skipped),
    )
    return {"released": released, "failed": failed, "skipped": skipped}


# =============================================================================
# Reads
# =============================================================================


def get_order_reservations(
    order_id: int,
    *,
    status: Optional[str] = None,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """List an order's reservations, optionally filtered by status."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        _get_order(session, order_id)
        query = session.query(MaterialReservation).filter_by(order_id=order_id)
        if status is not None:
            query = query.filter_by(status=status)
        rows = query.order_by(MaterialReservation.material_id, MaterialReservation.id).all()
        return [_reservation_to_dict(r) for r in rows]


def check_material_requirements(
    order_id: int,
    product_quantities: Optional[Dict[int, int]] = None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Dry run of reserve_for_order: report what the order needs and what's short.

    Returns:
        Dict with keys:
            - "order_id": int
            - "can_reserve": bool
            - "materials": List[Dict] with material_id, name, unit, required,
              available, shortfall, sufficient
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = _get_order(session, order_id)
        requirements = collect_requirements(session, order, product_quantities)

        per_material: Dict[int, Decimal] = {}
        for (material_id, _stage_id), required in requirements.items():
            per_material[material_id] = per_material.get(material_id, ZERO) + required

        report = []
        for material_id in sorted(per_material):
            material = session.get(Material, material_id)
            required = per_material[material_id]
            available = material.available_quantity
            shortfall = max(required - available, ZERO)
            report.append(
                {
                    "material_id": material_id,
                    "name": material.name,
                    "unit": material.unit,
                    "required": required,
                    "available": available,
                    "shortfall": shortfall,
                    "sufficient": shortfall == 0,
                }
            )

        return {
            "order_id": order_id,
            "can_reserve": all(row["sufficient"] for row in report),
            "materials": report,
        }
