"""
Inventory Ledger Service - on-hand / reserved / available stock per material.

This module provides functions for:
- Reading stock levels and low-stock materials
- Locking material rows in a deterministic order for reservation work
- Guarded counter updates that keep 0 <= reserved <= on_hand
- Rebuilding the reserved counter from the reservation log
- Receiving stock at a weighted average unit cost
- Listing a material's reservation/consumption/release movements

Material.reserved_quantity is a maintained counter; the reservation log is
the source of truth. Every mutation runs with the material row locked
(SELECT ... FOR UPDATE, ascending id) and the row's version_id checked on
flush.

All functions are stateless and follow the session pattern:
- If session provided: caller owns transaction, don't commit
- If session is None: create own transaction via session_scope()
"""

import logging
from contextlib import nullcontext
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Material, MaterialReservation, ReservationStatus
from ..utils.datetime_utils import ensure_utc
from .database import session_scope
from .exceptions import InsufficientStock, InvariantViolation, MaterialNotFound, ValidationError
from .logging_utils import get_service_logger, log_operation

logger = get_service_logger(__name__)

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _stock_dict(material: Material) -> Dict[str, Any]:
    return {
        "material_id": material.id,
        "name": material.name,
        "unit": material.unit,
        "on_hand_quantity": _dec(material.on_hand_quantity),
        "reserved_quantity": _dec(material.reserved_quantity),
        "available_quantity": material.available_quantity,
        "unit_cost": _dec(material.unit_cost),
        "reorder_level": _dec(material.reorder_level),
    }


# =============================================================================
# Reads
# =============================================================================


def get_material_stock(material_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Get on-hand, reserved and available quantity for a material.

    Returns:
        Dict with keys: material_id, name, unit, on_hand_quantity,
        reserved_quantity, available_quantity, unit_cost, reorder_level

    Raises:
        MaterialNotFound: If material doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        material = session.get(Material, material_id)
        if material is None:
            raise MaterialNotFound(material_id)
        return _stock_dict(material)


def list_materials(*, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """Stock levels of every material, ordered by name."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        materials = session.query(Material).order_by(Material.name).all()
        return [_stock_dict(m) for m in materials]


def get_low_stock_materials(*, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """Materials whose available quantity is at or below their reorder level."""
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        materials = session.query(Material).order_by(Material.id).all()
        return [
            _stock_dict(m) for m in materials if m.available_quantity <= _dec(m.reorder_level)
        ]


# =============================================================================
# Locking and guarded counter updates
# =============================================================================


def lock_materials(session: Session, material_ids: Iterable[int]) -> Dict[int, Material]:
    """
    Lock material rows for update, in ascending id order.

    Locking in a fixed order keeps two orders reserving overlapping
    materials from deadlocking each other. SQLite ignores FOR UPDATE and
    serializes writers itself.

    Returns:
        Dict of material_id -> Material

    Raises:
        MaterialNotFound: If any id doesn't exist
    """
    ids = sorted(set(material_ids))
    if not ids:
        return {}

    rows = (
        session.query(Material)
        .filter(Material.id.in_(ids))
        .order_by(Material.id)
        .with_for_update()
        .all()
    )
    found = {m.id: m for m in rows}
    for material_id in ids:
        if material_id not in found:
            raise MaterialNotFound(material_id)
    return found


def _check_ledger(material: Material, on_hand: Decimal, reserved: Decimal) -> None:
    if on_hand < 0 or reserved < 0 or reserved > on_hand:
        raise InvariantViolation(
            f"material {material.id} would have on_hand={on_hand}, reserved={reserved}"
        )


def apply_reservation_delta(material: Material, delta: Decimal) -> None:
    """
    Add `delta` (may be negative) to a locked material's reserved counter.

    Raises:
        InvariantViolation: If the result would leave 0 <= reserved <= on_hand
    """
    on_hand = _dec(material.on_hand_quantity)
    reserved = _dec(material.reserved_quantity) + delta
    _check_ledger(material, on_hand, reserved)
    material.reserved_quantity = reserved


def apply_consumption(material: Material, reserved_quantity: Decimal, actual: Decimal) -> None:
    """
    Consume stock from a locked material.

    Drops the reserved counter by the full reserved quantity (any unused
    remainder returns to available) and on-hand by the actual usage.

    Raises:
        InsufficientStock: If an overrun would drive on_hand negative or
            below the quantity still reserved for other work
    """
    on_hand = _dec(material.on_hand_quantity) - actual
    reserved = _dec(material.reserved_quantity) - reserved_quantity
    if reserved < 0:
        raise InvariantViolation(
            f"material {material.id} reserved counter below reservation {reserved_quantity}"
        )
    if on_hand < 0 or reserved > on_hand:
        # Free stock the consumption may draw on beyond its own reservation
        available = _dec(material.on_hand_quantity) - reserved
        raise InsufficientStock(material.name, actual, available, material_id=material.id)
    material.on_hand_quantity = on_hand
    material.reserved_quantity = reserved


# =============================================================================
# Reconciliation
# =============================================================================


def _reserved_from_log(session: Session, material_id: int) -> Decimal:
    total = (
        session.query(func.coalesce(func.sum(MaterialReservation.reserved_quantity), 0))
        .filter(
            MaterialReservation.material_id == material_id,
            MaterialReservation.status == ReservationStatus.RESERVED.value,
        )
        .scalar()
    )
    return _dec(total)


def recompute_reserved_quantity(
    material_id: int, *, session: Optional[Session] = None
) -> Dict[str, Any]:
    """
    Rebuild a material's reserved counter from its active reservations.

    Returns:
        Dict with keys: material_id, previous, recomputed, drift, repaired

    Raises:
        MaterialNotFound: If material doesn't exist
        InvariantViolation: If the log itself reserves more than on hand
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        material = lock_materials(session, [material_id])[material_id]
        previous = _dec(material.reserved_quantity)
        recomputed = _reserved_from_log(session, material_id)
        drift = previous - recomputed
        repaired = False

        if drift != 0:
            _check_ledger(material, _dec(material.on_hand_quantity), recomputed)
            material.reserved_quantity = recomputed
            session.flush()
            repaired = True
            log_operation(
                logger,
                operation="recompute_reserved_quantity",
                outcome="drift_repaired",
                level=logging.WARNING,
                material_id=material_id,
                previous=str(previous),
                recomputed=str(recomputed),
            )

        return {
            "material_id": material_id,
            "previous": previous,
            "recomputed": recomputed,
            "drift": drift,
            "repaired": repaired,
        }


def verify_ledger(*, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """
    Report materials whose counters break the ledger invariants.

    Checks 0 <= reserved <= on_hand and that the reserved counter matches
    the reservation log. Read-only.

    Returns:
        List of dicts with keys: material_id, name, on_hand_quantity,
        reserved_quantity, logged_reserved, problems (list of str).
        Empty when the ledger is consistent.
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        issues = []
        for material in session.query(Material).order_by(Material.id).all():
            on_hand = _dec(material.on_hand_quantity)
            reserved = _dec(material.reserved_quantity)
            logged = _reserved_from_log(session, material.id)
            problems = []
            if on_hand < 0:
                problems.append("on_hand negative")
            if reserved < 0:
                problems.append("reserved negative")
            if reserved > on_hand:
                problems.append("reserved exceeds on_hand")
            if reserved != logged:
                problems.append("reserved counter differs from reservation log")
            if problems:
                issues.append(
                    {
                        "material_id": material.id,
                        "name": material.name,
                        "on_hand_quantity": on_hand,
                        "reserved_quantity": reserved,
                        "logged_reserved": logged,
                        "problems": problems,
                    }
                )
        return issues


# =============================================================================
# Stock receipts and movements
# =============================================================================


def calculate_weighted_average(
    current_quantity: Decimal,
    current_avg_cost: Decimal,
    added_quantity: Decimal,
    added_unit_cost: Decimal,
) -> Decimal:
    """
    New weighted average cost after adding stock.

    Examples:
        >>> calculate_weighted_average(Decimal("200"), Decimal("0.12"), Decimal("100"), Decimal("0.15"))
        Decimal('0.1300')
    """
    if current_quantity == 0:
        return added_unit_cost
    if added_quantity == 0:
        return current_avg_cost
    total_value = current_quantity * current_avg_cost + added_quantity * added_unit_cost
    return (total_value / (current_quantity + added_quantity)).quantize(Decimal("0.0001"))


def receive_stock(
    material_id: int,
    quantity,
    unit_cost=None,
    *,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """
    Add received stock to a material's on-hand quantity.

    When unit_cost is given, the material's cost becomes the weighted
    average of existing and received stock.

    Raises:
        MaterialNotFound: If material doesn't exist
        ValidationError: If quantity is not positive or unit_cost negative
    """
    qty = _dec(quantity)
    errors = []
    if qty <= 0:
        errors.append("quantity must be positive")
    if unit_cost is not None and _dec(unit_cost) < 0:
        errors.append("unit_cost cannot be negative")
    if errors:
        raise ValidationError(errors)

    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        material = lock_materials(session, [material_id])[material_id]
        current = _dec(material.on_hand_quantity)
        if unit_cost is not None:
            material.unit_cost = calculate_weighted_average(
                current, _dec(material.unit_cost), qty, _dec(unit_cost)
            )
        material.on_hand_quantity = current + qty
        session.flush()

        log_operation(
            logger,
            operation="receive_stock",
            outcome="success",
            material_id=material_id,
            quantity=str(qty),
        )
        return _stock_dict(material)


def get_material_movements(
    material_id: int, *, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """
    List a material's movements, read from the reservation log.

    Each reservation contributes a "reserved" event and, once settled, a
    "consumed" or "released" event.

    Returns:
        List of dicts ordered by time with keys: event, at, reservation_id,
        order_id, stage_id, quantity, and for consumptions variance
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        if session.get(Material, material_id) is None:
            raise MaterialNotFound(material_id)

        reservations = (
            session.query(MaterialReservation)
            .filter(MaterialReservation.material_id == material_id)
            .order_by(MaterialReservation.id)
            .all()
        )

        events = []
        for r in reservations:
            base = {"reservation_id": r.id, "order_id": r.order_id, "stage_id": r.stage_id}
            events.append(
                {**base, "event": "reserved", "at": r.reserved_at, "quantity": _dec(r.reserved_quantity)}
            )
            if r.status == ReservationStatus.USED.value:
                events.append(
                    {
                        **base,
                        "event": "consumed",
                        "at": r.consumed_at,
                        "quantity": _dec(r.consumed_quantity),
                        "variance": _dec(r.variance_quantity),
                    }
                )
            elif r.status == ReservationStatus.RELEASED.value:
                events.append(
                    {
                        **base,
                        "event": "released",
                        "at": r.released_at,
                        "quantity": _dec(r.reserved_quantity),
                        "reason": r.release_reason,
                    }
                )

        events.sort(
            key=lambda e: (e["at"] is None, ensure_utc(e["at"]) or 0, e["reservation_id"])
        )
        return events
