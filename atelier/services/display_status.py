"""
Display status projection - the order status customers and dashboards see.

The projection is derived from the order's lifecycle status and its stage
progress rows on every read. It is never stored, because stage rows change
without a write to the order row.

Rules, in order:
1. Order completed, delivered or cancelled: surfaced verbatim (completed
   and delivered at progress 100).
2. A stage is in_progress, quality_check or rework_required: "in_stage"
   with that stage's name and progress = round(done / total * 100).
3. Some but not all stages done: "between_stages" with the same progress.
4. Order pending_acceptance, accepted or materials_reserved:
   "waiting_to_start" with progress 0.
5. Otherwise the raw order status with progress 0.

"done" counts completed and skipped stage rows.
"""

from contextlib import nullcontext
from typing import Any, Dict, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from ..models import DisplayStatus, Order, OrderStageProgress, OrderStatus
from ..models.enums import ORDER_WAITING_STATUSES, STAGE_ACTIVE_STATUSES, STAGE_DONE_STATUSES
from .database import session_scope
from .exceptions import OrderNotFound

_ACTIVE = {status.value for status in STAGE_ACTIVE_STATUSES}
_DONE = {status.value for status in STAGE_DONE_STATUSES}
_WAITING = {status.value for status in ORDER_WAITING_STATUSES}


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def _progress(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round(done / total * 100))


def derive_display_status(order_status, stage_rows: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Project an order's display status from its stage rows.

    Pure: the same inputs always give the same output and nothing is read
    or written elsewhere.

    Args:
        order_status: The order's lifecycle status (OrderStatus or str)
        stage_rows: Mappings with at least "status" and "sequence", plus
            "stage_name" / "stage_display_name" for labelling

    Returns:
        Dict with keys:
            - "status": DisplayStatus value, or the raw order status
            - "stage_name", "stage_display_name": Current stage (in_stage only)
            - "active_stages": Names of every active stage, sequence order
            - "progress": int percentage
            - "completed_stages", "total_stages": int
    """
    status = _value(order_status)
    rows = sorted(stage_rows, key=lambda row: row.get("sequence") or 0)
    total = len(rows)
    done = sum(1 for row in rows if _value(row["status"]) in _DONE)
    active = [row for row in rows if _value(row["status"]) in _ACTIVE]

    result = {
        "status": status,
        "stage_name": None,
        "stage_display_name": None,
        "active_stages": [row.get("stage_name") for row in active],
        "progress": 0,
        "completed_stages": done,
        "total_stages": total,
    }

    if status in (OrderStatus.COMPLETED.value, OrderStatus.DELIVERED.value):
        result["progress"] = 100
    elif status == OrderStatus.CANCELLED.value:
        result["progress"] = _progress(done, total)
    elif active:
        current = active[0]
        result["status"] = DisplayStatus.IN_STAGE.value
        result["stage_name"] = current.get("stage_name")
        result["stage_display_name"] = current.get("stage_display_name")
        result["progress"] = _progress(done, total)
    elif 0 < done < total:
        result["status"] = DisplayStatus.BETWEEN_STAGES.value
        result["progress"] = _progress(done, total)
    elif status in _WAITING:
        result["status"] = DisplayStatus.WAITING_TO_START.value

    return result


def get_order_display_status(order_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Recompute an order's display status from the database.

    Raises:
        OrderNotFound: If order doesn't exist
    """
    cm = nullcontext(session) if session is not None else session_scope()
    with cm as session:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        rows = [
            row.to_dict()
            for row in session.query(OrderStageProgress).filter_by(order_id=order_id).all()
        ]
        result = derive_display_status(order.status, rows)
        result["order_id"] = order.id
        result["order_number"] = order.order_number
        result["order_status"] = order.status
        return result
