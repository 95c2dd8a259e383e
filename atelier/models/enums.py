"""
Enumerations for the production workflow.

This module contains the status vocabularies shared by models and services:
- OrderStatus: Order lifecycle states
- StageStatus: Per-(order, stage) progress states
- ReservationStatus / ReleaseReason: Material reservation lifecycle
- TransitionType: Kinds of StageTransition events
- AvailabilityStatus / SkillLevel: Worker assignment attributes
- DisplayStatus: Values of the derived order display status
"""

from enum import Enum


class OrderStatus(str, Enum):
    """
    Order lifecycle status.

    PENDING_ACCEPTANCE is initial; DELIVERED and CANCELLED are terminal.
    ON_HOLD and CANCELLED are reachable from any non-terminal state.
    """

    PENDING_ACCEPTANCE = "pending_acceptance"
    ACCEPTED = "accepted"
    MATERIALS_RESERVED = "materials_reserved"
    IN_PRODUCTION = "in_production"
    QUALITY_CHECK = "quality_check"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


ORDER_TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Statuses shown as "waiting to start" by the display projection
ORDER_WAITING_STATUSES = frozenset(
    {OrderStatus.PENDING_ACCEPTANCE, OrderStatus.ACCEPTED, OrderStatus.MATERIALS_RESERVED}
)


class StageStatus(str, Enum):
    """
    Stage progress status for one (order, stage) pair.

    PENDING is initial; COMPLETED, SKIPPED and CANCELLED are terminal.
    """

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    QUALITY_CHECK = "quality_check"
    REWORK_REQUIRED = "rework_required"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


STAGE_TERMINAL_STATUSES = frozenset(
    {StageStatus.COMPLETED, StageStatus.SKIPPED, StageStatus.CANCELLED}
)

# A stage in any of these occupies the order's "current stage" slot
STAGE_ACTIVE_STATUSES = frozenset(
    {StageStatus.IN_PROGRESS, StageStatus.QUALITY_CHECK, StageStatus.REWORK_REQUIRED}
)

# Stages whose work is finished for progress accounting
STAGE_DONE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})


class ReservationStatus(str, Enum):
    """Material reservation status."""

    RESERVED = "reserved"
    USED = "used"
    RELEASED = "released"


class ReleaseReason(str, Enum):
    """Why a reservation was released."""

    CANCELLED = "cancelled"
    EXPIRED = "expired"
    MANUAL = "manual"


class TransitionType(str, Enum):
    """Kinds of StageTransition events."""

    START = "start"
    NORMAL = "normal"
    SKIP = "skip"
    QUALITY_FAIL = "quality_fail"
    REWORK = "rework"
    COMPLETE = "complete"
    CANCEL = "cancel"


class AvailabilityStatus(str, Enum):
    """Worker availability for a stage assignment."""

    AVAILABLE = "available"
    BUSY = "busy"
    ON_BREAK = "on_break"
    TRAINING = "training"
    SICK_LEAVE = "sick_leave"
    VACATION = "vacation"
    UNAVAILABLE = "unavailable"


class SkillLevel(str, Enum):
    """Worker skill level for a stage."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    EXPERT = "expert"
    MASTER = "master"


SKILL_LEVEL_RANK = {
    SkillLevel.BEGINNER.value: 0,
    SkillLevel.INTERMEDIATE.value: 1,
    SkillLevel.EXPERT.value: 2,
    SkillLevel.MASTER.value: 3,
}


class DisplayStatus(str, Enum):
    """Values of the derived, read-only order display status."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    IN_STAGE = "in_stage"
    BETWEEN_STAGES = "between_stages"
    WAITING_TO_START = "waiting_to_start"
