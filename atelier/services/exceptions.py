"""Service layer exception classes for the Atelier production engine.

This module defines all custom exceptions used by the service layer to provide
consistent error handling across the engine and the API layer.

Exception Hierarchy:
    ServiceError (base)
    ├── InsufficientStock
    ├── NoEligibleWorker
    ├── InvalidTransition
    ├── ReservationExpired
    ├── ConcurrentModification
    ├── OrderNotFound
    ├── StageNotFound
    ├── WorkerNotFound
    ├── MaterialNotFound
    ├── ProductNotFound
    ├── ReservationNotFound
    ├── ValidationError
    ├── InvariantViolation
    └── DatabaseError
"""

from decimal import Decimal
from typing import Optional


class ServiceError(Exception):
    """Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class.
    """

    pass


class InsufficientStock(ServiceError):
    """Raised when a material cannot cover a reservation or consumption.

    Args:
        material_name: Name of the short material
        required: Quantity requested
        available: Quantity available (on hand minus reserved)
        material_id: Optional material id

    Example:
        >>> raise InsufficientStock("White cotton", Decimal("2"), Decimal("1"))
        InsufficientStock: Insufficient stock for White cotton: required 2, available 1 (short 1)
    """

    def __init__(
        self,
        material_name: str,
        required: Decimal,
        available: Decimal,
        material_id: Optional[int] = None,
    ):
        self.material_name = material_name
        self.material_id = material_id
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient stock for {material_name}: "
            f"required {required}, available {available} (short {self.shortfall})"
        )


class NoEligibleWorker(ServiceError):
    """Raised when no worker passes the role/availability filter for a stage."""

    def __init__(self, stage_name: str, stage_id: Optional[int] = None, reason: str = ""):
        self.stage_name = stage_name
        self.stage_id = stage_id
        self.reason = reason
        msg = f"No eligible worker for stage '{stage_name}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTransition(ServiceError):
    """Raised when a state change violates the order or stage state machine.

    Args:
        entity: What is transitioning ("order", "stage", "reservation")
        current: Current status
        target: Attempted action or target status
        reason: Optional detail
    """

    def __init__(self, entity: str, current: str, target: str, reason: str = ""):
        self.entity = entity
        self.current = current
        self.target = target
        self.reason = reason
        msg = f"Cannot {target} {entity} in status '{current}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ReservationExpired(ServiceError):
    """Raised when consuming a reservation the expiry sweep already released."""

    def __init__(self, reservation_id: int):
        self.reservation_id = reservation_id
        super().__init__(
            f"Reservation {reservation_id} expired and was released; re-reserve the material"
        )


class ConcurrentModification(ServiceError):
    """Raised on an optimistic-concurrency conflict.

    The caller must retry the whole operation.
    """

    def __init__(self, entity: str, entity_id: Optional[int] = None, original_error=None):
        self.entity = entity
        self.entity_id = entity_id
        self.original_error = original_error
        target = f"{entity} {entity_id}" if entity_id is not None else entity
        super().__init__(f"Concurrent modification of {target}; retry the operation")


class OrderNotFound(ServiceError):
    """Raised when an order cannot be found by ID."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found")


class StageNotFound(ServiceError):
    """Raised when a workflow stage (or an order's progress row for it) is missing."""

    def __init__(self, stage_id, order_id: Optional[int] = None):
        self.stage_id = stage_id
        self.order_id = order_id
        if order_id is not None:
            super().__init__(f"Stage {stage_id} not found for order {order_id}")
        else:
            super().__init__(f"Workflow stage {stage_id} not found")


class WorkerNotFound(ServiceError):
    """Raised when a worker cannot be found by ID."""

    def __init__(self, worker_id: int):
        self.worker_id = worker_id
        super().__init__(f"Worker with ID {worker_id} not found")


class MaterialNotFound(ServiceError):
    """Raised when a material cannot be found by ID."""

    def __init__(self, material_id: int):
        self.material_id = material_id
        super().__init__(f"Material with ID {material_id} not found")


class ProductNotFound(ServiceError):
    """Raised when a product cannot be found by ID."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product with ID {product_id} not found")


class ReservationNotFound(ServiceError):
    """Raised when a material reservation cannot be found by ID."""

    def __init__(self, reservation_id: int):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation with ID {reservation_id} not found")


class ValidationError(ServiceError):
    """Raised when input validation fails.

    Args:
        errors: List of validation error messages
    """

    def __init__(self, errors: list):
        self.errors = errors
        error_msg = "; ".join(errors)
        super().__init__(f"Validation failed: {error_msg}")


class InvariantViolation(ServiceError):
    """Raised when a ledger or workflow invariant would break.

    Never caught inside the engine.
    """

    def __init__(self, message: str):
        super().__init__(f"Invariant violation: {message}")


class DatabaseError(ServiceError):
    """Raised when a database operation fails."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(f"Database error: {message}")
