"""Services package - Business logic layer for the Atelier production engine.

This package contains all service modules that provide business logic
and database operations for the workshop.

Architecture:
- Services: Stateless functions organized by domain (orders, stages,
  reservations, workers, costs)
- Transactions: Managed via session_scope() context manager
- Exceptions: Consistent error handling via ServiceError hierarchy
- Validation: Input validation before database operations

Service Modules:
- order_service: Order intake and lifecycle
- workflow_service: Stage assignment, start/pause/complete, QC and rework
- reservation_service: Material reservation, consumption and expiry sweep
- inventory_service: Material stock and reservation ledger
- worker_assignment_service: Eligible worker ranking and capacity
- stage_registry_service: Pipeline definition and ordering rules
- catalog_service: Products, bills of materials and cost breakdowns
- cost_service: Stage costing and order cost projection
- performance_service: Worker efficiency, scores and rollups
- display_status: Derived customer-facing order status

Infrastructure:
- exceptions: Custom exception classes for service layer errors
- database: Session management and database utilities
- reservation_sweeper: Background expiry sweep thread
"""

from . import (
    database,
    catalog_service,
    inventory_service,
    stage_registry_service,
    reservation_service,
    worker_assignment_service,
    cost_service,
    performance_service,
    display_status,
    workflow_service,
    order_service,
)

from .exceptions import (
    ServiceError,
    InsufficientStock,
    NoEligibleWorker,
    InvalidTransition,
    ReservationExpired,
    ConcurrentModification,
    OrderNotFound,
    StageNotFound,
    WorkerNotFound,
    MaterialNotFound,
    ProductNotFound,
    ReservationNotFound,
    ValidationError,
    InvariantViolation,
    DatabaseError,
)

from .reservation_sweeper import ReservationSweeper

__all__ = [
    "database",
    "catalog_service",
    "inventory_service",
    "stage_registry_service",
    "reservation_service",
    "worker_assignment_service",
    "cost_service",
    "performance_service",
    "display_status",
    "workflow_service",
    "order_service",
    "ReservationSweeper",
    "ServiceError",
    "InsufficientStock",
    "NoEligibleWorker",
    "InvalidTransition",
    "ReservationExpired",
    "ConcurrentModification",
    "OrderNotFound",
    "StageNotFound",
    "WorkerNotFound",
    "MaterialNotFound",
    "ProductNotFound",
    "ReservationNotFound",
    "ValidationError",
    "InvariantViolation",
    "DatabaseError",
]
