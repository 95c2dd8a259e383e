"""
Database models package.

This package contains all SQLAlchemy ORM models for the production engine.
"""

from .base import Base, BaseModel
from .enums import (
    AvailabilityStatus,
    DisplayStatus,
    OrderStatus,
    ReleaseReason,
    ReservationStatus,
    SkillLevel,
    StageStatus,
    TransitionType,
)
from .material import Material
from .product import BillOfMaterialsEntry, Product, ProductStageRequirement
from .workflow_stage import WorkflowStage
from .worker import Worker, WorkerStageAssignment
from .order import Order, OrderItem
from .order_stage_progress import OrderStageProgress
from .stage_transition import StageTransition
from .material_reservation import MaterialReservation
from .worker_performance import WorkerPerformanceSummary

__all__ = [
    "Base",
    "BaseModel",
    # Enums
    "AvailabilityStatus",
    "DisplayStatus",
    "OrderStatus",
    "ReleaseReason",
    "ReservationStatus",
    "SkillLevel",
    "StageStatus",
    "TransitionType",
    # Catalog
    "Material",
    "Product",
    "BillOfMaterialsEntry",
    "ProductStageRequirement",
    # Workflow
    "WorkflowStage",
    "Worker",
    "WorkerStageAssignment",
    "Order",
    "OrderItem",
    "OrderStageProgress",
    "StageTransition",
    "MaterialReservation",
    "WorkerPerformanceSummary",
]
