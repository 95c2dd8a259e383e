"""Request bodies accepted by the HTTP interface."""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)
    unit_price: Optional[Decimal] = None
    product_name: Optional[str] = None


class OrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=1)
    items: List[OrderItemIn] = Field(..., min_length=1)
    priority: str = "normal"
    selling_price: Optional[Decimal] = None
    currency: Optional[str] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    approved_by: Optional[str] = None


class StartProductionRequest(BaseModel):
    started_by: Optional[str] = None


class HoldRequest(BaseModel):
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None


class AssignRequest(BaseModel):
    worker_id: Optional[int] = None
    assigned_by: Optional[str] = None


class PauseRequest(BaseModel):
    reason: Optional[str] = None


class CompleteStageRequest(BaseModel):
    actual_minutes: Optional[float] = Field(None, ge=0)
    quality_score: Optional[float] = Field(None, ge=0, le=10)
    material_usage: Optional[Dict[int, Decimal]] = None
    completed_by: Optional[str] = None


class QualityCheckRequest(BaseModel):
    passed: bool
    quality_score: Optional[float] = Field(None, ge=0, le=10)
    notes: Optional[str] = None
    checked_by: Optional[str] = None


class ReworkRequest(BaseModel):
    worker_id: Optional[int] = None
    authorized_by: Optional[str] = None


class SkipRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    authorized_by: Optional[str] = None


class ConsumeRequest(BaseModel):
    actual_quantity: Optional[Decimal] = Field(None, ge=0)


class ReleaseRequest(BaseModel):
    notes: Optional[str] = None


class PeriodRequest(BaseModel):
    start: date
    end: date
