"""Admin Pydantic schemas for reconciliation and stock management."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatusUpdate(BaseModel):
    """Schema for an admin fulfillment status change."""

    status: Literal["shipped", "delivered", "cancelled"] = Field(description="New order status")


class StockAdjustRequest(BaseModel):
    """Schema for a relative manual stock adjustment."""

    quantity_change: int = Field(description="Positive to add stock, negative to remove")
    reason: str = Field(min_length=1, max_length=500, description="Why the stock is adjusted")

    @field_validator("quantity_change")
    @classmethod
    def validate_non_zero(cls, v: int) -> int:
        """Reject no-op adjustments."""
        if v == 0:
            raise ValueError("quantity_change must not be zero")
        return v

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Reject whitespace-only reasons."""
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class StockMovementResponse(BaseModel):
    """Schema for a stock ledger movement."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_id: UUID
    product_id: str
    order_id: str | None = None
    cause_id: str
    direction: str
    kind: str
    quantity: int
    quantity_before: int | None = None
    quantity_after: int | None = None
    reason: str | None = None
    actor: str
    state: str
    created_at: datetime | None = None


class StockAdjustResponse(BaseModel):
    """Schema for manual stock adjustment response."""

    product_id: str
    quantity_before: int
    quantity_after: int
    movement: StockMovementResponse


class StockMovementListResponse(BaseModel):
    """Schema for stock movement list responses."""

    items: list[StockMovementResponse]


class AuditLogResponse(BaseModel):
    """Schema for an audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    action: str
    resource_type: str
    resource_id: str | None = None
    actor: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuditLogListResponse(BaseModel):
    """Schema for audit log list responses."""

    items: list[AuditLogResponse]
