"""Order Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class OrderItemCreate(BaseModel):
    """A cart line; the price is looked up server-side."""

    product_id: str = Field(min_length=1, description="Product ID")
    quantity: int = Field(ge=1, le=1000, description="Quantity ordered")


class OrderCreate(BaseModel):
    """Schema for creating a pending order via POST /orders."""

    items: list[OrderItemCreate] = Field(min_length=1, max_length=100, description="Cart items")
    customer_email: EmailStr = Field(description="Customer email for the confirmation")
    customer_name: str = Field(min_length=1, max_length=200, description="Customer name")
    payment_method: Literal["paypal", "stripe", "cash"] = Field(description="Payment method chosen at checkout")
    coupon_code: str | None = Field(default=None, max_length=50, description="Coupon code to apply")
    notes: str | None = Field(default=None, max_length=1000, description="Customer notes")


class OrderItemResponse(BaseModel):
    """Schema for a single order line item."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(description="Product ID")
    product_name: str = Field(description="Product name at time of order")
    product_price: Decimal = Field(description="Unit price at time of order")
    quantity: int = Field(ge=1, description="Quantity ordered")


class OrderResponse(BaseModel):
    """Schema for order API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    order_number: str = Field(description="Human-readable order number")
    status: str = Field(description="Order lifecycle status")
    payment_status: str = Field(description="Payment status")
    payment_method: str | None = Field(default=None, description="Payment method chosen at checkout")
    payment_provider: str | None = Field(default=None, description="Provider that captured the payment")
    customer_email: str | None = Field(default=None, description="Customer email")
    customer_name: str | None = Field(default=None, description="Customer name")
    subtotal: Decimal = Field(description="Sum of line items")
    discount_amount: Decimal = Field(default=Decimal("0"), description="Coupon discount")
    coupon_code: str | None = Field(default=None, description="Applied coupon code")
    total: Decimal = Field(description="Amount charged")
    currency: str = Field(default="EUR", description="Currency code")
    requires_manual_review: bool = Field(default=False, description="Flagged for manual review")
    items: list[OrderItemResponse] = Field(default_factory=list, description="Order line items")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime | None = Field(default=None, description="Last update timestamp")


class AdminOrderResponse(OrderResponse):
    """Order as seen by an admin, including payment references and notes."""

    payment_id: str | None = Field(default=None, description="Provider capture/payment ID")
    provider_order_id: str | None = Field(default=None, description="PayPal order ID or Stripe session ID")
    notes: str | None = Field(default=None, description="Internal notes, e.g. stock shortages")


class AdminOrderListResponse(BaseModel):
    """Schema for admin order list responses."""

    items: list[AdminOrderResponse] = Field(description="List of orders")
