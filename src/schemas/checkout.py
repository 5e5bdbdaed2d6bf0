"""Checkout Pydantic schemas for API request/response models."""

from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class PayPalOrderCreate(BaseModel):
    """Schema for creating a PayPal order via POST /checkout/paypal/orders."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID = Field(description="Local pending order to pay for")


class PayPalOrderResponse(BaseModel):
    """Schema for PayPal order creation response."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID = Field(description="Local order UUID")
    provider_order_id: str = Field(description="PayPal order ID passed to the PayPal buttons")
    status: str = Field(description="PayPal order status")
    approve_url: str | None = Field(default=None, description="Buyer approval URL")


class PayPalCaptureRequest(BaseModel):
    """Schema for capturing an approved PayPal order."""

    model_config = ConfigDict(from_attributes=True)

    provider_order_id: str = Field(min_length=1, max_length=64, description="Approved PayPal order ID")


class PaymentResultResponse(BaseModel):
    """Outcome of a payment confirmation as reported to the buyer or admin."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID | None = Field(default=None, description="Local order UUID")
    order_number: str | None = Field(default=None, description="Human-readable order number")
    outcome: str = Field(description="applied, already_processed, insufficient_stock, pending, ...")
    status: str | None = Field(default=None, description="Order status after the event")
    payment_status: str | None = Field(default=None, description="Payment status after the event")
    requires_manual_review: bool = Field(default=False, description="Whether a human needs to act")

    @classmethod
    def from_result(cls, result: Any) -> "PaymentResultResponse":
        """Build the response from a ConfirmationResult."""
        order = result.order or {}
        return cls(
            order_id=result.order_id,
            order_number=order.get("order_number"),
            outcome=result.outcome.value,
            status=order.get("status"),
            payment_status=order.get("payment_status"),
            requires_manual_review=bool(order.get("requires_manual_review")) or result.requires_manual_review,
        )


class StripeSessionCreate(BaseModel):
    """Schema for creating a Stripe Checkout Session via POST /checkout/stripe/session."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID = Field(description="Local pending order to pay for")
    success_url: HttpUrl = Field(description="URL to redirect after successful checkout")
    cancel_url: HttpUrl = Field(description="URL to redirect if checkout is cancelled")


class StripeSessionResponse(BaseModel):
    """Schema for checkout session creation response."""

    model_config = ConfigDict(from_attributes=True)

    checkout_url: str = Field(description="Stripe Checkout URL to redirect to")
    order_id: UUID = Field(description="Local order UUID")
    stripe_session_id: str = Field(description="Stripe Checkout Session ID")


class StockCheckItem(BaseModel):
    """A product and quantity to check."""

    product_id: str = Field(min_length=1, description="Product ID")
    quantity: int = Field(ge=1, description="Requested quantity")


class StockCheckRequest(BaseModel):
    """Schema for POST /checkout/check-stock."""

    items: list[StockCheckItem] = Field(min_length=1, description="Cart items to check")


class StockCheckItemResult(BaseModel):
    """Availability of one requested product."""

    product_id: str
    product_name: str | None = None
    requested: int
    in_stock: int
    available: bool


class StockCheckResponse(BaseModel):
    """Schema for stock availability response."""

    available: bool = Field(description="True if every item can be covered")
    items: list[StockCheckItemResult] = Field(description="Per-product availability")


class WebhookAck(BaseModel):
    """Acknowledgment returned to payment provider webhooks."""

    status: Literal["received"] = "received"
    outcome: str | None = Field(default=None, description="What the event did, for logs and debugging")
