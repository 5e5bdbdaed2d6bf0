"""Order model type definitions for database operations."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, TypedDict
from uuid import UUID


# Order lifecycle values matching the database check constraint.
# "pending" is the created state: the provisional record written before the
# buyer is redirected to the payment provider.
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

# "completed" means money was captured but fulfillment could not be applied
# automatically (manual review); "paid" means captured and stock decremented.
PaymentStatus = Literal["pending", "paid", "completed", "failed", "refunded"]

PaymentProvider = Literal["paypal", "stripe", "cash"]

CAPTURED_PAYMENT_STATUSES: frozenset[str] = frozenset({"paid", "completed"})


class OrderItem(TypedDict):
    """Order line item row (order_items table).

    Immutable once created; price is the unit price at time of order.
    """

    id: UUID
    order_id: UUID
    product_id: UUID
    product_name: str
    product_price: Decimal
    quantity: int


class Order(TypedDict):
    """Order table row representation.

    Loaded together with its items via the `items:order_items(*)` embed.
    """

    id: UUID
    order_number: str
    user_id: UUID | None
    customer_email: str | None
    customer_name: str | None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str | None
    payment_provider: PaymentProvider | None
    payment_id: str | None
    provider_order_id: str | None
    subtotal: Decimal
    discount_amount: Decimal
    coupon_code: str | None
    total: Decimal
    currency: str
    notes: str | None
    requires_manual_review: bool
    items: list[OrderItem]
    created_at: datetime
    updated_at: datetime


class OrderUpdate(TypedDict, total=False):
    """Columns the payment pipeline and order management may change."""

    status: OrderStatus
    payment_status: PaymentStatus
    payment_provider: PaymentProvider
    payment_id: str
    provider_order_id: str
    notes: str | None
    requires_manual_review: bool
    updated_at: str
