"""Stock ledger model type definitions."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, TypedDict
from uuid import UUID


MovementDirection = Literal["out", "in"]
MovementKind = Literal["sale", "refund", "manual_adjust"]

# pending rows hold the exactly-once anchor while a ledger call is in flight;
# voided rows are excluded from the unique index so a later retry can claim it.
MovementState = Literal["pending", "applied", "voided"]


class ProductStock(TypedDict):
    """Stock-relevant columns of a products row."""

    id: str
    name: str
    stock_quantity: int


class ProductPrice(TypedDict):
    """Columns of a products row copied into new order items."""

    id: str
    name: str
    price: Decimal | None


class StockMovement(TypedDict):
    """stock_movements table row.

    One row per (order, product, direction, quantity, cause). The current
    available quantity of a product is the sum of its applied movements;
    products.stock_quantity caches that sum.
    """

    id: UUID
    batch_id: UUID
    product_id: str
    order_id: str | None
    cause_id: str
    direction: MovementDirection
    kind: MovementKind
    quantity: int
    quantity_before: int | None
    quantity_after: int | None
    reason: str | None
    actor: str
    state: MovementState
    created_at: datetime
