"""Order lifecycle: the provisional pending order and its status transitions.

Payment transitions are written as conditional updates guarded on the
payment_status the caller observed, so concurrent channels cannot both move
the same order.
"""

import logging
from typing import Any, Iterable

from src.models.order import Order, OrderStatus, PaymentStatus
from src.repositories.order_repository import OrderRepository
from src.services.stock_ledger import StockShortage

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"paid", "completed", "failed"}),
    # completed -> paid only through the manual retry of a flagged order
    "completed": frozenset({"paid", "refunded"}),
    "paid": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}

# Fulfillment transitions an admin may apply directly. Cancelling a captured
# order goes through the refund path so stock is returned.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"cancelled"}),
    "processing": frozenset({"shipped"}),
    "shipped": frozenset({"delivered"}),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


class OrderNotFoundError(Exception):
    """Raised when an order reference does not resolve to an order."""

    def __init__(self, order_id: str | None) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderCreationError(Exception):
    """Raised when a new order could not be written completely."""

    def __init__(self, message: str, order_id: str | None = None) -> None:
        self.order_id = order_id
        super().__init__(message)


class OrderStateError(Exception):
    """Raised when an order is in a state that does not allow the operation."""

    def __init__(self, message: str, order_id: str | None = None, current: str | None = None) -> None:
        self.order_id = order_id
        self.current = current
        super().__init__(message)


def can_transition_payment(current: str, new: str) -> bool:
    """Check whether payment_status may move from current to new."""
    return new in PAYMENT_TRANSITIONS.get(current, frozenset())


def shortage_note(shortages: Iterable[StockShortage]) -> str:
    """Build the manual-review note listing every short product."""
    details = "; ".join(s.describe() for s in shortages)
    return f"Payment captured but stock was insufficient: {details}. Requires manual review."


class OrderStateMachine:
    """Applies order and payment status transitions."""

    def __init__(self, repository: OrderRepository | None = None) -> None:
        """Initialize order state machine.

        Args:
            repository: Optional order repository for testing.
        """
        self.repository = repository or OrderRepository()

    async def get_order(self, order_id: str) -> Order:
        """Load an order with its items.

        Raises:
            OrderNotFoundError: If no order has this id.
        """
        order = self.repository.get_order(order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    async def find_order(self, order_id: str) -> Order | None:
        return self.repository.get_order(order_id)

    async def find_by_payment_id(self, payment_id: str) -> Order | None:
        return self.repository.find_by_payment_id(payment_id)

    async def find_by_provider_order_id(self, provider_order_id: str) -> Order | None:
        return self.repository.find_by_provider_order_id(provider_order_id)

    async def list_flagged(self, limit: int = 100) -> list[Order]:
        """List orders awaiting manual review."""
        return self.repository.list_orders_for_review(limit)

    async def create_pending(self, order: dict[str, Any], items: list[dict[str, Any]]) -> Order:
        """Write a provisional pending order and its line items.

        The two inserts are separate statements; if the items fail, the order
        row is deleted again so no order without items is left behind.

        Raises:
            OrderCreationError: If either insert fails.
        """
        order_id = str(order["id"])
        try:
            created = self.repository.insert_order(order)
        except Exception as e:
            logger.error("Order %s could not be created: %s", order_id, str(e))
            raise OrderCreationError(f"Order {order_id} could not be created", order_id) from e

        try:
            created_items = self.repository.insert_items(items)
        except Exception as e:
            logger.error("Items of order %s could not be created: %s", order_id, str(e))
            try:
                self.repository.delete_order(order_id)
            except Exception as cleanup_error:
                logger.error("Order %s without items could not be deleted: %s", order_id, str(cleanup_error))
            raise OrderCreationError(f"Items of order {order_id} could not be created", order_id) from e

        logger.info("Created pending order %s (%s)", order_id, created.get("order_number"))
        return {**created, "items": created_items}

    async def attach_provider_order(self, order_id: str, provider: str, provider_order_id: str) -> Order | None:
        """Link a pending order to the PayPal order or Stripe session paying it."""
        return self.repository.update_order_if(
            order_id,
            {"provider_order_id": provider_order_id, "payment_provider": provider},
            "pending",
        )

    async def mark_paid(
        self,
        order: Order,
        provider: str,
        payment_id: str,
        expected: PaymentStatus = "pending",
    ) -> Order | None:
        """Finalize a captured order whose stock was decremented.

        Returns:
            Order | None: Updated order, or None if another writer moved the
                payment_status first.
        """
        self._check_payment_transition(order, expected, "paid")
        return self.repository.update_order_if(
            order["id"],
            {
                "payment_status": "paid",
                "status": "processing",
                "payment_provider": provider,
                "payment_id": payment_id,
                "requires_manual_review": False,
            },
            expected,
        )

    async def flag_insufficient_stock(
        self,
        order: Order,
        provider: str,
        payment_id: str,
        shortages: list[StockShortage],
    ) -> Order | None:
        """Record a capture that could not be fulfilled automatically.

        The order keeps status "pending" while payment_status becomes
        "completed" so that redeliveries stop and a human can retry.
        """
        self._check_payment_transition(order, "pending", "completed")
        note = shortage_note(shortages)
        if order.get("notes"):
            note = f"{order['notes']}\n{note}"
        return self.repository.update_order_if(
            order["id"],
            {
                "payment_status": "completed",
                "status": "pending",
                "payment_provider": provider,
                "payment_id": payment_id,
                "requires_manual_review": True,
                "notes": note,
            },
            "pending",
        )

    async def mark_refunded(self, order: Order, expected: PaymentStatus) -> Order | None:
        """Move a captured order to refunded/cancelled."""
        self._check_payment_transition(order, expected, "refunded")
        return self.repository.update_order_if(
            order["id"],
            {"payment_status": "refunded", "status": "cancelled", "requires_manual_review": False},
            expected,
        )

    async def mark_failed(self, order: Order) -> Order | None:
        """Move an uncaptured order to failed/cancelled."""
        self._check_payment_transition(order, "pending", "failed")
        return self.repository.update_order_if(
            order["id"],
            {"payment_status": "failed", "status": "cancelled"},
            "pending",
        )

    async def cancel_unpaid(self, order: Order) -> Order | None:
        """Cancel an order whose payment was never captured.

        payment_status is left as is; the guard only checks it did not change.
        """
        current = order["payment_status"]
        if current not in ("pending", "failed"):
            raise OrderStateError(
                f"Order {order['id']} has payment_status {current} and cannot be cancelled without refund",
                order_id=str(order["id"]),
                current=current,
            )
        return self.repository.update_order_if(order["id"], {"status": "cancelled"}, current)

    async def transition_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """Apply an admin fulfillment transition.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the transition is not allowed.
        """
        order = await self.get_order(order_id)
        current = order["status"]
        if new_status not in STATUS_TRANSITIONS.get(current, frozenset()):
            raise OrderStateError(
                f"Cannot change order status from {current} to {new_status}",
                order_id=str(order_id),
                current=current,
            )
        if new_status == "cancelled":
            updated = await self.cancel_unpaid(order)
        else:
            updated = self.repository.update_order(order_id, {"status": new_status})

        if not updated:
            raise OrderStateError(
                f"Order {order_id} changed while updating status",
                order_id=str(order_id),
                current=current,
            )
        logger.info("Order %s status %s -> %s", order_id, current, new_status)
        return updated

    @staticmethod
    def _check_payment_transition(order: Order, expected: str, new: str) -> None:
        if not can_transition_payment(expected, new):
            raise OrderStateError(
                f"Cannot change payment_status from {expected} to {new}",
                order_id=str(order["id"]),
                current=order.get("payment_status"),
            )
