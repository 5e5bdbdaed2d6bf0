"""Stock ledger: all-or-nothing, auditable stock mutations.

Every mutation is written as stock_movements rows tagged with the causing
payment (or adjustment) id, and products.stock_quantity is kept consistent
with them through compare-and-set updates.

A ledger call runs in three steps:

1. Claim: one batch INSERT of `pending` movements. The partial unique index on
   (order_id, cause_id, product_id, direction) makes this the exactly-once
   anchor; a conflict means another call already moved this stock.
2. Check and apply: with the anchor held, re-read levels and reject the
   whole call on any shortage, then change each product's counter with
   compare-and-set, never below zero.
3. Commit or void: movements become `applied`; on failure, counters already
   changed are restored and the batch becomes `voided`, which releases the
   anchor so a later retry (e.g. after restock) can claim it again.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, NamedTuple
from uuid import uuid4

from src.models.stock import MovementDirection, MovementKind, ProductStock, StockMovement
from src.repositories.base import DuplicateRecordError
from src.repositories.stock_repository import StockRepository

logger = logging.getLogger(__name__)

# Postgres integer upper bound for products.stock_quantity
MAX_STOCK_QUANTITY = 2_147_483_647

# Attempts per product before a compare-and-set conflict is reported
CAS_MAX_ATTEMPTS = 5


class StockItem(NamedTuple):
    """A (product, quantity) pair passed to the ledger."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class StockShortage:
    """A product that cannot cover the requested quantity."""

    product_id: str
    product_name: str | None
    requested: int
    available: int

    @property
    def shortfall(self) -> int:
        return self.requested - self.available

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
        }

    def describe(self) -> str:
        name = self.product_name or self.product_id
        return f"{name} (requested {self.requested}, available {self.available}, short {self.shortfall})"


@dataclass(frozen=True)
class StockAvailability:
    """Availability of one requested product."""

    product_id: str
    product_name: str | None
    requested: int
    in_stock: int

    @property
    def available(self) -> bool:
        return self.in_stock >= self.requested


@dataclass
class AvailabilityReport:
    """Result of a read-only availability check."""

    items: list[StockAvailability] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return all(item.available for item in self.items)

    @property
    def unavailable_items(self) -> list[StockAvailability]:
        return [item for item in self.items if not item.available]


@dataclass
class LedgerResult:
    """Outcome of a committed ledger call."""

    batch_id: str
    direction: MovementDirection
    movements: list[dict[str, Any]]


class InsufficientStockError(Exception):
    """Raised when one or more products cannot cover a decrease.

    This is the defined failure mode of the ledger, not an unexpected error:
    no stock has been changed when it reaches the caller.
    """

    def __init__(self, shortages: list[StockShortage]) -> None:
        self.shortages = shortages
        super().__init__("Insufficient stock: " + "; ".join(s.describe() for s in shortages))


class UnknownProductError(ValueError):
    """Raised when a product is missing, or has no price when an order is created."""

    def __init__(self, product_ids: list[str]) -> None:
        self.product_ids = product_ids
        super().__init__(f"Unknown product(s): {', '.join(product_ids)}")


class DuplicateMovementError(Exception):
    """Raised when the movement anchor for (order, cause) is already held."""

    def __init__(self, order_id: str | None, cause_id: str, direction: MovementDirection) -> None:
        self.order_id = order_id
        self.cause_id = cause_id
        self.direction = direction
        super().__init__(
            f"Stock already moved ({direction}) for order {order_id} by {cause_id}"
        )


class StockConflictError(Exception):
    """Raised when a counter kept changing under compare-and-set."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Stock for product {product_id} changed concurrently too many times")


class LedgerIntegrityError(Exception):
    """Counters and movements may disagree; requires manual reconciliation."""

    def __init__(self, message: str, batch_id: str, product_ids: list[str]) -> None:
        self.batch_id = batch_id
        self.product_ids = product_ids
        super().__init__(message)


class LedgerRollbackError(LedgerIntegrityError):
    """A failed call could not fully restore the counters it had changed."""


class LedgerCommitError(LedgerIntegrityError):
    """Counters changed but the movements could not be marked applied."""


def normalize_items(items: Iterable[Any]) -> dict[str, int]:
    """Merge (product_id, quantity) pairs per product.

    Raises:
        ValueError: If the list is empty or a quantity is not a positive int.
    """
    merged: dict[str, int] = {}
    for item in items:
        product_id, quantity = item
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"Quantity for product {product_id} must be a positive integer")
        key = str(product_id)
        merged[key] = merged.get(key, 0) + quantity
    if not merged:
        raise ValueError("At least one item is required")
    return merged


class StockLedger:
    """Atomic, auditable increment/decrement of per-product stock."""

    def __init__(self, repository: StockRepository | None = None) -> None:
        """Initialize stock ledger.

        Args:
            repository: Optional stock repository for testing.
        """
        self.repository = repository or StockRepository()

    async def check_availability(self, items: Iterable[Any]) -> AvailabilityReport:
        """Report whether every item can be covered, without changing stock.

        Unknown products are reported with zero stock.
        """
        requested = normalize_items(items)
        levels = self.repository.get_stock_levels(requested.keys())
        report = AvailabilityReport()
        for product_id, quantity in requested.items():
            product = levels.get(product_id)
            report.items.append(
                StockAvailability(
                    product_id=product_id,
                    product_name=product["name"] if product else None,
                    requested=quantity,
                    in_stock=int(product["stock_quantity"]) if product else 0,
                )
            )
        return report

    async def decrease(
        self,
        items: Iterable[Any],
        order_id: str | None,
        cause_id: str,
        reason: str | None = None,
        actor: str = "system",
    ) -> LedgerResult:
        """Decrease stock for every item, or for none.

        Args:
            items: (product_id, quantity) pairs.
            order_id: Order the stock is sold to.
            cause_id: Payment identifier that caused the sale.
            reason: Free-text reason stored on each movement.
            actor: Who triggered the change.

        Raises:
            InsufficientStockError: One or more products are short; lists all.
            DuplicateMovementError: Stock was already decreased for this
                (order, cause).
            LedgerIntegrityError: A failure could not be cleanly compensated.
        """
        requested = normalize_items(items)
        return self._apply(
            requested=requested,
            direction="out",
            kind="sale",
            order_id=order_id,
            cause_id=cause_id,
            reason=reason or f"Sale for order {order_id}",
            actor=actor,
        )

    async def increase(
        self,
        items: Iterable[Any],
        order_id: str | None,
        cause_id: str,
        reason: str | None = None,
        actor: str = "system",
    ) -> LedgerResult:
        """Increase stock for every item, or for none.

        Raises:
            UnknownProductError: A product no longer exists.
            ValueError: The increase would overflow the stock counter.
            DuplicateMovementError: Stock was already returned for this
                (order, cause).
            LedgerIntegrityError: A failure could not be cleanly compensated.
        """
        requested = normalize_items(items)
        return self._apply(
            requested=requested,
            direction="in",
            kind="refund",
            order_id=order_id,
            cause_id=cause_id,
            reason=reason or f"Refund for order {order_id}",
            actor=actor,
        )

    async def adjust(
        self,
        product_id: str,
        quantity_change: int,
        reason: str,
        actor: str,
    ) -> LedgerResult:
        """Apply a relative manual stock adjustment (+N or -N).

        Raises:
            ValueError: If the reason is blank or the change is zero.
            InsufficientStockError: If the result would be negative.
        """
        if not reason or not reason.strip():
            raise ValueError("Reason is required for stock adjustment")
        if isinstance(quantity_change, bool) or not isinstance(quantity_change, int) or quantity_change == 0:
            raise ValueError("Quantity change must be a non-zero integer")

        direction: MovementDirection = "in" if quantity_change > 0 else "out"
        return self._apply(
            requested={str(product_id): abs(quantity_change)},
            direction=direction,
            kind="manual_adjust",
            order_id=None,
            cause_id=f"adjust-{uuid4()}",
            reason=reason.strip(),
            actor=actor,
        )

    async def get_movements(
        self,
        product_id: str | None = None,
        order_id: str | None = None,
        limit: int = 100,
    ) -> list[StockMovement]:
        """List movements for reconciliation."""
        return self.repository.list_movements(product_id=product_id, order_id=order_id, limit=limit)

    def _apply(
        self,
        requested: dict[str, int],
        direction: MovementDirection,
        kind: MovementKind,
        order_id: str | None,
        cause_id: str,
        reason: str,
        actor: str,
    ) -> LedgerResult:
        sign = -1 if direction == "out" else 1
        batch_id = str(uuid4())
        rows = [
            {
                "id": str(uuid4()),
                "batch_id": batch_id,
                "product_id": product_id,
                "order_id": str(order_id) if order_id is not None else None,
                "cause_id": cause_id,
                "direction": direction,
                "kind": kind,
                "quantity": quantity,
                "reason": reason,
                "actor": actor,
                "state": "pending",
            }
            for product_id, quantity in sorted(requested.items())
        ]

        try:
            self.repository.insert_movements(rows)
        except DuplicateRecordError as e:
            logger.info(
                "Stock movement anchor already held: order=%s cause=%s direction=%s",
                order_id,
                cause_id,
                direction,
            )
            raise DuplicateMovementError(order_id, cause_id, direction) from e

        try:
            levels = self.repository.get_stock_levels(requested.keys())
            self._precheck(requested, levels, direction)
        except Exception:
            self._rollback(batch_id, [])
            raise

        applied: list[tuple[str, int]] = []
        try:
            for row in rows:
                product_id = row["product_id"]
                delta = sign * row["quantity"]
                before, after = self._change_quantity(product_id, delta, levels.get(product_id))
                row["quantity_before"] = before
                row["quantity_after"] = after
                applied.append((product_id, delta))
        except InsufficientStockError as e:
            self._rollback(batch_id, applied)
            # All products short on fresh levels, not only the one that tripped.
            shortages = self._shortages(requested, self.repository.get_stock_levels(requested.keys()))
            raise InsufficientStockError(shortages or e.shortages) from e
        except Exception:
            self._rollback(batch_id, applied)
            raise

        try:
            for row in rows:
                self.repository.finalize_movement(row["id"], row["quantity_before"], row["quantity_after"])
                row["state"] = "applied"
        except Exception as e:
            logger.error(
                "Stock counters changed but movements of batch %s could not be marked applied: %s",
                batch_id,
                str(e),
            )
            raise LedgerCommitError(
                f"Movements of batch {batch_id} left pending after stock changed",
                batch_id,
                [row["product_id"] for row in rows],
            ) from e

        logger.info(
            "Stock %s committed: order=%s cause=%s items=%s",
            direction,
            order_id,
            cause_id,
            {row["product_id"]: row["quantity"] for row in rows},
        )
        return LedgerResult(batch_id=batch_id, direction=direction, movements=rows)

    @staticmethod
    def _precheck(
        requested: dict[str, int],
        levels: dict[str, ProductStock],
        direction: MovementDirection,
    ) -> None:
        """Reject the whole call before any counter is changed."""
        if direction == "out":
            shortages = StockLedger._shortages(requested, levels)
            if shortages:
                raise InsufficientStockError(shortages)
            return

        missing = sorted(pid for pid in requested if pid not in levels)
        if missing:
            raise UnknownProductError(missing)
        for product_id, quantity in requested.items():
            if int(levels[product_id]["stock_quantity"]) + quantity > MAX_STOCK_QUANTITY:
                raise ValueError(f"Stock increase for product {product_id} would overflow")

    @staticmethod
    def _shortages(requested: dict[str, int], levels: dict[str, ProductStock]) -> list[StockShortage]:
        """Every requested product with less stock than asked; unknown products count as 0."""
        shortages = []
        for product_id, quantity in sorted(requested.items()):
            product = levels.get(product_id)
            in_stock = int(product["stock_quantity"]) if product else 0
            if in_stock < quantity:
                shortages.append(
                    StockShortage(
                        product_id=product_id,
                        product_name=product["name"] if product else None,
                        requested=quantity,
                        available=in_stock,
                    )
                )
        return shortages

    def _change_quantity(
        self,
        product_id: str,
        delta: int,
        snapshot: ProductStock | None = None,
    ) -> tuple[int, int]:
        """Compare-and-set one counter, re-reading on conflict.

        Returns:
            tuple[int, int]: Quantity before and after the change.
        """
        current = snapshot
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            if current is None:
                current = self.repository.get_stock_levels([product_id]).get(product_id)
                if current is None:
                    raise UnknownProductError([product_id])

            before = int(current["stock_quantity"])
            after = before + delta
            if after < 0:
                raise InsufficientStockError(
                    [
                        StockShortage(
                            product_id=product_id,
                            product_name=current.get("name"),
                            requested=-delta,
                            available=before,
                        )
                    ]
                )
            if after > MAX_STOCK_QUANTITY:
                raise ValueError(f"Stock change for product {product_id} would overflow")

            if self.repository.compare_and_set_quantity(product_id, before, after):
                return before, after

            logger.info(
                "Stock for product %s changed concurrently (attempt %d/%d), retrying",
                product_id,
                attempt,
                CAS_MAX_ATTEMPTS,
            )
            current = None

        raise StockConflictError(product_id)

    def _rollback(self, batch_id: str, applied: list[tuple[str, int]]) -> None:
        """Restore changed counters and void the batch.

        Raises:
            LedgerRollbackError: If any counter could not be restored or the
                batch could not be voided.
        """
        failed: list[str] = []
        for product_id, delta in reversed(applied):
            try:
                self._change_quantity(product_id, -delta)
            except Exception as e:
                logger.error(
                    "Rollback of stock change %+d for product %s (batch %s) failed: %s",
                    delta,
                    product_id,
                    batch_id,
                    str(e),
                )
                failed.append(product_id)

        try:
            self.repository.set_batch_state(batch_id, "voided")
        except Exception as e:
            logger.error("Could not void stock movement batch %s: %s", batch_id, str(e))
            raise LedgerRollbackError(
                f"Stock movement batch {batch_id} could not be voided",
                batch_id,
                failed or [product_id for product_id, _ in applied],
            ) from e

        if failed:
            raise LedgerRollbackError(
                f"Stock rollback of batch {batch_id} failed for {', '.join(failed)}",
                batch_id,
                failed,
            )
        if applied:
            logger.warning("Stock movement batch %s rolled back (%d product(s) restored)", batch_id, len(applied))
