"""Stock repository over products.stock_quantity and stock_movements."""

import logging
from typing import Any, Iterable

from postgrest.exceptions import APIError as PostgrestAPIError

from src.models.stock import MovementState, ProductPrice, ProductStock, StockMovement
from src.repositories.base import DuplicateRecordError, SupabaseRepository, is_unique_violation

logger = logging.getLogger(__name__)


class StockRepository(SupabaseRepository):
    """Data access for stock counters and the movement ledger."""

    def get_stock_levels(self, product_ids: Iterable[str]) -> dict[str, ProductStock]:
        """Get current stock for products, keyed by product id.

        Products that do not exist are simply absent from the result.
        """
        ids = sorted({str(pid) for pid in product_ids})
        if not ids:
            return {}

        response = (
            self.supabase.table("products")
            .select("id, name, stock_quantity")
            .in_("id", ids)
            .execute()
        )
        return {str(row["id"]): row for row in response.data or []}

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductPrice]:
        """Get name and current price for products, keyed by product id."""
        ids = sorted({str(pid) for pid in product_ids})
        if not ids:
            return {}

        response = (
            self.supabase.table("products")
            .select("id, name, price")
            .in_("id", ids)
            .execute()
        )
        return {str(row["id"]): row for row in response.data or []}

    def compare_and_set_quantity(self, product_id: str, expected: int, new: int) -> bool:
        """Set stock_quantity only if it still equals `expected`.

        Returns:
            bool: True if the row was updated, False if another writer
                changed the quantity first.
        """
        response = (
            self.supabase.table("products")
            .update({"stock_quantity": new})
            .eq("id", product_id)
            .eq("stock_quantity", expected)
            .execute()
        )
        return bool(response.data)

    def insert_movements(self, rows: list[dict[str, Any]]) -> list[StockMovement]:
        """Insert a batch of movements in one statement.

        PostgREST sends the batch as a single INSERT, so either every row is
        written or none is.

        Raises:
            DuplicateRecordError: If any row collides with the
                (order_id, cause_id, product_id, direction) anchor.
        """
        try:
            response = self.supabase.table("stock_movements").insert(rows).execute()
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                raise DuplicateRecordError("stock_movements", str(e.message)) from e
            raise
        return response.data or []

    def finalize_movement(self, movement_id: str, quantity_before: int, quantity_after: int) -> None:
        """Mark a pending movement applied and record the counter values."""
        (
            self.supabase.table("stock_movements")
            .update(
                {
                    "state": "applied",
                    "quantity_before": quantity_before,
                    "quantity_after": quantity_after,
                }
            )
            .eq("id", movement_id)
            .eq("state", "pending")
            .execute()
        )

    def set_batch_state(self, batch_id: str, state: MovementState) -> int:
        """Move a batch's pending movements to `state`.

        Returns:
            int: Number of movements updated.
        """
        response = (
            self.supabase.table("stock_movements")
            .update({"state": state})
            .eq("batch_id", batch_id)
            .eq("state", "pending")
            .execute()
        )
        return len(response.data) if response.data else 0

    def list_movements(
        self,
        product_id: str | None = None,
        order_id: str | None = None,
        limit: int = 100,
    ) -> list[StockMovement]:
        """List movements, newest first."""
        query = self.supabase.table("stock_movements").select("*")
        if product_id:
            query = query.eq("product_id", product_id)
        if order_id:
            query = query.eq("order_id", order_id)
        response = query.order("created_at", desc=True).limit(limit).execute()
        return response.data or []
