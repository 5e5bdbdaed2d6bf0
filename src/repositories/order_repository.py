"""Order repository over the orders and order_items tables."""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError

from src.models.order import Order, OrderItem
from src.repositories.base import DuplicateRecordError, SupabaseRepository, is_unique_violation

logger = logging.getLogger(__name__)

ORDER_WITH_ITEMS = "*, items:order_items(*)"


def _is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


class OrderRepository(SupabaseRepository):
    """Data access for orders and their line items."""

    def get_order(self, order_id: str | UUID) -> Order | None:
        """Get an order with its items by ID.

        Args:
            order_id: The order's UUID. Malformed ids return None rather
                than a database error, since webhook correlation values are
                opaque strings.

        Returns:
            Order | None: The order or None if not found.
        """
        if not _is_uuid(order_id):
            return None

        response = (
            self.supabase.table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("id", str(order_id))
            .maybe_single()
            .execute()
        )
        return response.data if response and response.data else None

    def find_by_payment_id(self, payment_id: str) -> Order | None:
        """Get the order a provider payment/capture id was recorded on."""
        response = (
            self.supabase.table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("payment_id", payment_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def find_by_provider_order_id(self, provider_order_id: str) -> Order | None:
        """Get the order linked to a PayPal order id or Stripe session id."""
        response = (
            self.supabase.table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("provider_order_id", provider_order_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def update_order(self, order_id: str | UUID, changes: dict[str, Any]) -> Order | None:
        """Unconditionally update an order.

        Returns:
            Order | None: Updated row (without items) or None if no row matched.
        """
        payload = {**changes, "updated_at": datetime.now(timezone.utc).isoformat()}
        response = (
            self.supabase.table("orders")
            .update(payload)
            .eq("id", str(order_id))
            .execute()
        )
        return response.data[0] if response.data else None

    def update_order_if(
        self,
        order_id: str | UUID,
        changes: dict[str, Any],
        expected_payment_status: str | Iterable[str],
    ) -> Order | None:
        """Update an order only if its payment_status still matches.

        This is the optimistic-concurrency guard for payment transitions:
        PostgREST turns it into a single UPDATE ... WHERE payment_status = x,
        so exactly one of several concurrent writers wins.

        Returns:
            Order | None: Updated row, or None if the guard did not match.
        """
        payload = {**changes, "updated_at": datetime.now(timezone.utc).isoformat()}
        query = self.supabase.table("orders").update(payload).eq("id", str(order_id))
        if isinstance(expected_payment_status, str):
            query = query.eq("payment_status", expected_payment_status)
        else:
            query = query.in_("payment_status", list(expected_payment_status))

        response = query.execute()
        if not response.data:
            logger.info(
                "Conditional update on order %s skipped: payment_status no longer %s",
                order_id,
                expected_payment_status,
            )
            return None
        return response.data[0]

    def list_orders_for_review(self, limit: int = 100) -> list[Order]:
        """List orders flagged for manual review, newest first."""
        response = (
            self.supabase.table("orders")
            .select(ORDER_WITH_ITEMS)
            .eq("requires_manual_review", True)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []

    def insert_order(self, row: dict[str, Any]) -> Order:
        """Insert an orders row (without items).

        Raises:
            DuplicateRecordError: If the order id or order number is taken.
        """
        try:
            response = self.supabase.table("orders").insert(row).execute()
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                raise DuplicateRecordError("orders", str(e.message)) from e
            raise
        return response.data[0]

    def insert_items(self, rows: list[dict[str, Any]]) -> list[OrderItem]:
        """Insert an order's line items in one statement."""
        response = self.supabase.table("order_items").insert(rows).execute()
        return response.data or []

    def delete_order(self, order_id: str | UUID) -> None:
        """Delete an order; its items go with it (on delete cascade)."""
        self.supabase.table("orders").delete().eq("id", str(order_id)).execute()
