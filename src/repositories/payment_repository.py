"""Processed payment repository (payment deduplication table)."""

from typing import Any

from postgrest.exceptions import APIError as PostgrestAPIError

from src.models.payment import ProcessedPayment
from src.repositories.base import DuplicateRecordError, SupabaseRepository, is_unique_violation


class PaymentRepository(SupabaseRepository):
    """Data access for processed_payments."""

    def get_processed_payment(self, provider: str, payment_id: str) -> ProcessedPayment | None:
        """Look up a processed payment by its idempotence key."""
        response = (
            self.supabase.table("processed_payments")
            .select("*")
            .eq("provider", provider)
            .eq("payment_id", payment_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def insert_processed_payment(self, row: dict[str, Any]) -> ProcessedPayment:
        """Insert a processed payment.

        Raises:
            DuplicateRecordError: If (provider, payment_id) already exists.
        """
        try:
            response = self.supabase.table("processed_payments").insert(row).execute()
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                raise DuplicateRecordError("processed_payments", str(e.message)) from e
            raise
        return response.data[0]
