"""Coupon repository over coupons and coupon_usages."""

from typing import Any

from postgrest.exceptions import APIError as PostgrestAPIError

from src.models.coupon import Coupon, CouponUsage
from src.repositories.base import DuplicateRecordError, SupabaseRepository, is_unique_violation


class CouponRepository(SupabaseRepository):
    """Data access for coupon validation and redemption."""

    def get_coupon_by_code(self, code: str) -> Coupon | None:
        """Get a coupon by its (upper-case) code."""
        response = (
            self.supabase.table("coupons")
            .select("*")
            .eq("code", code)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def count_usages(self, coupon_id: str) -> int:
        """Count recorded usages of a coupon."""
        response = (
            self.supabase.table("coupon_usages")
            .select("id", count="exact")
            .eq("coupon_id", coupon_id)
            .execute()
        )
        return response.count or 0

    def insert_usage(self, row: dict[str, Any]) -> CouponUsage:
        """Insert a coupon usage.

        Raises:
            DuplicateRecordError: If the order already has a usage.
        """
        try:
            response = self.supabase.table("coupon_usages").insert(row).execute()
        except PostgrestAPIError as e:
            if is_unique_violation(e):
                raise DuplicateRecordError("coupon_usages", str(e.message)) from e
            raise
        return response.data[0]
