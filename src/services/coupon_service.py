"""Coupon validation at order creation and redemption after payment."""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from src.models.coupon import Coupon, CouponUsage
from src.models.order import Order
from src.repositories.base import DuplicateRecordError
from src.repositories.coupon_repository import CouponRepository

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class CouponError(ValueError):
    """Raised when a coupon cannot be applied to an order."""

    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Coupon {code} {reason}")


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def calculate_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """Discount a coupon gives on a subtotal, never more than the subtotal."""
    amount = Decimal(str(coupon["amount"]))
    if coupon["type"] == "percentage":
        discount = (subtotal * amount / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        discount = amount

    cap = coupon.get("max_discount_amount")
    if cap is not None:
        discount = min(discount, Decimal(str(cap)))
    return min(discount, subtotal)


class CouponValidator:
    """Checks a coupon code against its rules and prices the discount."""

    def __init__(self, repository: CouponRepository | None = None) -> None:
        self.repository = repository or CouponRepository()

    async def validate(self, code: str, subtotal: Decimal) -> tuple[Coupon, Decimal]:
        """Resolve a coupon for an order subtotal.

        Args:
            code: Coupon code as entered; case and surrounding spaces are ignored.
            subtotal: Sum of the order's line items.

        Returns:
            tuple[Coupon, Decimal]: The coupon and the discount it grants.

        Raises:
            CouponError: If the coupon is unknown, inactive, outside its
                validity window, used up, or gives no usable discount on this
                subtotal.
        """
        normalized = code.strip().upper()
        coupon = self.repository.get_coupon_by_code(normalized)
        if not coupon or not coupon["is_active"]:
            raise CouponError(normalized, "is not valid")

        now = datetime.now(timezone.utc)
        valid_from = _as_datetime(coupon.get("valid_from"))
        valid_until = _as_datetime(coupon.get("valid_until"))
        if valid_from and now < valid_from:
            raise CouponError(normalized, "is not active yet")
        if valid_until and now >= valid_until:
            raise CouponError(normalized, "has expired")

        minimum = Decimal(str(coupon.get("min_order_amount") or 0))
        if subtotal < minimum:
            raise CouponError(normalized, f"requires a minimum order of {minimum}")

        max_uses = coupon.get("max_uses")
        if max_uses is not None and self.repository.count_usages(str(coupon["id"])) >= max_uses:
            raise CouponError(normalized, "has reached its usage limit")

        discount = calculate_discount(coupon, subtotal)
        if discount <= 0:
            raise CouponError(normalized, "gives no discount on this order")
        if discount >= subtotal:
            raise CouponError(normalized, "cannot cover the whole order")

        logger.info("Coupon %s accepted: discount %s on subtotal %s", normalized, discount, subtotal)
        return coupon, discount


class CouponUsageRecorder:
    """Records one coupon usage per paid order.

    Redemption is a side effect of a confirmed payment, so nothing here may
    fail the confirmation: every problem is logged and reported as None.
    """

    def __init__(self, repository: CouponRepository | None = None) -> None:
        """Initialize coupon usage recorder.

        Args:
            repository: Optional coupon repository for testing.
        """
        self.repository = repository or CouponRepository()

    async def record_usage(self, order: Order) -> CouponUsage | None:
        """Record that the order's coupon was redeemed.

        Args:
            order: Paid order carrying coupon_code and discount_amount.

        Returns:
            CouponUsage | None: The new usage, or None when there is nothing
                to record, the coupon is unknown, or the order already has one.
        """
        code = (order.get("coupon_code") or "").strip().upper()
        try:
            discount = Decimal(str(order.get("discount_amount") or 0))
        except InvalidOperation:
            discount = Decimal(0)

        if not code or discount <= 0:
            return None

        try:
            coupon = self.repository.get_coupon_by_code(code)
            if not coupon:
                logger.warning("Coupon %s on order %s not found, usage not recorded", code, order["id"])
                return None

            usage = self.repository.insert_usage(
                {
                    "coupon_id": str(coupon["id"]),
                    "order_id": str(order["id"]),
                    "user_id": str(order["user_id"]) if order.get("user_id") else None,
                    "discount_amount": str(discount),
                    "used_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        except DuplicateRecordError:
            logger.info("Coupon usage for order %s already recorded", order["id"])
            return None
        except Exception as e:
            logger.error("Failed to record coupon %s for order %s: %s", code, order["id"], str(e))
            return None

        logger.info("Recorded coupon %s for order %s (discount %s)", code, order["id"], discount)
        return usage
