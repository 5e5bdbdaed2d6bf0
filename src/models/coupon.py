"""Coupon model type definitions."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, TypedDict
from uuid import UUID

CouponType = Literal["fixed", "percentage"]


class Coupon(TypedDict):
    """coupons table row.

    `amount` is a currency amount for fixed coupons and a percent for
    percentage coupons.
    """

    id: UUID
    code: str
    is_active: bool
    type: CouponType
    amount: Decimal
    min_order_amount: Decimal
    max_discount_amount: Decimal | None
    max_uses: int | None
    valid_from: datetime
    valid_until: datetime | None


class CouponUsage(TypedDict):
    """coupon_usages table row. At most one per order."""

    coupon_id: UUID
    order_id: UUID
    user_id: UUID | None
    discount_amount: Decimal
    used_at: datetime
