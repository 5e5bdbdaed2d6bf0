"""Processed payment model type definitions."""

from datetime import datetime
from decimal import Decimal
from typing import TypedDict


class ProcessedPayment(TypedDict):
    """processed_payments table row.

    Uniquely keyed by (provider, payment_id). Existence of the row is the
    authoritative idempotence gate; rows are never updated or deleted.
    """

    provider: str
    payment_id: str
    order_id: str
    amount: Decimal
    processed_at: datetime
