"""Payment deduplication store backed by a unique (provider, payment_id) key."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from src.repositories.base import DuplicateRecordError
from src.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


class PaymentDeduplicationStore:
    """Records which provider payments have already produced side effects.

    The unique constraint on processed_payments is what makes this safe
    across processes: the in-process lookup is only an early exit.
    """

    def __init__(self, repository: PaymentRepository | None = None) -> None:
        """Initialize deduplication store.

        Args:
            repository: Optional payment repository for testing.
        """
        self.repository = repository or PaymentRepository()

    async def is_processed(self, provider: str, payment_id: str) -> bool:
        """Check whether a payment's side effects were already applied."""
        return self.repository.get_processed_payment(provider, payment_id) is not None

    async def mark_processed(
        self,
        provider: str,
        payment_id: str,
        order_id: str,
        amount: Decimal,
    ) -> bool:
        """Mark a payment as processed.

        Concurrent callers racing on the same key get exactly one True; the
        others get False instead of a conflict error.

        Returns:
            bool: True if this call created the record.
        """
        try:
            self.repository.insert_processed_payment(
                {
                    "provider": provider,
                    "payment_id": payment_id,
                    "order_id": str(order_id),
                    "amount": str(amount),
                    "processed_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        except DuplicateRecordError:
            logger.info("Payment %s/%s was already marked processed", provider, payment_id)
            return False
        return True
