"""Payment confirmation orchestrator.

Both the synchronous capture call and provider webhooks report the same
captured payment. Everything that must happen exactly once per payment (stock
decrement, order transition, coupon redemption, confirmation email) is driven
from here, keyed by (provider, provider payment id).

Exactly-once rests on three storage-level guards, not on in-process locks:

* processed_payments unique (provider, payment_id): early exit for replays;
* the stock movement anchor: only one caller can decrement stock for a
  given (order, payment);
* conditional order updates guarded on the observed payment_status.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from src.core.background import fire_and_forget
from src.models.order import CAPTURED_PAYMENT_STATUSES, Order
from src.services.audit_service import SYSTEM_ACTOR, AuditLogService
from src.services.coupon_service import CouponUsageRecorder
from src.services.email_service import EmailService
from src.services.order_state import OrderNotFoundError, OrderStateError, OrderStateMachine
from src.services.payment_dedup_service import PaymentDeduplicationStore
from src.services.stock_ledger import (
    DuplicateMovementError,
    InsufficientStockError,
    LedgerIntegrityError,
    StockItem,
    StockLedger,
    StockShortage,
)

logger = logging.getLogger(__name__)


class PaymentOutcome(str, Enum):
    """Result of a payment event as seen by the transport adapters."""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    INSUFFICIENT_STOCK = "insufficient_stock"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"
    IGNORED = "ignored"


@dataclass
class ConfirmationResult:
    """What a payment event did to an order."""

    outcome: PaymentOutcome
    order_id: str | None
    order: Order | None = None
    shortages: list[StockShortage] = field(default_factory=list)
    stock_returned: bool | None = None

    @property
    def requires_manual_review(self) -> bool:
        return self.outcome == PaymentOutcome.INSUFFICIENT_STOCK


class OrderUpdateAfterStockError(Exception):
    """Stock was decremented but the order could not be marked paid.

    The stock change is intentionally kept; the condition is audited and
    needs manual reconciliation.
    """

    def __init__(self, order_id: str, payment_id: str) -> None:
        self.order_id = order_id
        self.payment_id = payment_id
        super().__init__(
            f"Stock decremented for order {order_id} but order status update failed "
            f"(payment {payment_id}) - requires manual reconciliation"
        )


def _order_items(order: Order) -> list[StockItem]:
    return [StockItem(str(item["product_id"]), int(item["quantity"])) for item in order.get("items") or []]


def _items_metadata(order: Order) -> list[dict[str, Any]]:
    return [
        {"product_id": str(item["product_id"]), "quantity": item["quantity"]}
        for item in order.get("items") or []
    ]


class PaymentConfirmationService:
    """Applies payment events to orders, stock and coupons exactly once."""

    def __init__(
        self,
        ledger: StockLedger | None = None,
        dedup: PaymentDeduplicationStore | None = None,
        coupons: CouponUsageRecorder | None = None,
        audit: AuditLogService | None = None,
        orders: OrderStateMachine | None = None,
        email_service: EmailService | None = None,
    ) -> None:
        """Initialize the orchestrator.

        All collaborators are optional for testing; defaults talk to Supabase.
        """
        self.ledger = ledger or StockLedger()
        self.dedup = dedup or PaymentDeduplicationStore()
        self.coupons = coupons or CouponUsageRecorder()
        self.audit = audit or AuditLogService()
        self.orders = orders or OrderStateMachine()
        self._email_service = email_service

    @property
    def email_service(self) -> EmailService:
        """Get email service, created on first use."""
        if self._email_service is None:
            self._email_service = EmailService()
        return self._email_service

    async def confirm_payment(
        self,
        provider: str,
        provider_payment_id: str,
        order_id: str,
        captured_amount: Decimal | str | None = None,
        channel: str = "capture",
        actor: str = SYSTEM_ACTOR,
    ) -> ConfirmationResult:
        """Apply a captured payment to its order.

        Args:
            provider: "paypal", "stripe" or "cash".
            provider_payment_id: Capture/payment id; the idempotence key.
            order_id: Local order id carried through the provider.
            captured_amount: Amount the provider reports as captured.
            channel: "capture", "webhook" or "admin"; logged and audited.
            actor: Who triggered the confirmation.

        Returns:
            ConfirmationResult: applied, already_processed or insufficient_stock.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order was already failed or refunded.
            OrderUpdateAfterStockError: If stock moved but the order write failed.
            LedgerIntegrityError: If the ledger could not compensate a failure.
        """
        if not provider_payment_id:
            raise ValueError("provider_payment_id is required")

        if await self.dedup.is_processed(provider, provider_payment_id):
            logger.info(
                "Payment %s/%s already processed (channel=%s)", provider, provider_payment_id, channel
            )
            await self._audit_duplicate(provider, provider_payment_id, order_id, channel, "already_processed", actor)
            return ConfirmationResult(PaymentOutcome.ALREADY_PROCESSED, order_id=order_id)

        try:
            order = await self.orders.get_order(order_id)
        except OrderNotFoundError:
            logger.warning(
                "Payment %s/%s references unknown order %s", provider, provider_payment_id, order_id
            )
            await self.audit.record(
                "payment.order_not_found",
                "payment",
                provider_payment_id,
                {"provider": provider, "order_id": order_id, "channel": channel, "amount": captured_amount},
                actor,
            )
            raise

        payment_status = order["payment_status"]
        if payment_status in CAPTURED_PAYMENT_STATUSES:
            await self._audit_duplicate(
                provider, provider_payment_id, order_id, channel, f"order_{payment_status}", actor
            )
            return ConfirmationResult(PaymentOutcome.ALREADY_PROCESSED, order_id=str(order["id"]), order=order)

        if payment_status != "pending":
            logger.error(
                "Payment %s/%s captured for order %s with payment_status %s",
                provider,
                provider_payment_id,
                order_id,
                payment_status,
            )
            await self.audit.record(
                "payment.closed_order_capture",
                "payment",
                provider_payment_id,
                {
                    "provider": provider,
                    "order_id": str(order["id"]),
                    "payment_status": payment_status,
                    "channel": channel,
                    "amount": captured_amount,
                },
                actor,
            )
            raise OrderStateError(
                f"Order {order_id} is {payment_status}; captured payment {provider_payment_id} needs manual review",
                order_id=str(order["id"]),
                current=payment_status,
            )

        amount = Decimal(str(captured_amount)) if captured_amount is not None else Decimal(str(order["total"]))
        if amount != Decimal(str(order["total"])):
            logger.warning(
                "Captured amount %s differs from order %s total %s", amount, order_id, order["total"]
            )

        return await self._decrement_and_finalize(
            order=order,
            provider=provider,
            payment_id=provider_payment_id,
            amount=amount,
            channel=channel,
            actor=actor,
            expected="pending",
        )

    async def retry_flagged_order(self, order_id: str, actor: str) -> ConfirmationResult:
        """Re-attempt stock decrement for an order flagged after capture.

        Used by an admin once inventory has been replenished. The stored
        payment_provider/payment_id of the original capture is reused, so
        the stock movement anchor and dedup key stay the same.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order is not awaiting manual review.
        """
        order = await self.orders.get_order(order_id)
        if order["payment_status"] != "completed" or not order.get("requires_manual_review"):
            raise OrderStateError(
                f"Order {order_id} is not awaiting manual stock review",
                order_id=str(order_id),
                current=order["payment_status"],
            )
        if not order.get("payment_id") or not order.get("payment_provider"):
            raise OrderStateError(
                f"Order {order_id} has no recorded payment to retry",
                order_id=str(order_id),
                current=order["payment_status"],
            )

        logger.info("Retrying stock decrement for flagged order %s by %s", order_id, actor)
        return await self._decrement_and_finalize(
            order=order,
            provider=order["payment_provider"],
            payment_id=order["payment_id"],
            amount=Decimal(str(order["total"])),
            channel="admin_retry",
            actor=actor,
            expected="completed",
        )

    async def confirm_cash_payment(self, order_id: str, actor: str) -> ConfirmationResult:
        """Confirm an order paid in cash at pickup or delivery.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order is not a cash order.
        """
        order = await self.orders.get_order(order_id)
        if order.get("payment_method") != "cash":
            raise OrderStateError(
                f"Order {order_id} is not a cash order",
                order_id=str(order_id),
                current=order["payment_status"],
            )

        payment_id = order.get("payment_id") or f"cash-{order['id']}"
        return await self.confirm_payment(
            provider="cash",
            provider_payment_id=payment_id,
            order_id=str(order["id"]),
            captured_amount=order["total"],
            channel="admin",
            actor=actor,
        )

    async def refund_payment(
        self,
        provider: str,
        provider_payment_id: str,
        order_id: str | None = None,
        refund_id: str | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> ConfirmationResult:
        """Apply a (full) refund notification.

        Stock is returned only when it was decremented, i.e. the order was
        "paid". A failed stock return is audited and not retried.

        Raises:
            OrderNotFoundError: If no order matches the id or payment id.
        """
        order = None
        if order_id:
            order = await self.orders.find_order(order_id)
        if order is None:
            order = await self.orders.find_by_payment_id(provider_payment_id)
        if order is None:
            await self.audit.record(
                "payment.refund_order_not_found",
                "payment",
                provider_payment_id,
                {"provider": provider, "order_id": order_id, "refund_id": refund_id},
                actor,
            )
            raise OrderNotFoundError(order_id or provider_payment_id)

        resolved_id = str(order["id"])
        previous = order["payment_status"]

        if previous == "refunded":
            await self._audit_duplicate(provider, provider_payment_id, resolved_id, "refund", "already_refunded", actor)
            return ConfirmationResult(PaymentOutcome.ALREADY_PROCESSED, order_id=resolved_id, order=order)

        if previous not in CAPTURED_PAYMENT_STATUSES:
            cancelled = await self.orders.cancel_unpaid(order)
            await self.audit.record(
                "payment.refund_without_capture",
                "payment",
                provider_payment_id,
                {
                    "provider": provider,
                    "order_id": resolved_id,
                    "refund_id": refund_id,
                    "payment_status": previous,
                    "cancelled": cancelled is not None,
                },
                actor,
            )
            return ConfirmationResult(
                PaymentOutcome.CANCELLED,
                order_id=resolved_id,
                order=cancelled or order,
                stock_returned=False,
            )

        updated = await self.orders.mark_refunded(order, expected=previous)
        if not updated:
            await self._audit_duplicate(provider, provider_payment_id, resolved_id, "refund", "concurrent_refund", actor)
            return ConfirmationResult(PaymentOutcome.ALREADY_PROCESSED, order_id=resolved_id, order=order)

        stock_returned = False
        if previous == "paid":
            stock_returned = await self._return_stock(order, provider, provider_payment_id, refund_id, actor)

        await self.audit.record(
            "payment.refunded",
            "payment",
            provider_payment_id,
            {
                "provider": provider,
                "order_id": resolved_id,
                "refund_id": refund_id,
                "previous_payment_status": previous,
                "stock_returned": stock_returned,
                "items": _items_metadata(order),
            },
            actor,
        )
        logger.info(
            "Order %s refunded via %s (stock_returned=%s)", resolved_id, provider, stock_returned
        )
        return ConfirmationResult(
            PaymentOutcome.REFUNDED,
            order_id=resolved_id,
            order={**order, **updated, "items": order.get("items") or []},
            stock_returned=stock_returned,
        )

    async def fail_payment(
        self,
        provider: str,
        provider_payment_id: str | None,
        order_id: str,
        reason: str,
        actor: str = SYSTEM_ACTOR,
    ) -> ConfirmationResult:
        """Apply a denied/declined/expired payment to a pending order.

        Orders whose payment was already captured are never regressed.

        Raises:
            OrderNotFoundError: If the order does not exist.
        """
        order = await self.orders.get_order(order_id)
        if order["payment_status"] != "pending":
            logger.info(
                "Ignoring payment failure (%s) for order %s with payment_status %s",
                reason,
                order_id,
                order["payment_status"],
            )
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=str(order["id"]), order=order)

        updated = await self.orders.mark_failed(order)
        await self.audit.record(
            "payment.failed",
            "payment",
            provider_payment_id or str(order["id"]),
            {"provider": provider, "order_id": str(order["id"]), "reason": reason, "applied": updated is not None},
            actor,
        )
        if not updated:
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=str(order["id"]), order=order)
        return ConfirmationResult(PaymentOutcome.FAILED, order_id=str(order["id"]), order={**order, **updated})

    async def _decrement_and_finalize(
        self,
        order: Order,
        provider: str,
        payment_id: str,
        amount: Decimal,
        channel: str,
        actor: str,
        expected: str,
    ) -> ConfirmationResult:
        order_id = str(order["id"])
        items = _order_items(order)

        try:
            if items:
                await self.ledger.decrease(items, order_id=order_id, cause_id=payment_id, actor=actor)
            else:
                logger.warning("Order %s has no items, no stock to decrement", order_id)
        except DuplicateMovementError:
            await self._audit_duplicate(provider, payment_id, order_id, channel, "stock_already_decremented", actor)
            return ConfirmationResult(PaymentOutcome.ALREADY_PROCESSED, order_id=order_id, order=order)
        except InsufficientStockError as e:
            return await self._handle_insufficient_stock(order, provider, payment_id, amount, channel, actor, expected, e)
        except LedgerIntegrityError as e:
            await self.audit.record(
                "payment.stock_reconciliation_failed",
                "payment",
                payment_id,
                {
                    "provider": provider,
                    "order_id": order_id,
                    "batch_id": e.batch_id,
                    "products": e.product_ids,
                    "error": str(e),
                },
                actor,
            )
            raise

        updated = None
        update_error = None
        try:
            updated = await self.orders.mark_paid(order, provider, payment_id, expected=expected)
        except Exception as e:
            update_error = str(e)
            logger.error("Order %s status update after stock decrement failed: %s", order_id, update_error)

        if not updated:
            await self.audit.record(
                "payment.status_update_failed",
                "payment",
                payment_id,
                {
                    "provider": provider,
                    "order_id": order_id,
                    "amount": amount,
                    "channel": channel,
                    "stock_decremented": bool(items),
                    "error": update_error or "order payment_status changed concurrently",
                    "note": "stock decremented but order status update failed - requires manual reconciliation",
                },
                actor,
            )
            raise OrderUpdateAfterStockError(order_id, payment_id)

        paid_order: Order = {**order, **updated, "items": order.get("items") or []}

        await self.coupons.record_usage(paid_order)
        await self.audit.record(
            "payment.completed",
            "payment",
            payment_id,
            {
                "provider": provider,
                "order_id": order_id,
                "amount": amount,
                "channel": channel,
                "stock_decremented": bool(items),
                "items": _items_metadata(order),
            },
            actor,
        )
        await self.dedup.mark_processed(provider, payment_id, order_id, amount)

        fire_and_forget(
            self.email_service.send_order_confirmation_email(paid_order),
            f"order confirmation email for {order_id}",
        )
        fire_and_forget(
            self.email_service.send_admin_order_notification(paid_order),
            f"admin notification for {order_id}",
        )

        logger.info("Payment %s/%s applied to order %s via %s", provider, payment_id, order_id, channel)
        return ConfirmationResult(PaymentOutcome.APPLIED, order_id=order_id, order=paid_order)

    async def _handle_insufficient_stock(
        self,
        order: Order,
        provider: str,
        payment_id: str,
        amount: Decimal,
        channel: str,
        actor: str,
        expected: str,
        error: InsufficientStockError,
    ) -> ConfirmationResult:
        order_id = str(order["id"])
        shortages = [s.to_dict() for s in error.shortages]

        if expected != "pending":
            # Manual retry: the order is already flagged, leave it as is.
            await self.audit.record(
                "payment.retry_insufficient_stock",
                "order",
                order_id,
                {"provider": provider, "payment_id": payment_id, "shortages": shortages},
                actor,
            )
            return ConfirmationResult(
                PaymentOutcome.INSUFFICIENT_STOCK, order_id=order_id, order=order, shortages=error.shortages
            )

        flagged = await self.orders.flag_insufficient_stock(order, provider, payment_id, error.shortages)
        logger.warning(
            "Payment %s/%s captured for order %s but stock is insufficient: %s",
            provider,
            payment_id,
            order_id,
            error,
        )
        await self.audit.record(
            "payment.insufficient_stock",
            "payment",
            payment_id,
            {
                "provider": provider,
                "order_id": order_id,
                "amount": amount,
                "channel": channel,
                "shortages": shortages,
                "requires_manual_review": True,
                "order_flagged": flagged is not None,
            },
            actor,
        )

        result_order: Order = {**order, **flagged, "items": order.get("items") or []} if flagged else order
        if flagged:
            fire_and_forget(
                self.email_service.send_admin_order_notification(result_order, requires_manual_review=True),
                f"manual review notification for {order_id}",
            )
        return ConfirmationResult(
            PaymentOutcome.INSUFFICIENT_STOCK, order_id=order_id, order=result_order, shortages=error.shortages
        )

    async def _return_stock(
        self,
        order: Order,
        provider: str,
        payment_id: str,
        refund_id: str | None,
        actor: str,
    ) -> bool:
        order_id = str(order["id"])
        items = _order_items(order)
        if not items:
            return False

        # Tag with the capture that decremented the stock
        cause_id = order.get("payment_id") or payment_id
        try:
            await self.ledger.increase(
                items,
                order_id=order_id,
                cause_id=cause_id,
                reason=f"Refund {refund_id or payment_id} for order {order_id}",
                actor=actor,
            )
        except DuplicateMovementError:
            logger.info("Stock for order %s was already returned", order_id)
            return True
        except Exception as e:
            logger.error("Returning stock for refunded order %s failed: %s", order_id, str(e))
            await self.audit.record(
                "payment.refund_stock_return_failed",
                "payment",
                payment_id,
                {
                    "provider": provider,
                    "order_id": order_id,
                    "refund_id": refund_id,
                    "items": _items_metadata(order),
                    "error": str(e),
                },
                actor,
            )
            return False
        return True

    async def _audit_duplicate(
        self,
        provider: str,
        payment_id: str,
        order_id: str | None,
        channel: str,
        reason: str,
        actor: str,
    ) -> None:
        await self.audit.record(
            "payment.duplicate_attempt",
            "payment",
            payment_id,
            {"provider": provider, "order_id": order_id, "channel": channel, "reason": reason},
            actor,
        )
