"""Checkout service: pending orders, provider orders, synchronous capture and stock checks."""

import logging
from decimal import Decimal
from typing import Any, Iterable
from uuid import uuid4

import stripe

from src.core.config import get_settings
from src.core.paypal import PayPalClient
from src.core.stripe import get_stripe, to_minor_units
from src.models.order import Order
from src.services.coupon_service import CouponValidator
from src.services.order_state import OrderNotFoundError, OrderStateError, OrderStateMachine
from src.services.payment_confirmation import (
    ConfirmationResult,
    PaymentConfirmationService,
    PaymentOutcome,
)
from src.services.stock_ledger import (
    AvailabilityReport,
    InsufficientStockError,
    StockShortage,
    UnknownProductError,
    normalize_items,
)

logger = logging.getLogger(__name__)

PAYPAL_CAPTURE_COMPLETED = "COMPLETED"
PAYPAL_CAPTURE_PENDING = "PENDING"

CENT = Decimal("0.01")


class CheckoutService:
    """Creates pending orders, starts provider payments for them and confirms captures."""

    def __init__(
        self,
        confirmation: PaymentConfirmationService | None = None,
        paypal: PayPalClient | None = None,
        coupons: CouponValidator | None = None,
    ) -> None:
        """Initialize checkout service.

        Args:
            confirmation: Optional orchestrator for testing.
            paypal: Optional PayPal client for testing.
            coupons: Optional coupon validator; defaults to the orchestrator's
                coupon repository.
        """
        self.settings = get_settings()
        self.confirmation = confirmation or PaymentConfirmationService()
        self.paypal = paypal or PayPalClient(self.settings)
        self.coupons = coupons or CouponValidator(self.confirmation.coupons.repository)
        self.stripe = get_stripe()

    @property
    def orders(self) -> OrderStateMachine:
        return self.confirmation.orders

    async def get_order(self, order_id: str) -> Order:
        """Get an order with items.

        Raises:
            OrderNotFoundError: If the order does not exist.
        """
        return await self.orders.get_order(order_id)

    async def check_stock(self, items: Iterable[tuple[str, int]]) -> AvailabilityReport:
        """Check cart availability without reserving anything."""
        return await self.confirmation.ledger.check_availability(items)

    async def create_order(
        self,
        items: Iterable[tuple[str, int]],
        customer_email: str,
        customer_name: str,
        payment_method: str,
        coupon_code: str | None = None,
        notes: str | None = None,
        user_id: str | None = None,
    ) -> Order:
        """Create the provisional pending order a payment will be applied to.

        Prices are taken from the catalog, never from the client. Stock is
        checked but not reserved; the decrement happens on confirmed payment.

        Returns:
            Order: The new order with its items.

        Raises:
            ValueError: If the item list is empty or a quantity is invalid.
            UnknownProductError: If a product does not exist or has no price.
            InsufficientStockError: If any item is not in stock, listing all of them.
            CouponError: If the coupon cannot be applied.
            OrderCreationError: If the order could not be written.
        """
        requested = normalize_items(items)

        report = await self.confirmation.ledger.check_availability(requested.items())
        if not report.available:
            raise InsufficientStockError(
                [
                    StockShortage(
                        product_id=item.product_id,
                        product_name=item.product_name,
                        requested=item.requested,
                        available=item.in_stock,
                    )
                    for item in report.unavailable_items
                ]
            )

        products = self.confirmation.ledger.repository.get_products(requested.keys())
        unpriced = sorted(pid for pid in requested if products.get(pid, {}).get("price") is None)
        if unpriced:
            raise UnknownProductError(unpriced)

        order_id = str(uuid4())
        item_rows = [
            {
                "order_id": order_id,
                "product_id": product_id,
                "product_name": products[product_id]["name"],
                "product_price": str(Decimal(str(products[product_id]["price"])).quantize(CENT)),
                "quantity": quantity,
            }
            for product_id, quantity in sorted(requested.items())
        ]
        subtotal = sum((Decimal(row["product_price"]) * row["quantity"] for row in item_rows), Decimal("0"))

        discount = Decimal("0")
        applied_code = None
        if coupon_code and coupon_code.strip():
            coupon, discount = await self.coupons.validate(coupon_code, subtotal)
            applied_code = coupon["code"]

        order = await self.orders.create_pending(
            {
                "id": order_id,
                "order_number": f"ORD-{order_id.replace('-', '')[:8].upper()}",
                "user_id": user_id,
                "customer_email": customer_email,
                "customer_name": customer_name,
                "status": "pending",
                "payment_status": "pending",
                "payment_method": payment_method,
                "subtotal": str(subtotal),
                "discount_amount": str(discount),
                "coupon_code": applied_code,
                "total": str(subtotal - discount),
                "currency": self.settings.default_currency,
                "notes": notes,
            },
            item_rows,
        )

        await self.confirmation.audit.record(
            "order.created",
            "order",
            order_id,
            {
                "order_number": order["order_number"],
                "payment_method": payment_method,
                "total": str(subtotal - discount),
                "coupon_code": applied_code,
                "items": [{"product_id": row["product_id"], "quantity": row["quantity"]} for row in item_rows],
            },
            user_id or customer_email,
        )
        return order

    async def _get_payable_order(self, order_id: str) -> Order:
        order = await self.orders.get_order(order_id)
        if order["payment_status"] != "pending" or order["status"] != "pending":
            raise OrderStateError(
                f"Order {order_id} cannot be paid (status={order['status']}, payment_status={order['payment_status']})",
                order_id=str(order_id),
                current=order["payment_status"],
            )
        return order

    async def create_paypal_order(self, order_id: str) -> dict[str, Any]:
        """Create a PayPal order for a pending local order.

        Returns:
            dict: Contains provider_order_id, status and approve_url.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order is not payable.
            PayPalError: If PayPal rejects the request.
        """
        order = await self._get_payable_order(order_id)
        paypal_order = await self.paypal.create_order(
            order_id=str(order["id"]),
            amount=Decimal(str(order["total"])),
            currency=order.get("currency") or self.settings.default_currency,
            description=f"Order {order['order_number']}",
        )

        await self.orders.attach_provider_order(order["id"], "paypal", paypal_order["id"])

        approve_url = next(
            (link["href"] for link in paypal_order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("Created PayPal order %s for order %s", paypal_order["id"], order["id"])
        return {
            "order_id": order["id"],
            "provider_order_id": paypal_order["id"],
            "status": paypal_order.get("status", ""),
            "approve_url": approve_url,
        }

    async def capture_paypal_order(self, provider_order_id: str) -> ConfirmationResult:
        """Capture an approved PayPal order and confirm it locally.

        Safe to call repeatedly: PayPal reports a repeated capture as already
        captured and the orchestrator resolves the duplicate.

        Raises:
            PayPalError: If the capture fails at PayPal.
            OrderNotFoundError: If the capture cannot be tied to an order.
        """
        capture = await self.paypal.capture_order(provider_order_id)

        order_id = capture.custom_id
        if not order_id:
            order = await self.orders.find_by_provider_order_id(provider_order_id)
            order_id = str(order["id"]) if order else None
        if not order_id:
            logger.error("PayPal order %s carries no local order reference", provider_order_id)
            raise OrderNotFoundError(provider_order_id)

        if capture.status == PAYPAL_CAPTURE_PENDING:
            # Funds not settled yet; PAYMENT.CAPTURE.COMPLETED will follow
            logger.info("PayPal capture %s for order %s is pending", capture.capture_id, order_id)
            return ConfirmationResult(PaymentOutcome.PENDING, order_id=order_id)

        if capture.status != PAYPAL_CAPTURE_COMPLETED:
            return await self.confirmation.fail_payment(
                provider="paypal",
                provider_payment_id=capture.capture_id,
                order_id=order_id,
                reason=f"capture status {capture.status}",
            )

        return await self.confirmation.confirm_payment(
            provider="paypal",
            provider_payment_id=capture.capture_id,
            order_id=order_id,
            captured_amount=capture.amount,
            channel="capture",
        )

    async def create_stripe_session(
        self,
        order_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        """Create a Stripe Checkout Session for a pending local order.

        The local order id travels in the session and PaymentIntent metadata
        so every later webhook can be correlated.

        Returns:
            dict: Contains checkout_url, order_id, stripe_session_id.

        Raises:
            ValueError: If Stripe is not configured.
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order is not payable.
            stripe.StripeError: If the Stripe API call fails.
        """
        if not self.settings.stripe_secret_key:
            raise ValueError("Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable.")

        order = await self._get_payable_order(order_id)
        local_id = str(order["id"])
        currency = (order.get("currency") or self.settings.default_currency).lower()

        checkout_params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": to_minor_units(order["total"], currency),
                        "product_data": {"name": f"Order {order['order_number']}"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": local_id,
            "metadata": {"order_id": local_id},
            "payment_intent_data": {"metadata": {"order_id": local_id}},
        }
        if order.get("customer_email"):
            checkout_params["customer_email"] = order["customer_email"]

        try:
            session = self.stripe.checkout.Session.create(**checkout_params)
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session for order %s: %s", local_id, str(e))
            raise

        await self.orders.attach_provider_order(local_id, "stripe", session.id)
        logger.info("Created Stripe session %s for order %s", session.id, local_id)
        return {
            "checkout_url": session.url,
            "order_id": local_id,
            "stripe_session_id": session.id,
        }
