"""Payment provider webhook verification and dispatch."""

import json
import logging
from decimal import Decimal
from typing import Any, Mapping

import stripe

from src.core.config import get_settings
from src.core.paypal import PayPalClient
from src.core.stripe import from_minor_units, get_stripe
from src.services.payment_confirmation import (
    ConfirmationResult,
    PaymentConfirmationService,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)

PAYPAL_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
PAYPAL_CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
PAYPAL_CAPTURE_DECLINED = "PAYMENT.CAPTURE.DECLINED"
PAYPAL_CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"


class WebhookVerificationError(Exception):
    """Raised when a webhook delivery cannot be authenticated."""


def _capture_id_from_refund(resource: dict[str, Any]) -> str | None:
    """Extract the refunded capture id from a PayPal refund's `up` link."""
    for link in resource.get("links") or []:
        if link.get("rel") == "up" and "/captures/" in link.get("href", ""):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def _stripe_order_id(obj: Mapping[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    return metadata.get("order_id") or obj.get("client_reference_id")


class WebhookService:
    """Turns verified PayPal and Stripe events into orchestrator calls."""

    def __init__(
        self,
        confirmation: PaymentConfirmationService | None = None,
        paypal: PayPalClient | None = None,
    ) -> None:
        """Initialize webhook service.

        Args:
            confirmation: Optional orchestrator for testing.
            paypal: Optional PayPal client for testing.
        """
        self.settings = get_settings()
        self.confirmation = confirmation or PaymentConfirmationService()
        self.paypal = paypal or PayPalClient(self.settings)
        self.stripe = get_stripe()

    async def verify_paypal_event(self, headers: Mapping[str, str], event: dict[str, Any]) -> None:
        """Verify a PayPal delivery when verification is enabled.

        Raises:
            WebhookVerificationError: If PayPal does not confirm the signature.
            PayPalError: If PayPal cannot be reached.
        """
        if not self.settings.paypal_verify_webhooks:
            logger.debug("PayPal webhook verification disabled")
            return
        if not await self.paypal.verify_webhook_signature(headers, event):
            raise WebhookVerificationError("Invalid PayPal webhook signature")

    def verify_stripe_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a Stripe delivery and return the parsed event.

        Raises:
            ValueError: If the webhook secret is not configured.
            WebhookVerificationError: If the signature or payload is invalid.
        """
        if not self.settings.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret is not configured. Please set STRIPE_WEBHOOK_SECRET environment variable.")

        try:
            self.stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig_header, self.settings.stripe_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid Stripe webhook signature: %s", str(e))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError("Invalid Stripe webhook payload") from e
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid Stripe webhook payload")
        return event

    async def handle_paypal_event(self, event: dict[str, Any]) -> ConfirmationResult:
        """Dispatch a PAYMENT.CAPTURE.* event.

        The local order id is the capture's custom_id, falling back to the
        PayPal order id recorded when the order was created.
        """
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        payment_id = resource.get("id")

        if event_type not in (
            PAYPAL_CAPTURE_COMPLETED,
            PAYPAL_CAPTURE_DENIED,
            PAYPAL_CAPTURE_DECLINED,
            PAYPAL_CAPTURE_REFUNDED,
        ):
            logger.info("Unhandled PayPal webhook event type: %s", event_type)
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)

        order_id = await self._paypal_order_id(resource)

        if event_type == PAYPAL_CAPTURE_REFUNDED:
            capture_id = _capture_id_from_refund(resource)
            return await self.confirmation.refund_payment(
                provider="paypal",
                provider_payment_id=capture_id or payment_id,
                order_id=order_id,
                refund_id=payment_id,
            )

        if not order_id or not payment_id:
            logger.error("PayPal %s event %s has no order reference", event_type, event.get("id"))
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)

        if event_type == PAYPAL_CAPTURE_COMPLETED:
            amount = (resource.get("amount") or {}).get("value")
            return await self.confirmation.confirm_payment(
                provider="paypal",
                provider_payment_id=payment_id,
                order_id=order_id,
                captured_amount=Decimal(amount) if amount else None,
                channel="webhook",
            )

        return await self.confirmation.fail_payment(
            provider="paypal",
            provider_payment_id=payment_id,
            order_id=order_id,
            reason=event_type,
        )

    async def _paypal_order_id(self, resource: dict[str, Any]) -> str | None:
        order_id = resource.get("custom_id") or resource.get("invoice_id")
        if order_id:
            return order_id

        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        provider_order_id = related.get("order_id")
        if provider_order_id:
            order = await self.confirmation.orders.find_by_provider_order_id(provider_order_id)
            if order:
                return str(order["id"])
        return None

    async def handle_stripe_event(self, event: dict[str, Any]) -> ConfirmationResult:
        """Dispatch a verified Stripe event.

        The idempotence key for Stripe payments is the PaymentIntent id, so a
        checkout.session.completed and a later async_payment_succeeded for
        the same session converge on one application.
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            return await self._stripe_session_paid(event_type, obj)

        if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
            order_id = _stripe_order_id(obj)
            if not order_id:
                logger.warning("Stripe %s for session %s has no order_id", event_type, obj.get("id"))
                return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)
            return await self.confirmation.fail_payment(
                provider="stripe",
                provider_payment_id=obj.get("payment_intent"),
                order_id=order_id,
                reason=event_type,
            )

        if event_type == "payment_intent.payment_failed":
            order_id = _stripe_order_id(obj)
            if not order_id:
                return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)
            error = (obj.get("last_payment_error") or {}).get("message") or event_type
            return await self.confirmation.fail_payment(
                provider="stripe",
                provider_payment_id=obj.get("id"),
                order_id=order_id,
                reason=error,
            )

        if event_type == "charge.refunded":
            return await self._stripe_charge_refunded(obj)

        logger.debug("Unhandled Stripe webhook event type: %s", event_type)
        return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)

    async def _stripe_session_paid(self, event_type: str, session: dict[str, Any]) -> ConfirmationResult:
        order_id = _stripe_order_id(session)
        if not order_id:
            logger.warning("Stripe %s for session %s has no order_id", event_type, session.get("id"))
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=None)

        if session.get("payment_status") != "paid":
            # Delayed methods (SEPA, ACH) settle via async_payment_succeeded
            logger.info("Stripe session %s for order %s awaiting payment", session.get("id"), order_id)
            return ConfirmationResult(PaymentOutcome.PENDING, order_id=order_id)

        amount_total = session.get("amount_total")
        captured_amount = None
        if amount_total is not None:
            captured_amount = from_minor_units(amount_total, session.get("currency"))
        return await self.confirmation.confirm_payment(
            provider="stripe",
            provider_payment_id=session.get("payment_intent") or session["id"],
            order_id=order_id,
            captured_amount=captured_amount,
            channel="webhook",
        )

    async def _stripe_charge_refunded(self, charge: dict[str, Any]) -> ConfirmationResult:
        payment_id = charge.get("payment_intent") or charge.get("id")
        order_id = _stripe_order_id(charge)

        if not charge.get("refunded"):
            # Partial refunds change no order or stock state
            await self.confirmation.audit.record(
                "payment.partial_refund",
                "payment",
                payment_id,
                {
                    "provider": "stripe",
                    "order_id": order_id,
                    "amount_refunded": charge.get("amount_refunded"),
                    "amount": charge.get("amount"),
                },
            )
            return ConfirmationResult(PaymentOutcome.IGNORED, order_id=order_id)

        return await self.confirmation.refund_payment(
            provider="stripe",
            provider_payment_id=payment_id,
            order_id=order_id,
            refund_id=charge.get("id"),
        )
