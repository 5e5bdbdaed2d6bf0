"""Webhook API routes for payment provider notifications."""

import json
import logging

from fastapi import APIRouter, HTTPException, Request, status

from src.api.deps import Webhooks
from src.core.paypal import PayPalError
from src.schemas.checkout import WebhookAck
from src.services.order_state import OrderNotFoundError, OrderStateError
from src.services.payment_confirmation import ConfirmationResult, OrderUpdateAfterStockError
from src.services.stock_ledger import LedgerIntegrityError
from src.services.webhook_service import WebhookVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Outcomes a redelivery cannot change; acknowledged so the provider stops retrying
NON_RETRYABLE_ERRORS = (OrderNotFoundError, OrderStateError, OrderUpdateAfterStockError, LedgerIntegrityError)


def _ack(result: ConfirmationResult) -> WebhookAck:
    return WebhookAck(outcome=result.outcome.value)


@router.post(
    "/paypal",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle PayPal webhooks",
    description="Receives PAYMENT.CAPTURE.* events. Signatures are verified with PayPal when enabled.",
)
async def paypal_webhook(request: Request, service: Webhooks) -> WebhookAck:
    """Handle PayPal webhook events (asynchronous confirmation channel).

    Handles:
    - PAYMENT.CAPTURE.COMPLETED: confirms the payment (idempotent with capture)
    - PAYMENT.CAPTURE.DENIED / DECLINED: marks a pending order failed
    - PAYMENT.CAPTURE.REFUNDED: refunds the order and returns stock

    Raises:
        HTTPException: 400 if the body or signature is invalid.
    """
    try:
        event = json.loads(await request.body())
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        ) from e
    if not isinstance(event, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    try:
        await service.verify_paypal_event(request.headers, event)
    except WebhookVerificationError as e:
        logger.error("Rejected PayPal webhook %s: %s", event.get("id"), str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except PayPalError as e:
        # Verification unavailable; PayPal will redeliver
        logger.error("PayPal webhook verification failed: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification unavailable",
        ) from e

    event_type = event.get("event_type", "")
    logger.info("Processing PayPal webhook event: %s (%s)", event_type, event.get("id"))

    try:
        result = await service.handle_paypal_event(event)
    except NON_RETRYABLE_ERRORS as e:
        logger.error("PayPal webhook %s (%s) needs attention: %s", event.get("id"), event_type, str(e))
        return WebhookAck(outcome="not_applied")

    return _ack(result)


@router.post(
    "/stripe",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
)
async def stripe_webhook(request: Request, service: Webhooks) -> WebhookAck:
    """Handle Stripe webhook events.

    Handles:
    - checkout.session.completed / async_payment_succeeded: confirms the payment
    - checkout.session.expired / async_payment_failed: marks a pending order failed
    - payment_intent.payment_failed: marks a pending order failed
    - charge.refunded: refunds the order and returns stock (full refunds only)

    Raises:
        HTTPException: 400 if signature is invalid.
    """
    # Get raw body for signature verification
    payload = await request.body()

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    try:
        event = service.verify_stripe_event(payload, sig_header)
    except (ValueError, WebhookVerificationError) as e:
        logger.error("Invalid Stripe webhook: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    event_type = event.get("type", "")
    logger.info("Processing Stripe webhook event: %s (%s)", event_type, event.get("id"))

    try:
        result = await service.handle_stripe_event(event)
    except NON_RETRYABLE_ERRORS as e:
        logger.error("Stripe webhook %s (%s) needs attention: %s", event.get("id"), event_type, str(e))
        return WebhookAck(outcome="not_applied")

    return _ack(result)
