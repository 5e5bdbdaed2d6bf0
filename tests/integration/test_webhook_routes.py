"""Integration tests for payment provider webhook routes."""

import json
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from src.core.config import get_settings
from src.core.paypal import PayPalError
from src.services.webhook_service import WebhookVerificationError
from tests.fakes import FakeAuditRepository, FakeOrderRepository, FakeStockRepository, make_order
from tests.signing import stripe_signature

ORDER_ID = "660e8400-e29b-41d4-a716-446655440000"


def paypal_capture_event(event_type: str = "PAYMENT.CAPTURE.COMPLETED", order_id: str = ORDER_ID) -> dict[str, Any]:
    return {
        "id": "WH-2WR32451HC0233532-67976317FL4543714",
        "event_type": event_type,
        "resource": {
            "id": "3C679366HH908993F",
            "status": "COMPLETED",
            "amount": {"currency_code": "EUR", "value": "30.00"},
            "custom_id": order_id,
        },
    }


def stripe_session_event(event_type: str = "checkout.session.completed") -> dict[str, Any]:
    return {
        "id": "evt_1NG8Du2eZvKYlo2CUI79vXWy",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_a1b2c3",
                "payment_intent": "pi_3MtwBwLkdIwHu7ix28a3tqPa",
                "payment_status": "paid",
                "amount_total": 3000,
                "metadata": {"order_id": ORDER_ID},
            }
        },
    }


def post_stripe(client: TestClient, event: dict[str, Any], secret: str | None = None) -> Any:
    payload = json.dumps(event).encode("utf-8")
    header = stripe_signature(payload, secret or get_settings().stripe_webhook_secret)
    return client.post(
        "/api/v1/webhooks/stripe",
        content=payload,
        headers={"Content-Type": "application/json", "Stripe-Signature": header},
    )


class TestPayPalWebhook:
    """Tests for POST /api/v1/webhooks/paypal."""

    def test_capture_completed_applies_once(
        self, client: TestClient, order_repo: FakeOrderRepository, stock_repo: FakeStockRepository
    ) -> None:
        """Test that a capture event and its redelivery decrement stock once."""
        order_repo.add(make_order(ORDER_ID))

        first = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())
        second = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())

        assert first.status_code == 200
        assert first.json() == {"status": "received", "outcome": "applied"}
        assert second.json()["outcome"] == "already_processed"
        assert stock_repo.quantity("prod-a") == 8
        assert order_repo.orders[ORDER_ID]["payment_status"] == "paid"

    def test_unknown_order_is_acknowledged(self, client: TestClient, audit_repo: FakeAuditRepository) -> None:
        """Test that an event for a missing order is acknowledged but not applied."""
        response = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())

        assert response.status_code == 200
        assert response.json()["outcome"] == "not_applied"
        assert "payment.order_not_found" in audit_repo.actions()

    def test_insufficient_stock_is_acknowledged(
        self, client: TestClient, order_repo: FakeOrderRepository, stock_repo: FakeStockRepository
    ) -> None:
        """Test that a short order is flagged and the delivery acknowledged."""
        order_repo.add(make_order(ORDER_ID, items=[("prod-b", 6)]))

        response = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())

        assert response.status_code == 200
        assert response.json()["outcome"] == "insufficient_stock"
        assert order_repo.orders[ORDER_ID]["requires_manual_review"] is True
        assert stock_repo.quantity("prod-b") == 5

    def test_invalid_json(self, client: TestClient) -> None:
        """Test that a malformed body is rejected with 400."""
        response = client.post(
            "/api/v1/webhooks/paypal", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    @pytest.mark.parametrize("body", [b"[]", b'"x"', b"42", b"null"])
    def test_non_object_json(self, client: TestClient, body: bytes) -> None:
        """Test that valid JSON which is not an event object is rejected with 400."""
        response = client.post(
            "/api/v1/webhooks/paypal", content=body, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    def test_rejected_signature(self, client: TestClient) -> None:
        """Test that a delivery PayPal does not verify is rejected with 400."""
        with patch(
            "src.services.webhook_service.WebhookService.verify_paypal_event",
            new=AsyncMock(side_effect=WebhookVerificationError("bad")),
        ):
            response = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    def test_verification_unavailable(self, client: TestClient) -> None:
        """Test that a PayPal outage during verification asks for redelivery."""
        with patch(
            "src.services.webhook_service.WebhookService.verify_paypal_event",
            new=AsyncMock(side_effect=PayPalError("timeout", retryable=True)),
        ):
            response = client.post("/api/v1/webhooks/paypal", json=paypal_capture_event())

        assert response.status_code == 503


class TestStripeWebhook:
    """Tests for POST /api/v1/webhooks/stripe."""

    def test_session_completed_applies_payment(
        self, client: TestClient, order_repo: FakeOrderRepository, stock_repo: FakeStockRepository
    ) -> None:
        """Test that a signed checkout.session.completed confirms the order."""
        order_repo.add(make_order(ORDER_ID, payment_method="stripe"))

        response = post_stripe(client, stripe_session_event())

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        assert stock_repo.quantity("prod-a") == 8
        assert order_repo.orders[ORDER_ID]["payment_id"] == "pi_3MtwBwLkdIwHu7ix28a3tqPa"

    def test_capture_then_webhook_converge(
        self, client: TestClient, order_repo: FakeOrderRepository, stock_repo: FakeStockRepository
    ) -> None:
        """Test that completed and async_payment_succeeded for one intent apply once."""
        order_repo.add(make_order(ORDER_ID, payment_method="stripe"))

        post_stripe(client, stripe_session_event())
        response = post_stripe(client, stripe_session_event("checkout.session.async_payment_succeeded"))

        assert response.json()["outcome"] == "already_processed"
        assert len(stock_repo.applied(ORDER_ID, "out")) == 1

    def test_missing_signature_header(self, client: TestClient) -> None:
        """Test that unsigned requests are rejected with 400."""
        response = client.post("/api/v1/webhooks/stripe", json=stripe_session_event())

        assert response.status_code == 400
        assert response.json()["detail"] == "Missing Stripe-Signature header"

    def test_invalid_signature(self, client: TestClient, stock_repo: FakeStockRepository) -> None:
        """Test that a payload signed with another secret is rejected with 400."""
        response = post_stripe(client, stripe_session_event(), secret="whsec_someone_else")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"
        assert stock_repo.movements == []

    def test_unhandled_event_type(self, client: TestClient) -> None:
        """Test that unrelated event types are acknowledged as ignored."""
        response = post_stripe(client, {"id": "evt_2", "type": "customer.created", "data": {"object": {}}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"
