"""Integration tests for admin reconciliation routes."""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_admin_user
from src.main import app
from src.schemas.auth import UserContext
from tests.fakes import FakeAuditRepository, FakeOrderRepository, FakeStockRepository, make_order

ORDER_ID = "660e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def admin_client(client: TestClient, admin_user: UserContext) -> Generator[TestClient, None, None]:
    """Test client authenticated as an admin."""
    app.dependency_overrides[get_admin_user] = lambda: admin_user
    yield client


def flagged_order(**overrides) -> dict:
    return make_order(
        ORDER_ID,
        items=[("prod-b", 7)],
        payment_status="completed",
        payment_provider="paypal",
        payment_id="CAP-1",
        requires_manual_review=True,
        notes="Insufficient stock at payment time: Gadget (requested 7, available 5, short 2)",
        **overrides,
    )


class TestAdminAccess:
    """Tests for admin authentication."""

    def test_requires_token(self, client: TestClient) -> None:
        """Test that admin routes reject anonymous callers."""
        response = client.get("/api/v1/admin/orders/review")

        assert response.status_code == 401


class TestFlaggedOrders:
    """Tests for the manual review queue."""

    def test_list_flagged_orders(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that only flagged orders are listed, with notes."""
        order_repo.add(flagged_order())
        order_repo.add(make_order())

        response = admin_client.get("/api/v1/admin/orders/review")

        items = response.json()["items"]
        assert response.status_code == 200
        assert [item["id"] for item in items] == [ORDER_ID]
        assert items[0]["notes"].startswith("Insufficient stock")
        assert items[0]["payment_id"] == "CAP-1"

    def test_retry_after_restock(
        self,
        admin_client: TestClient,
        order_repo: FakeOrderRepository,
        stock_repo: FakeStockRepository,
        audit_repo: FakeAuditRepository,
    ) -> None:
        """Test that a restocked flagged order is applied and unflagged."""
        order_repo.add(flagged_order())

        adjust = admin_client.post(
            "/api/v1/admin/products/prod-b/adjust-stock",
            json={"quantity_change": 5, "reason": "Delivery from supplier"},
        )
        response = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/retry-stock")

        assert adjust.status_code == 200
        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        assert response.json()["requires_manual_review"] is False
        assert stock_repo.quantity("prod-b") == 3
        assert order_repo.orders[ORDER_ID]["payment_status"] == "paid"
        assert "stock.adjusted" in audit_repo.actions()

    def test_retry_still_short(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that a retry without enough stock reports the shortage."""
        order_repo.add(flagged_order())

        response = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/retry-stock")

        assert response.status_code == 409
        assert response.json()["error"] == "insufficient_stock"
        assert order_repo.orders[ORDER_ID]["requires_manual_review"] is True

    def test_retry_on_unflagged_order(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that only flagged orders can be retried."""
        order_repo.add(make_order(ORDER_ID))

        response = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/retry-stock")

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_order_state"

    def test_get_missing_order(self, admin_client: TestClient) -> None:
        response = admin_client.get(f"/api/v1/admin/orders/{ORDER_ID}")

        assert response.status_code == 404


class TestCashPayment:
    """Tests for POST /admin/orders/{id}/confirm-payment."""

    def test_confirm_cash_order(
        self,
        admin_client: TestClient,
        order_repo: FakeOrderRepository,
        stock_repo: FakeStockRepository,
    ) -> None:
        """Test that a cash order is confirmed once, attributed to the admin."""
        order_repo.add(make_order(ORDER_ID, payment_method="cash"))

        first = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")
        second = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")

        assert first.json()["outcome"] == "applied"
        assert second.json()["outcome"] == "already_processed"
        assert stock_repo.quantity("prod-a") == 8
        assert stock_repo.applied(order_id=ORDER_ID)[0]["actor"] == "admin@example.com"

    def test_non_cash_order_rejected(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        order_repo.add(make_order(ORDER_ID, payment_method="paypal"))

        response = admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")

        assert response.status_code == 409


class TestOrderStatus:
    """Tests for PATCH /admin/orders/{id}/status."""

    def test_ship_paid_order(
        self, admin_client: TestClient, order_repo: FakeOrderRepository, audit_repo: FakeAuditRepository
    ) -> None:
        """Test that a paid order can be shipped and the change audited."""
        order_repo.add(make_order(ORDER_ID, payment_status="paid", status="processing"))

        response = admin_client.patch(f"/api/v1/admin/orders/{ORDER_ID}/status", json={"status": "shipped"})

        assert response.status_code == 200
        assert response.json()["status"] == "shipped"
        assert "order.status_changed" in audit_repo.actions()

    def test_invalid_transition(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that a pending order cannot be delivered."""
        order_repo.add(make_order(ORDER_ID))

        response = admin_client.patch(f"/api/v1/admin/orders/{ORDER_ID}/status", json={"status": "delivered"})

        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    def test_unknown_status_rejected(self, admin_client: TestClient) -> None:
        response = admin_client.patch(f"/api/v1/admin/orders/{ORDER_ID}/status", json={"status": "lost"})

        assert response.status_code == 422


class TestStockAdjustment:
    """Tests for POST /admin/products/{id}/adjust-stock."""

    def test_negative_adjustment(self, admin_client: TestClient, stock_repo: FakeStockRepository) -> None:
        """Test that stock can be written down with a reason."""
        response = admin_client.post(
            "/api/v1/admin/products/prod-a/adjust-stock",
            json={"quantity_change": -3, "reason": "Damaged in warehouse"},
        )

        data = response.json()
        assert response.status_code == 200
        assert data["quantity_before"] == 10
        assert data["quantity_after"] == 7
        assert data["movement"]["kind"] == "manual_adjust"
        assert stock_repo.quantity("prod-a") == 7

    def test_cannot_go_below_zero(self, admin_client: TestClient, stock_repo: FakeStockRepository) -> None:
        response = admin_client.post(
            "/api/v1/admin/products/prod-b/adjust-stock",
            json={"quantity_change": -6, "reason": "Inventory count"},
        )

        assert response.status_code == 409
        assert stock_repo.quantity("prod-b") == 5

    def test_unknown_product(self, admin_client: TestClient) -> None:
        response = admin_client.post(
            "/api/v1/admin/products/prod-x/adjust-stock",
            json={"quantity_change": 1, "reason": "Found one"},
        )

        assert response.status_code == 404

    @pytest.mark.parametrize(
        "body",
        [{"quantity_change": 0, "reason": "No-op"}, {"quantity_change": 1, "reason": "   "}, {"quantity_change": 1}],
    )
    def test_invalid_request(self, admin_client: TestClient, body: dict) -> None:
        """Test that zero changes and blank reasons are rejected."""
        response = admin_client.post("/api/v1/admin/products/prod-a/adjust-stock", json=body)

        assert response.status_code == 422


class TestLedgerAndAuditQueries:
    """Tests for stock movement and audit log listings."""

    def test_movements_for_order(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that the movements of a paid order can be listed."""
        order_repo.add(make_order(ORDER_ID, payment_method="cash"))
        admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")

        response = admin_client.get("/api/v1/admin/stock-movements", params={"order_id": ORDER_ID})

        items = response.json()["items"]
        assert response.status_code == 200
        assert len(items) == 1
        assert items[0]["direction"] == "out"
        assert items[0]["state"] == "applied"
        assert items[0]["quantity_before"] == 10
        assert items[0]["quantity_after"] == 8

    def test_audit_logs_filtered_by_action(self, admin_client: TestClient, order_repo: FakeOrderRepository) -> None:
        """Test that audit entries can be filtered by action."""
        order_repo.add(make_order(ORDER_ID, payment_method="cash"))
        admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")
        admin_client.post(f"/api/v1/admin/orders/{ORDER_ID}/confirm-payment")

        response = admin_client.get("/api/v1/admin/audit-logs", params={"action": "payment.duplicate_attempt"})

        items = response.json()["items"]
        assert response.status_code == 200
        assert len(items) == 1
        assert items[0]["actor"] == "admin@example.com"
        assert items[0]["metadata"]["reason"] == "already_processed"
