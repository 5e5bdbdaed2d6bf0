"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_SIGNING_KEY_JWK", "")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-paypal-client-id")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-paypal-client-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-123")
os.environ.setdefault("PAYPAL_VERIFY_WEBHOOKS", "false")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")

from src.schemas.auth import UserContext  # noqa: E402
from src.services.audit_service import AuditLogService  # noqa: E402
from src.services.coupon_service import CouponUsageRecorder  # noqa: E402
from src.services.order_state import OrderStateMachine  # noqa: E402
from src.services.payment_confirmation import PaymentConfirmationService  # noqa: E402
from src.services.payment_dedup_service import PaymentDeduplicationStore  # noqa: E402
from src.services.stock_ledger import StockLedger  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeAuditRepository,
    FakeCouponRepository,
    FakeOrderRepository,
    FakePaymentRepository,
    FakeStockRepository,
)

ADMIN_USER_ID = UUID("990e8400-e29b-41d4-a716-446655440000")


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    # Configure default mock responses
    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def stock_repo() -> FakeStockRepository:
    """Stock repository with two products in stock."""
    repo = FakeStockRepository()
    repo.add_product("prod-a", 10, name="Widget")
    repo.add_product("prod-b", 5, name="Gadget")
    return repo


@pytest.fixture
def order_repo() -> FakeOrderRepository:
    return FakeOrderRepository()


@pytest.fixture
def payment_repo() -> FakePaymentRepository:
    return FakePaymentRepository()


@pytest.fixture
def coupon_repo() -> FakeCouponRepository:
    return FakeCouponRepository()


@pytest.fixture
def audit_repo() -> FakeAuditRepository:
    return FakeAuditRepository()


@pytest.fixture
def email_service() -> AsyncMock:
    """Email service whose sends always succeed."""
    service = AsyncMock()
    service.send_order_confirmation_email.return_value = {"success": True, "email_id": "email_123"}
    service.send_admin_order_notification.return_value = {"success": True, "email_id": "email_456"}
    return service


@pytest.fixture
def confirmation(
    stock_repo: FakeStockRepository,
    order_repo: FakeOrderRepository,
    payment_repo: FakePaymentRepository,
    coupon_repo: FakeCouponRepository,
    audit_repo: FakeAuditRepository,
    email_service: AsyncMock,
) -> PaymentConfirmationService:
    """Payment confirmation orchestrator wired to in-memory repositories."""
    return PaymentConfirmationService(
        ledger=StockLedger(stock_repo),
        dedup=PaymentDeduplicationStore(payment_repo),
        coupons=CouponUsageRecorder(coupon_repo),
        audit=AuditLogService(audit_repo),
        orders=OrderStateMachine(order_repo),
        email_service=email_service,
    )


@pytest.fixture
def admin_user() -> UserContext:
    return UserContext(user_id=ADMIN_USER_ID, email="admin@example.com", role="admin")


@pytest.fixture
def client(
    mock_supabase_client: MagicMock,
    confirmation: PaymentConfirmationService,
) -> Generator[TestClient, None, None]:
    """Provide a test client whose services run on the in-memory repositories.

    Args:
        mock_supabase_client: Mocked Supabase client fixture.
        confirmation: Orchestrator wired to fakes.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.api.deps import get_confirmation_service
    from src.main import app

    app.dependency_overrides[get_confirmation_service] = lambda: confirmation
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
