"""Health check endpoints for monitoring and deployment verification."""

import time

from fastapi import APIRouter, Response, status

from src.api.middleware.latency_logging import get_latency_stats
from src.core.config import Settings, get_settings
from src.core.supabase import check_database_connection
from src.schemas.common import CheckResult, HealthResponse, HealthStatus, ReadinessResponse

router = APIRouter(tags=["health"])


def check_payment_providers(settings: Settings) -> CheckResult:
    """Check that at least one provider can confirm payments through webhooks."""
    stripe_ready = bool(settings.stripe_secret_key and settings.stripe_webhook_secret)
    paypal_ready = bool(settings.paypal_client_id and settings.paypal_client_secret)
    if paypal_ready and settings.paypal_verify_webhooks and not settings.paypal_webhook_id:
        paypal_ready = False

    error = None
    if not (stripe_ready or paypal_ready):
        error = "No payment provider fully configured (Stripe keys or PayPal credentials missing)"
    return CheckResult(name="payment_providers", healthy=error is None, error=error)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness check",
    description="Basic health check to verify the service is running. Used for liveness probes.",
)
async def health_check() -> HealthResponse:
    """Return basic health status.

    This endpoint should always return 200 if the service is running.
    It does not check external dependencies.
    """
    return HealthResponse(status=HealthStatus.HEALTHY)


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    responses={
        200: {"description": "All dependencies healthy"},
        503: {"description": "One or more dependencies unhealthy"},
    },
    summary="Readiness check",
    description="Check the database and payment provider configuration. Used for readiness probes.",
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Check readiness of the database (Supabase) and payment providers.

    Returns 503 if the database is unreachable or no provider is configured.
    """
    start_time = time.perf_counter()
    db_result = await check_database_connection()
    latency_ms = (time.perf_counter() - start_time) * 1000

    checks = [
        CheckResult(
            name="database",
            healthy=db_result["healthy"],
            latency_ms=round(latency_ms, 2),
            error=db_result.get("error"),
        ),
        check_payment_providers(get_settings()),
    ]

    all_healthy = all(check.healthy for check in checks)
    if not all_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=HealthStatus.HEALTHY if all_healthy else HealthStatus.UNHEALTHY,
        checks=checks,
    )


@router.get(
    "/health/latency",
    summary="Request latency stats",
    description="Aggregated request latencies since process start, grouped by path.",
)
async def latency_stats() -> dict:
    """Return latency percentiles recorded by the latency logging middleware."""
    stats = get_latency_stats()
    return {"overall": stats.get_stats(), "by_path": stats.get_stats_by_path()}
