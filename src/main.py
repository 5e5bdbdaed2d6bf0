"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.middleware.error_handler import error_handler_middleware
from src.api.middleware.latency_logging import latency_logging_middleware
from src.api.middleware.request_size import request_size_limit_middleware
from src.api.routes import admin, checkout, health, webhooks
from src.core.background import drain_background_tasks
from src.core.config import get_settings
from src.core.stripe import configure_stripe

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Check payment provider configuration on startup, drain email tasks on shutdown."""
    # Startup
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    configure_stripe()

    if not settings.paypal_verify_webhooks:
        logger.warning("PayPal webhook signature verification is disabled")
    elif not settings.paypal_webhook_id:
        logger.error("PAYPAL_VERIFY_WEBHOOKS is on but PAYPAL_WEBHOOK_ID is empty, PayPal webhooks will get 503")
    if not (settings.paypal_client_id and settings.paypal_client_secret):
        logger.warning("PayPal credentials not configured. PayPal checkout is disabled.")
    logger.info("PayPal mode: %s, default currency: %s", settings.paypal_mode, settings.default_currency)

    yield
    # Shutdown: let queued notification emails finish
    await drain_background_tasks()
    logger.info("Shutting down %s", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Storefront Payments API",
        description="Payment confirmation, stock reconciliation and order administration",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add error handler middleware (outermost - catches all errors)
    app.add_middleware(BaseHTTPMiddleware, dispatch=error_handler_middleware)

    # Add latency logging middleware (tracks request timing)
    app.add_middleware(BaseHTTPMiddleware, dispatch=latency_logging_middleware)

    # Add request size limit middleware (rejects oversized requests early)
    app.add_middleware(BaseHTTPMiddleware, dispatch=request_size_limit_middleware)

    # Mount health routes at root level (no prefix)
    app.include_router(health.router)

    # Create API v1 router for versioned endpoints
    api_v1_router = APIRouter(prefix="/api/v1")

    # Checkout and orders routes
    api_v1_router.include_router(checkout.router)
    api_v1_router.include_router(checkout.orders_router)

    # Webhook routes
    api_v1_router.include_router(webhooks.router)

    # Admin routes
    api_v1_router.include_router(admin.router)

    app.include_router(api_v1_router)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
