"""Stripe SDK configuration and amount helpers."""

import logging
from decimal import Decimal
from typing import Any

import stripe

from src.core.config import get_settings

logger = logging.getLogger(__name__)

# Currencies Stripe expects in whole units
# https://docs.stripe.com/currencies#zero-decimal
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def configure_stripe() -> None:
    """Configure the Stripe SDK from settings.

    Called once at startup. Without a secret key, session creation is
    refused by the checkout service; webhook verification only needs the
    webhook secret.
    """
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
        stripe.max_network_retries = 2
        if not settings.is_production and not settings.is_stripe_test_mode:
            logger.warning("Live Stripe key configured outside production (%s)", settings.app_env)
    else:
        logger.warning("Stripe secret key not configured. Stripe checkout sessions are disabled.")

    if not settings.stripe_webhook_secret:
        logger.warning("Stripe webhook secret not configured. Stripe webhooks will be rejected.")


def get_stripe() -> Any:
    """Get the configured Stripe module.

    Stripe keeps its configuration at module level, so this returns the
    module itself. Patched in tests.
    """
    return stripe


def to_minor_units(amount: Any, currency: str) -> int:
    """Convert a decimal amount to the integer Stripe expects."""
    value = Decimal(str(amount))
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        value *= 100
    return int(value.quantize(Decimal("1")))


def from_minor_units(amount: int, currency: str | None) -> Decimal:
    """Convert a Stripe integer amount back to a decimal amount."""
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100
