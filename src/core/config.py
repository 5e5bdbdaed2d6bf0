"""Application configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_API_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="storefront-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    max_request_body_size: int = Field(
        default=256 * 1024,
        gt=0,
        description="Maximum accepted request body in bytes (webhook payloads included)",
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(default="", description="Supabase signing key JWK (JSON string) for JWT token verification")
    supabase_jwt_audience: str = Field(default="authenticated", description="Expected aud claim of Supabase access tokens")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")

    # PayPal
    paypal_client_id: str = Field(default="", description="PayPal REST app client ID")
    paypal_client_secret: str = Field(default="", description="PayPal REST app client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook ID used for signature verification")
    paypal_mode: Literal["sandbox", "live"] = Field(default="sandbox", description="PayPal environment (sandbox/live)")
    paypal_verify_webhooks: bool | None = Field(
        default=None,
        description="Verify PayPal webhook signatures. Defaults to on in production, off elsewhere.",
    )
    payment_provider_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for outbound payment provider HTTP calls",
    )

    # Payments
    default_currency: str = Field(default="EUR", description="ISO currency code used for new provider orders")

    # Email (Resend)
    resend_api_key: str = Field(default="", description="Resend API key for sending emails")
    email_from_address: str = Field(
        default="Storefront <orders@example.com>",
        description="From address for transactional emails",
    )
    admin_email: str = Field(default="", description="Address that receives new order notifications")

    # Frontend
    frontend_url: str = Field(
        default="http://localhost:3000",
        description="Frontend application URL for email links",
    )

    @model_validator(mode="after")
    def set_paypal_verification_default(self) -> "Settings":
        """Enable PayPal webhook verification in production unless set explicitly.

        If PAYPAL_VERIFY_WEBHOOKS is set, pydantic-settings already parsed it
        to a bool, so the default is only applied while it is None.
        """
        if self.paypal_verify_webhooks is None:
            self.paypal_verify_webhooks = self.app_env == "production"
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def paypal_api_base_url(self) -> str:
        """PayPal REST base URL for the configured mode."""
        return PAYPAL_API_BASE_URLS[self.paypal_mode]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
