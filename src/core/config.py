"""Application configuration management using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="katmall-commerce", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # Ordering
    default_currency: str = Field(default="VND", min_length=3, max_length=3, description="ISO 4217 currency code")
    order_number_prefix: str = Field(default="ORD", description="Prefix for human-readable order numbers")
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1, description="Tax rate applied to the discounted subtotal")
    shipping_fee_standard: Decimal = Field(default=Decimal("30000"), ge=0, description="Standard shipping fee")
    shipping_fee_express: Decimal = Field(default=Decimal("60000"), ge=0, description="Express shipping fee")
    free_shipping_threshold: Decimal | None = Field(
        default=None,
        ge=0,
        description="Subtotal after discount at or above which standard shipping is free",
    )

    # Storage
    storage_backend: Literal["memory", "supabase"] = Field(default="memory", description="Repository backend")
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_secret_key: str = Field(default="", description="Supabase secret key for backend operations")
    repository_timeout_seconds: float = Field(default=5.0, gt=0, description="Upper bound for a single repository call")

    # Concurrency
    lock_timeout_seconds: float = Field(default=5.0, gt=0, description="Upper bound for acquiring a per-entity lock")
    conflict_max_retries: int = Field(default=3, ge=1, description="Attempts for retryable conflicts")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_max_network_retries: int = Field(default=2, ge=0, description="Stripe SDK retries for failed network calls")

    # Email (Resend)
    resend_api_key: str = Field(default="", description="Resend API key for sending emails")
    email_from_address: str = Field(
        default="KatMall <noreply@katmall.vn>",
        description="From address for transactional emails",
    )

    @model_validator(mode="after")
    def check_storage_credentials(self) -> "Settings":
        """Require Supabase credentials when the Supabase backend is selected."""
        if self.storage_backend == "supabase" and not (self.supabase_url and self.supabase_secret_key):
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY are required when STORAGE_BACKEND=supabase")
        self.default_currency = self.default_currency.upper()
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def shipping_fees(self) -> dict[str, Decimal]:
        """Shipping fee per shipping method."""
        return {
            "standard": self.shipping_fee_standard,
            "express": self.shipping_fee_express,
        }


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
