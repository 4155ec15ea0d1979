"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, SupabaseTablesConfig) are env-overridable
via the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    STRIPE__CURRENCY=usd
    SUPABASE_TABLES__LISTINGS_TABLE=services
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Billing provider credentials and price shape."""

    secret_key: str = ""
    webhook_secret: str = ""
    # Optional API version pin; empty uses the account default
    api_version: str = ""
    currency: str = "brl"
    billing_interval: str = "month"
    product_name_prefix: str = "ProLocal"


class SupabaseTablesConfig(BaseModel):
    """Table names backing the entitlement and listing repositories."""

    entitlements_table: str = "subscriptions"
    users_table: str = "users"
    listings_table: str = "services"
    webhook_events_table: str = "billing_webhook_events"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Redirect target for checkout success / cancel pages
    frontend_url: str = "http://localhost:3000"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    supabase_tables: SupabaseTablesConfig = Field(default_factory=SupabaseTablesConfig)

    @field_validator("frontend_url")
    @classmethod
    def _frontend_url_has_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(
                "FRONTEND_URL must start with http:// or https:// (e.g. http://localhost:3000)"
            )
        return value.rstrip("/")

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_url}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_url}/plans?canceled=true"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
