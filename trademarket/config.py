# trademarket/config.py
"""Configuration settings for the Trademarket job lifecycle service."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase (identity + profile lookup)
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    supabase_anon_key: str | None = None
    supabase_jwt_secret: str | None = None  # HS256 secret
    supabase_project_ref: str | None = None  # e.g. lrxyfyzgrkvnoezjfycv

    # Postgres (Supabase) connection for the job ledger, asyncpg driver
    supabase_db_url: str | None = None

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_currency: str = "gbp"
    success_url: str = "https://trademarket.app/payments/success"
    cancel_url: str = "https://trademarket.app/payments/cancel"

    # Platform fee per tradesperson tier, in basis points
    stripe_platform_fee_bps_basic: int = 150
    stripe_platform_fee_bps_pro: int = 120
    stripe_platform_fee_bps_business: int = 100

    # Lifecycle policy
    quote_expiry_days: int = 30
    basic_monthly_quote_limit: int = 5

    # App
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
