from __future__ import annotations

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_url: str = Field("http://localhost:3000", alias="APP_URL")

    database_url: str = Field(
        "sqlite:////tmp/humanizer_test.db", alias="DATABASE_URL"
    )
    db_create_all: bool = Field(False, alias="DB_CREATE_ALL")

    redis_url: str | None = Field(None, alias="REDIS_URL")
    rate_limit_requests: int = Field(10, alias="RATE_LIMIT_REQUESTS")
    rate_limit_window_s: int = Field(60, alias="RATE_LIMIT_WINDOW_S")

    jwt_secret: str = Field("test-jwt-secret", alias="JWT_SECRET")
    clerk_jwks_url: str | None = Field(None, alias="CLERK_JWKS_URL")
    clerk_issuer: str | None = Field(None, alias="CLERK_ISSUER")
    clerk_webhook_secret: str | None = Field(None, alias="CLERK_WEBHOOK_SECRET")
    webhook_tolerance_s: int = Field(300, alias="WEBHOOK_TOLERANCE_S")

    anthropic_api_key: str | None = Field(None, alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(
        "claude-sonnet-4-5-20250929", alias="ANTHROPIC_MODEL"
    )
    anthropic_max_tokens: int = Field(2048, alias="ANTHROPIC_MAX_TOKENS")
    llm_max_attempts: int = Field(3, alias="LLM_MAX_ATTEMPTS")
    llm_backoff_base_s: float = Field(1.0, alias="LLM_BACKOFF_BASE")

    max_text_chars: int = Field(5000, alias="MAX_TEXT_CHARS")
    quality_gate_enabled: bool = Field(False, alias="QUALITY_GATE_ENABLED")

    stripe_secret_key: str = Field("sk_test_placeholder", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(
        "whsec_test_placeholder", alias="STRIPE_WEBHOOK_SECRET"
    )
    stripe_currency: str = Field("usd", alias="STRIPE_CURRENCY")
    stripe_price_starter_monthly: str | None = Field(
        None, alias="STRIPE_PRICE_STARTER_MONTHLY"
    )
    stripe_price_starter_annual: str | None = Field(
        None, alias="STRIPE_PRICE_STARTER_ANNUAL"
    )
    stripe_price_pro_monthly: str | None = Field(
        None, alias="STRIPE_PRICE_PRO_MONTHLY"
    )
    stripe_price_pro_annual: str | None = Field(
        None, alias="STRIPE_PRICE_PRO_ANNUAL"
    )
    stripe_price_premium_monthly: str | None = Field(
        None, alias="STRIPE_PRICE_PREMIUM_MONTHLY"
    )
    stripe_price_premium_annual: str | None = Field(
        None, alias="STRIPE_PRICE_PREMIUM_ANNUAL"
    )

    model_config = ConfigDict(
        extra="ignore",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
    )
