"""Application settings.

All values are read from the environment (or a local .env file). Secrets such as
the Stripe API key and webhook signing secret have no defaults and must be injected.
"""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from billsync.core.config.enums import Environment


class Settings(BaseSettings):
    """Billsync settings with automatic env var loading."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=True)

    PROJECT_NAME: str = "Billsync"
    ENVIRONMENT: Environment = Environment.LOCAL
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    SQLALCHEMY_ASYNC_DATABASE_URI: str = "sqlite+aiosqlite:///./billsync.db"
    db_pool_size: int = 20
    db_pool_max_overflow: int = 40
    RUN_ALEMBIC_MIGRATIONS: bool = False

    # HTTP surface
    API_REQUEST_TIMEOUT_SECONDS: float = 30.0
    FRONTEND_URL: str = "http://localhost:5173"

    # Stripe
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_SMALL_COMMUNE: Optional[str] = None
    STRIPE_PRICE_MEDIUM_COMMUNE: Optional[str] = None
    STRIPE_PRICE_LARGE_COMMUNE: Optional[str] = None

    # Reconciliation
    BILLING_DEFAULT_PLAN_ID: str = "small_commune"
    BILLING_CURRENCY: str = "eur"
    BILLING_PERIOD_DAYS: int = 30
    BILLING_GATEWAY_TIMEOUT_SECONDS: float = Field(10.0, gt=0)
    BILLING_DB_TIMEOUT_SECONDS: float = Field(5.0, gt=0)

    @model_validator(mode="after")
    def validate_stripe(self) -> "Settings":
        """Stripe credentials are mandatory once Stripe is enabled."""
        if self.STRIPE_ENABLED and not (self.STRIPE_SECRET_KEY and self.STRIPE_WEBHOOK_SECRET):
            raise ValueError(
                "STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET must be set when STRIPE_ENABLED=true"
            )
        return self

    @property
    def stripe_price_ids(self) -> dict[str, Optional[str]]:
        """Plan id -> Stripe price id, as configured."""
        return {
            "small_commune": self.STRIPE_PRICE_SMALL_COMMUNE,
            "medium_commune": self.STRIPE_PRICE_MEDIUM_COMMUNE,
            "large_commune": self.STRIPE_PRICE_LARGE_COMMUNE,
        }
