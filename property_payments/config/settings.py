"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Time a Redlock lease must outlast the gateway call by (DB writes, unlock)
LOCK_LEASE_MARGIN_SECONDS = 10


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="property-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./property_payments.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    lock_backend: str = Field(default="local", description="Per-transaction lock backend (local/redis)")
    lock_ttl_seconds: int = Field(
        default=120,
        description="Redlock lease (seconds); must exceed gateway_timeout_seconds plus a margin",
    )
    lock_wait_timeout_seconds: float = Field(
        default=30.0, description="Max time to wait for a transaction lock (seconds)"
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Reference cache TTL (seconds)"
    )

    # Transactions
    supported_currencies: List[str] = Field(
        default=["NGN", "USD"], description="Currencies accepted for new transactions"
    )
    gateways_enabled: List[str] = Field(
        default=["paystack", "flutterwave", "stripe", "manual"],
        description="Gateway adapters registered at startup",
    )
    reference_prefix: str = Field(default="PROP", description="Prefix of generated references")

    # Gateway calls
    gateway_timeout_seconds: float = Field(
        default=30.0, description="Default caller timeout for gateway calls (seconds)"
    )
    gateway_retry_max_attempts: int = Field(default=3, description="Max attempts for transient errors")
    gateway_retry_base_delay: float = Field(
        default=1.0, description="Base delay for retry backoff (seconds)"
    )
    circuit_breaker_failure_threshold: int = Field(default=5, description="Failures before opening")
    circuit_breaker_timeout: int = Field(default=60, description="Seconds before half-open")

    # Paystack
    paystack_secret_key: Optional[str] = Field(default=None, description="Paystack secret key")
    paystack_base_url: str = Field(default="https://api.paystack.co")
    paystack_callback_url: Optional[str] = Field(default=None, description="Checkout redirect URL")
    paystack_fee_percentage: float = Field(default=1.5)
    paystack_fixed_fee_minor: int = Field(default=10000, description="Flat fee in minor units")

    # Flutterwave
    flutterwave_secret_key: Optional[str] = Field(default=None, description="Flutterwave secret key")
    flutterwave_webhook_hash: Optional[str] = Field(default=None, description="verif-hash secret")
    flutterwave_base_url: str = Field(default="https://api.flutterwave.com/v3")
    flutterwave_redirect_url: Optional[str] = Field(default=None, description="Checkout redirect URL")
    flutterwave_fee_percentage: float = Field(default=1.4)
    flutterwave_fixed_fee_minor: int = Field(default=0)

    # Stripe
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_webhook_secret: Optional[str] = Field(default=None, description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_fee_percentage: float = Field(default=2.9)
    stripe_fixed_fee_minor: int = Field(default=30)

    # Receipts
    receipt_issuer: str = Field(default="Godirect Realty", description="Name printed on receipts")
    receipt_base_url: str = Field(
        default="http://localhost:8000", description="Public base URL for receipt downloads"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    admin_api_key: Optional[str] = Field(default=None, description="Key for admin and operator routes")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Verification worker
    verification_interval_seconds: int = Field(default=300, description="Seconds between poll passes")
    verification_batch_size: int = Field(default=100, description="Records verified per pass")
    verification_min_age_seconds: int = Field(
        default=120, description="Only poll records processing for at least this long"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate that a configured Stripe key is a secret key."""
        if v is not None and not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        if v.lower() not in ("local", "redis"):
            raise ValueError("lock_backend must be 'local' or 'redis'")
        return v.lower()

    @model_validator(mode="after")
    def validate_lock_lease(self) -> "Settings":
        """A gateway call must finish before the Redlock lease on its transaction lapses."""
        minimum = self.gateway_timeout_seconds + LOCK_LEASE_MARGIN_SECONDS
        if self.lock_ttl_seconds <= minimum:
            raise ValueError(
                f"lock_ttl_seconds ({self.lock_ttl_seconds}) must exceed gateway_timeout_seconds "
                f"+ {LOCK_LEASE_MARGIN_SECONDS} ({minimum:g})"
            )
        return self

    @field_validator("supported_currencies")
    @classmethod
    def normalize_currencies(cls, v: List[str]) -> List[str]:
        return [c.upper() for c in v]

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
