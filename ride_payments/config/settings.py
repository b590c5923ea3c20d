"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    provider_timeout_seconds: int = Field(
        default=10, ge=1, description="Timeout for a single provider call (seconds)"
    )
    currency: str = Field(default="cad", description="Settlement currency")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Capture Worker
    capture_poll_interval_seconds: float = Field(
        default=300.0, description="Interval between capture worker ticks"
    )
    capture_batch_size: int = Field(default=10, ge=1, description="Items claimed per tick")
    capture_max_attempts: int = Field(default=5, ge=1, description="Max capture attempts")
    capture_backoff_base_seconds: float = Field(
        default=60.0, ge=0, description="Base delay for capture retry backoff (seconds)"
    )
    capture_backoff_max_seconds: float = Field(
        default=3600.0, ge=0, description="Upper bound for capture retry backoff (seconds)"
    )
    capture_lease_timeout_seconds: float = Field(
        default=900.0, description="Processing lease after which an item is reconciled"
    )
    capture_inter_item_delay_seconds: float = Field(
        default=0.5, ge=0, description="Pause between provider calls within a tick"
    )

    # Money rules
    platform_fee_percent: int = Field(default=15, ge=0, le=100)
    referral_discount_percent: int = Field(default=10, ge=0, le=100)

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")

    # Application Configuration
    app_name: str = Field(default="ride-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    service_api_keys: Dict[str, str] = Field(
        default_factory=dict,
        description="API key -> service identity (booking_service, capture_worker, ...)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live secret key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
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

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Stripe expects lowercase ISO codes."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
