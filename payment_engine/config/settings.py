"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="payment-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/test/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payment_engine.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    merchant_header: str = Field(
        default="X-Merchant-ID", description="Header carrying the verified merchant identity"
    )

    # Settlement Simulation
    deterministic_mode: bool = Field(
        default=False, description="Replace random delay/validation with fixed values"
    )
    forced_outcome: Optional[Literal["success", "failed"]] = Field(
        default=None, description="Outcome forced on every settlement in deterministic mode"
    )
    deterministic_delay_seconds: float = Field(
        default=0.0, ge=0, description="Fixed settlement delay in deterministic mode"
    )
    settlement_delay_min_seconds: float = Field(
        default=2.0, ge=0, description="Lower bound of the simulated bank latency"
    )
    settlement_delay_max_seconds: float = Field(
        default=5.0, ge=0, description="Upper bound of the simulated bank latency"
    )
    validate_on_create: bool = Field(
        default=False, description="Reject invalid instruments synchronously on payment creation"
    )

    # Retry Policy
    storage_retry_max_attempts: int = Field(
        default=5, ge=1, description="Max attempts for a store call before giving up"
    )
    storage_retry_base_delay: float = Field(
        default=0.5, ge=0, description="Base delay for retry backoff (seconds)"
    )
    storage_retry_max_delay: float = Field(
        default=8.0, ge=0, description="Cap on a single retry backoff (seconds)"
    )

    # Watchdog
    max_settlement_window_seconds: float = Field(
        default=60.0, gt=0, description="Processing payments older than this are stuck"
    )
    watchdog_interval_seconds: float = Field(
        default=30.0, gt=0, description="How often the watchdog scans for stuck payments"
    )
    watchdog_expire_stuck: bool = Field(
        default=False, description="Fail stuck payments instead of only reporting them"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("forced_outcome", mode="before")
    @classmethod
    def normalize_forced_outcome(cls, v: Optional[str]) -> Optional[str]:
        """Treat an empty FORCED_OUTCOME as unset."""
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "Settings":
        """Ensure the random delay window is well formed."""
        if self.settlement_delay_min_seconds > self.settlement_delay_max_seconds:
            raise ValueError("settlement_delay_min_seconds must not exceed settlement_delay_max_seconds")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
