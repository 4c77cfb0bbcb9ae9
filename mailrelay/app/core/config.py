"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from mailrelay.app.core.config import settings
    config = settings.dispatch_config()
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DispatchConfig(BaseModel):
    """
    Validated tuning knobs for the dispatch orchestrator.

    Each option affects exactly one component:

        Option                              Component
        ──────────────────────────────      ─────────────────
        rate_limit_max_requests             RateLimiter
        rate_limit_interval                 RateLimiter
        circuit_breaker_failure_threshold   CircuitBreaker
        circuit_breaker_reset_timeout       CircuitBreaker
        max_retries                         attempt loop
        initial_backoff                     attempt loop
        queue_process_interval              periodic drain

    Durations are in seconds.
    """

    model_config = ConfigDict(frozen=True)

    rate_limit_max_requests: int = Field(10, ge=1)
    rate_limit_interval: float = Field(60.0, gt=0)
    circuit_breaker_failure_threshold: int = Field(5, ge=1)
    circuit_breaker_reset_timeout: float = Field(30.0, gt=0)
    max_retries: int = Field(3, ge=0)
    initial_backoff: float = Field(1.0, ge=0)
    queue_process_interval: float = Field(5.0, gt=0)


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Mail Relay"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Rate limiting ──
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_INTERVAL: float = 60.0  # sliding window, seconds

    # ── Circuit breaker ──
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RESET_TIMEOUT: float = 30.0  # open → half_open, seconds

    # ── Retry ──
    MAX_RETRIES: int = 3
    INITIAL_BACKOFF: float = 1.0  # doubles per attempt

    # ── Queue ──
    QUEUE_PROCESS_INTERVAL: float = 5.0

    # ── Simulated providers ──
    PROVIDER_A_FAILURE_RATE: float = 0.3
    PROVIDER_B_FAILURE_RATE: float = 0.1

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    def dispatch_config(self) -> DispatchConfig:
        """Build the validated orchestrator config from these settings."""
        return DispatchConfig(
            rate_limit_max_requests=self.RATE_LIMIT_MAX_REQUESTS,
            rate_limit_interval=self.RATE_LIMIT_INTERVAL,
            circuit_breaker_failure_threshold=self.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            circuit_breaker_reset_timeout=self.CIRCUIT_BREAKER_RESET_TIMEOUT,
            max_retries=self.MAX_RETRIES,
            initial_backoff=self.INITIAL_BACKOFF,
            queue_process_interval=self.QUEUE_PROCESS_INTERVAL,
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
