"""Application configuration using Pydantic Settings."""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from chatproxy.constants import (
    DEFAULT_UPSTREAM_ENDPOINT,
    DEFAULT_MODEL,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_HOURLY_LIMIT,
    DEFAULT_MAX_TOKENS_CEILING,
    DEFAULT_ALLOWED_ORIGINS,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    DEFAULT_RELOAD,
    MAX_MESSAGES_COUNT,
    MAX_CONTENT_CHARS,
    RECORD_TTL_SECONDS,
    SWEEP_PROBABILITY,
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
)


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Upstream
    deepseek_api_key: str = Field(default="", description="Upstream bearer credential")
    upstream_endpoint: str = Field(default=DEFAULT_UPSTREAM_ENDPOINT, description="Upstream chat completion URL")
    upstream_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, description="Upstream request timeout in seconds")
    default_model: str = Field(default=DEFAULT_MODEL, description="Model used when the request names none")

    # Free tier limits
    daily_limit: int = Field(default=DEFAULT_DAILY_LIMIT, description="Accepted requests per fingerprint per day")
    hourly_limit: int = Field(default=DEFAULT_HOURLY_LIMIT, description="Accepted requests per fingerprint per hour")
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS_CEILING, description="Ceiling for max_tokens sent upstream")

    # Content validation
    max_messages: int = Field(default=MAX_MESSAGES_COUNT, description="Maximum messages per request")
    max_content_chars: int = Field(default=MAX_CONTENT_CHARS, description="Maximum total content characters")
    validation_error_status: int = Field(default=400, description="Status for invalid content (400, or 500 for legacy clients)")

    # Origins (comma separated)
    allowed_origins: str = Field(default=DEFAULT_ALLOWED_ORIGINS, description="Allowed request origins")

    # Usage ledger
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_socket_timeout: float = Field(default=5.0, description="Redis socket timeout")
    redis_socket_connect_timeout: float = Field(default=5.0, description="Redis connect timeout")
    record_ttl_seconds: int = Field(default=RECORD_TTL_SECONDS, description="Usage record retention window")
    sweep_probability: float = Field(default=SWEEP_PROBABILITY, description="Chance per request of an expiry sweep")
    strict_quota: bool = Field(default=False, description="Reserve quota atomically before forwarding")
    clock_timezone: str = Field(default="UTC", description="Timezone for day and hour buckets")

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(
        default=CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        description="Failures before opening circuit"
    )
    circuit_breaker_recovery_timeout: float = Field(
        default=CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
        description="Seconds before attempting recovery"
    )

    # Monitoring
    enable_metrics: bool = Field(default=True, description="Enable Prometheus metrics")

    # Server
    host: str = Field(default=DEFAULT_SERVER_HOST, description="Server host")
    port: int = Field(default=DEFAULT_SERVER_PORT, description="Server port")
    reload: bool = Field(default=DEFAULT_RELOAD, description="Restart the server on code changes")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("deepseek_api_key")
    @classmethod
    def strip_api_key(cls, v: str) -> str:
        """Treat a whitespace-only key as missing."""
        return v.strip()

    @field_validator("daily_limit", "hourly_limit", "max_messages", "max_content_chars")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Limits must be non-negative")
        return v

    @field_validator("max_tokens", "record_ttl_seconds")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("sweep_probability")
    @classmethod
    def validate_probability(cls, v: float) -> float:
        """Validate sweep probability is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Sweep probability must be between 0 and 1")
        return v

    @field_validator("validation_error_status")
    @classmethod
    def validate_status(cls, v: int) -> int:
        if v not in (400, 500):
            raise ValueError("Validation error status must be 400 or 500")
        return v

    @property
    def origin_allowlist(self) -> List[str]:
        """Allowed origins as a list, blanks dropped."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def is_configured(self) -> bool:
        """Check if the upstream credential is present."""
        return bool(self.deepseek_api_key)

    @property
    def backend(self) -> str:
        return "redis" if self.redis_url else "memory"


# Global settings instance
settings = Settings()
