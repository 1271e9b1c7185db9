"""Application configuration model using pydantic-settings."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.circuit_breaker import CircuitBreakerConfig


class Config(BaseSettings):
    """Application configuration loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    vikunja_url: str
    vikunja_api_token: str
    log_level: str = "INFO"
    request_timeout_seconds: float = 30.0
    breaker_error_threshold_percentage: float = 50.0
    breaker_volume_threshold: int = 5
    breaker_reset_timeout_seconds: float = 30.0
    max_retry_attempts: int = 3

    @field_validator("vikunja_url")
    @classmethod
    def validate_vikunja_url(cls, value: str) -> str:
        """API URL must be http(s); trailing slashes are dropped."""
        stripped = value.strip().rstrip("/")
        if not stripped.startswith(("http://", "https://")):
            msg = "vikunja_url must start with http:// or https://"
            raise ValueError(msg)
        return stripped

    @field_validator("vikunja_api_token")
    @classmethod
    def validate_vikunja_api_token(cls, value: str) -> str:
        """API token must be non-empty."""
        if not value.strip():
            msg = "vikunja_api_token must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Log level must be a valid Python logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            msg = f"log_level must be one of {', '.join(sorted(valid_levels))}"
            raise ValueError(msg)
        return upper_value

    @field_validator("request_timeout_seconds", "breaker_reset_timeout_seconds")
    @classmethod
    def validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            msg = "timeouts must be greater than 0"
            raise ValueError(msg)
        return value

    @field_validator("max_retry_attempts")
    @classmethod
    def validate_max_retry_attempts(cls, value: int) -> int:
        """Max retry attempts must be between 0 and 5."""
        if value < 0 or value > 5:
            msg = "max_retry_attempts must be between 0 and 5"
            raise ValueError(msg)
        return value

    def breaker_config(self) -> CircuitBreakerConfig:
        """Default configuration for breakers created by the registry."""
        return CircuitBreakerConfig(
            error_threshold_percentage=self.breaker_error_threshold_percentage,
            volume_threshold=self.breaker_volume_threshold,
            reset_timeout_seconds=self.breaker_reset_timeout_seconds,
        )
