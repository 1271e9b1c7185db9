"""Circuit breaker state, configuration and snapshot models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfig(BaseModel):
    """Thresholds governing when a named breaker opens and recovers."""

    model_config = ConfigDict(frozen=True)

    error_threshold_percentage: float = Field(default=50.0, ge=0.0, le=100.0)
    volume_threshold: int = Field(default=5, ge=1)
    rolling_window_seconds: float = Field(default=10.0, gt=0.0)
    reset_timeout_seconds: float = Field(default=30.0, ge=0.0, le=3600.0)
    half_open_max_calls: int = Field(default=1, ge=1)


class BreakerSnapshot(BaseModel):
    """Point-in-time view of breaker internals for logging and status output."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    consecutive_failures: int
    window_requests: int
    window_failures: int
    opened_at: float | None = None

    @property
    def failure_percentage(self) -> float:
        """Failure share of the rolling window, 0.0 when the window is empty."""
        if self.window_requests == 0:
            return 0.0
        return self.window_failures / self.window_requests * 100.0
