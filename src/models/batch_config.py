"""Batch execution configuration and per-operation-class presets."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BatchConfig(BaseModel):
    """Chunking, concurrency and throttling settings for a BatchExecutor."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=10, ge=1)
    max_concurrency: int = Field(default=5, ge=1)
    batch_delay_ms: float = Field(default=0, ge=0)


# Moderate settings for updates.
UPDATE_BATCH_CONFIG = BatchConfig(max_concurrency=5, batch_size=10, batch_delay_ms=0)

# Conservative for destructive operations: low concurrency, throttled chunks.
DELETE_BATCH_CONFIG = BatchConfig(max_concurrency=3, batch_size=5, batch_delay_ms=100)

# Aggressive for creates.
CREATE_BATCH_CONFIG = BatchConfig(max_concurrency=8, batch_size=15, batch_delay_ms=0)

HIGH_THROUGHPUT_CONFIG = BatchConfig(max_concurrency=8, batch_size=15, batch_delay_ms=0)
RATE_LIMITED_CONFIG = BatchConfig(max_concurrency=3, batch_size=5, batch_delay_ms=100)
MEMORY_OPTIMIZED_CONFIG = BatchConfig(max_concurrency=4, batch_size=8, batch_delay_ms=50)
