"""Pydantic data models for the batch operation engine."""

from src.models.batch_config import (
    CREATE_BATCH_CONFIG,
    DELETE_BATCH_CONFIG,
    UPDATE_BATCH_CONFIG,
    BatchConfig,
)
from src.models.batch_result import BatchMetrics, BatchResult, FailureRecord
from src.models.bulk import (
    BulkAcknowledgement,
    BulkCreateOutcome,
    BulkCreateRequest,
    BulkDeleteOutcome,
    BulkDeleteRequest,
    BulkField,
    BulkRecords,
    BulkUpdateOutcome,
    BulkUpdateRequest,
    CreateFailure,
    TaskCreationData,
)
from src.models.circuit_breaker import BreakerSnapshot, CircuitBreakerConfig, CircuitState
from src.models.config import Config

__all__ = [
    "CREATE_BATCH_CONFIG",
    "DELETE_BATCH_CONFIG",
    "UPDATE_BATCH_CONFIG",
    "BatchConfig",
    "BatchMetrics",
    "BatchResult",
    "BreakerSnapshot",
    "BulkAcknowledgement",
    "BulkCreateOutcome",
    "BulkCreateRequest",
    "BulkDeleteOutcome",
    "BulkDeleteRequest",
    "BulkField",
    "BulkRecords",
    "BulkUpdateOutcome",
    "BulkUpdateRequest",
    "CircuitBreakerConfig",
    "CircuitState",
    "Config",
    "CreateFailure",
    "FailureRecord",
    "TaskCreationData",
]
