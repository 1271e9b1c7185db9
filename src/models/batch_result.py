"""Batch result models for batch operation outcomes and statistics."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class FailureRecord(BaseModel):
    """A work item whose operation failed after retries or was rejected."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    original_item: Any
    error: BaseException
    index: int

    @property
    def error_message(self) -> str:
        """String form of the error, for summaries."""
        return str(self.error) or type(self.error).__name__


class BatchMetrics(BaseModel):
    """Statistics computed once a batch run completes."""

    model_config = ConfigDict(frozen=True)

    total_items: int
    total_batches: int
    total_duration_ms: float
    average_batch_duration_ms: float
    successful_operations: int
    failed_operations: int
    operations_per_second: float


class BatchResult(BaseModel):
    """Outcome of processing a list of items in chunks.

    Every input index appears exactly once, either in successful_indices or
    as the index of a FailureRecord. Successful values are ordered by index.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    successful: list[Any]
    successful_indices: list[int]
    failed: list[FailureRecord]
    metrics: BatchMetrics

    @property
    def failed_items(self) -> list[Any]:
        """Original items of the failed records, in index order."""
        return [record.original_item for record in self.failed]

    @property
    def all_succeeded(self) -> bool:
        """True when no item failed."""
        return not self.failed
