"""Chunked batch processor with bounded concurrency and per-item isolation."""

from __future__ import annotations

import functools
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any

import structlog

from src.core.errors import OperationCancelledError
from src.models.batch_config import (
    CREATE_BATCH_CONFIG,
    DELETE_BATCH_CONFIG,
    UPDATE_BATCH_CONFIG,
    BatchConfig,
)
from src.models.batch_result import BatchMetrics, BatchResult, FailureRecord
from src.utils.progress import ProgressTracker
from src.utils.retry import RetryExecutor

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Sequence

    from src.services.circuit_breaker import CircuitBreakerRegistry
    from src.utils.retry import RetryPolicy

logger = structlog.get_logger(__name__)


class BatchExecutor:
    """Runs an operation over many items in sequential, concurrent chunks.

    Chunk k+1 starts only after chunk k has fully completed; within a chunk at
    most max_concurrency operations run at once. A failing item becomes a
    FailureRecord and never aborts its siblings or later chunks.
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        registry: CircuitBreakerRegistry | None = None,
        breaker_name: str | None = None,
        retry_executor: RetryExecutor | None = None,
        label: str = "batch",
    ) -> None:
        self.config = config or BatchConfig()
        self.retry_policy = retry_policy
        self.registry = registry
        self.breaker_name = breaker_name
        self.label = label
        self._retry = retry_executor or RetryExecutor()

    def process_batches(
        self,
        items: Sequence[Any],
        operation: Callable[[Any, int], Any],
        config: BatchConfig | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BatchResult:
        """Process items in ordered chunks and return the aggregate result."""
        opts = config or self.config
        items = list(items)
        start = time.monotonic()
        tracker = ProgressTracker(total=len(items), label=self.label)

        chunks = [
            list(range(offset, min(offset + opts.batch_size, len(items))))
            for offset in range(0, len(items), opts.batch_size)
        ]
        logger.debug(
            "batch_processing_started",
            label=self.label,
            total_items=len(items),
            batch_count=len(chunks),
            batch_size=opts.batch_size,
            max_concurrency=opts.max_concurrency,
        )

        successes: dict[int, Any] = {}
        failures: dict[int, FailureRecord] = {}
        chunk_durations: list[float] = []

        for chunk_number, chunk in enumerate(chunks):
            chunk_start = time.monotonic()
            self._run_chunk(
                items, chunk, operation, opts.max_concurrency,
                successes, failures, tracker, cancel_event,
            )
            tracker.record_chunk()
            chunk_durations.append((time.monotonic() - chunk_start) * 1000)
            tracker.log_progress()

            is_last = chunk_number == len(chunks) - 1
            if opts.batch_delay_ms > 0 and not is_last:
                self._pause(opts.batch_delay_ms / 1000, cancel_event)

        total_ms = (time.monotonic() - start) * 1000
        success_indices = sorted(successes)
        failed_records = [failures[i] for i in sorted(failures)]

        metrics = BatchMetrics(
            total_items=len(items),
            total_batches=len(chunks),
            total_duration_ms=round(total_ms, 3),
            average_batch_duration_ms=(
                round(sum(chunk_durations) / len(chunk_durations), 3) if chunk_durations else 0.0
            ),
            successful_operations=len(success_indices),
            failed_operations=len(failed_records),
            operations_per_second=(len(items) / (total_ms / 1000)) if total_ms > 0 else 0.0,
        )
        logger.info(
            "batch_processing_completed",
            label=self.label,
            total_items=metrics.total_items,
            total_batches=metrics.total_batches,
            successful=metrics.successful_operations,
            failed=metrics.failed_operations,
            duration_ms=metrics.total_duration_ms,
        )

        return BatchResult(
            successful=[successes[i] for i in success_indices],
            successful_indices=success_indices,
            failed=failed_records,
            metrics=metrics,
        )

    def _run_chunk(
        self,
        items: list[Any],
        chunk: list[int],
        operation: Callable[[Any, int], Any],
        max_concurrency: int,
        successes: dict[int, Any],
        failures: dict[int, FailureRecord],
        tracker: ProgressTracker,
        cancel_event: threading.Event | None,
    ) -> None:
        """Run one chunk; items beyond max_concurrency wait for a free worker."""
        workers = max(1, min(max_concurrency, len(chunk)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._invoke, operation, items[index], index, cancel_event): index
                for index in chunk
            }

            for future in as_completed(futures):
                index = futures[future]
                try:
                    successes[index] = future.result()
                    tracker.record_success()
                except Exception as exc:
                    logger.warning(
                        "batch_item_failed",
                        label=self.label,
                        index=index,
                        item=str(items[index])[:100],
                        error=str(exc),
                    )
                    failures[index] = FailureRecord(
                        original_item=items[index], error=exc, index=index
                    )
                    tracker.record_failure(cancelled=isinstance(exc, OperationCancelledError))

    def _invoke(
        self,
        operation: Callable[[Any, int], Any],
        item: Any,
        index: int,
        cancel_event: threading.Event | None,
    ) -> Any:
        """Run a single item through the configured retry policy and breaker."""
        if cancel_event is not None and cancel_event.is_set():
            msg = f"Item {index} not started: batch cancelled"
            raise OperationCancelledError(msg)

        call: Callable[[], Any] = functools.partial(operation, item, index)
        if self.retry_policy is not None:
            call = functools.partial(self._retry.execute, call, self.retry_policy, cancel_event)

        if self.registry is not None and self.breaker_name:
            return self.registry.execute(self.breaker_name, call)
        return call()

    @staticmethod
    def _pause(seconds: float, cancel_event: threading.Event | None) -> None:
        """Inter-chunk delay; returns early when the batch is cancelled."""
        if cancel_event is None:
            time.sleep(seconds)
        else:
            cancel_event.wait(seconds)


def get_batch_executor(
    operation_type: str,
    retry_policy: RetryPolicy | None = None,
    registry: CircuitBreakerRegistry | None = None,
    breaker_name: str | None = None,
) -> BatchExecutor:
    """Pick the preset for an operation class by name.

    Names containing "delete" get the conservative preset, "create" the
    aggressive one, anything else the moderate update preset.
    """
    if "delete" in operation_type:
        config = DELETE_BATCH_CONFIG
    elif "create" in operation_type:
        config = CREATE_BATCH_CONFIG
    else:
        config = UPDATE_BATCH_CONFIG
    return BatchExecutor(
        config,
        retry_policy=retry_policy,
        registry=registry,
        breaker_name=breaker_name,
        label=operation_type,
    )


def process_batches(
    items: Sequence[Any],
    operation: Callable[[Any, int], Any],
    config: BatchConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> BatchResult:
    """Process items with a plain BatchExecutor (no retry, no breaker)."""
    return BatchExecutor(config).process_batches(items, operation, cancel_event=cancel_event)
