"""Progress tracking for chunked batch runs."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ProgressTracker:
    """Running counts for a batch run, logged as chunks complete.

    Not thread-safe: record outcomes from the thread that collects futures.
    """

    total: int
    label: str = "batch"
    processed: int = 0
    successful: int = 0
    failed: int = 0
    cancelled: int = 0
    chunks_completed: int = 0
    start_time: float = field(default_factory=time.monotonic)

    def record_success(self) -> None:
        """Record a successful item."""
        self.processed += 1
        self.successful += 1

    def record_failure(self, cancelled: bool = False) -> None:
        """Record a failed item; cancelled items count as failures too."""
        self.processed += 1
        self.failed += 1
        if cancelled:
            self.cancelled += 1

    def record_chunk(self) -> None:
        """Mark one chunk as complete."""
        self.chunks_completed += 1

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.monotonic() - self.start_time

    @property
    def progress_percentage(self) -> float:
        """Percentage of total items processed."""
        if self.total == 0:
            return 100.0
        return (self.processed / self.total) * 100.0

    def log_progress(self) -> None:
        """Log progress after a chunk; at debug level except for the last one."""
        log = logger.info if self.processed == self.total else logger.debug
        log(
            "batch_progress",
            label=self.label,
            chunks=self.chunks_completed,
            processed=self.processed,
            total=self.total,
            successful=self.successful,
            failed=self.failed,
            cancelled=self.cancelled,
            percentage=f"{self.progress_percentage:.1f}%",
            elapsed=f"{self.elapsed_seconds:.2f}s",
        )
