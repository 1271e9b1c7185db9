"""Exception types raised by the batch operation engine."""

from __future__ import annotations

from typing import Any


class CircuitOpenError(Exception):
    """Raised when a named circuit breaker rejects a call without running it."""

    def __init__(self, breaker_name: str, retry_in_seconds: float = 0.0) -> None:
        self.breaker_name = breaker_name
        self.retry_in_seconds = retry_in_seconds
        super().__init__(
            f'Circuit breaker "{breaker_name}" is OPEN - operation not permitted '
            f"(retry in {retry_in_seconds:.1f}s)"
        )


class OperationCancelledError(Exception):
    """Raised when a caller-supplied cancel event stops work in flight."""


class VerificationError(Exception):
    """Bulk endpoint reported success but its records do not reflect the update."""

    def __init__(self, field: str, task_id: Any, expected: Any, actual: Any) -> None:
        self.field = field
        self.task_id = task_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Bulk update reported success but task {task_id} has {field}={actual!r} "
            f"(expected {expected!r})"
        )


class BulkOperationError(Exception):
    """Raised when a bulk operation has zero successful items."""

    def __init__(
        self,
        message: str,
        failed_ids: list[Any] | None = None,
        details: list[str] | None = None,
    ) -> None:
        self.failed_ids = failed_ids or []
        self.details = details or []
        super().__init__(message)


class RelationUpdateError(Exception):
    """Changing assignee or label membership of a task failed."""

    def __init__(self, field: str, task_id: int, message: str) -> None:
        self.field = field
        self.task_id = task_id
        super().__init__(message)


class RelationAuthError(RelationUpdateError):
    """Membership change rejected with an authentication-class error."""


class PartialRelationUpdateError(RelationUpdateError):
    """Additions were applied but removing old members failed."""

    def __init__(
        self,
        field: str,
        task_id: int,
        added: list[int],
        not_removed: list[int],
        cause: BaseException,
    ) -> None:
        self.added = added
        self.not_removed = not_removed
        self.cause = cause
        super().__init__(
            field,
            task_id,
            f"Task {task_id}: new {field} {added} were added but old {field} "
            f"{not_removed} could not be removed ({cause})",
        )


class TaskCreationError(Exception):
    """Post-create enrichment failed; carries the rollback result alongside."""

    def __init__(
        self,
        primary: BaseException,
        task_id: int | None,
        rollback_attempted: bool = False,
        rollback_error: BaseException | None = None,
    ) -> None:
        self.primary = primary
        self.task_id = task_id
        self.rollback_attempted = rollback_attempted
        self.rollback_error = rollback_error
        if not rollback_attempted:
            suffix = ""
        elif rollback_error is None:
            suffix = f" The partially created task {task_id} was removed."
        else:
            suffix = (
                f" Cleanup of partially created task {task_id} also failed "
                f"({rollback_error}); manual cleanup required."
            )
        super().__init__(f"{primary}{suffix}")

    @property
    def rolled_back(self) -> bool:
        """True when the partially created task was deleted again."""
        return self.rollback_attempted and self.rollback_error is None

    @property
    def requires_manual_cleanup(self) -> bool:
        """True when a created task may have been left behind."""
        return self.rollback_attempted and self.rollback_error is not None
