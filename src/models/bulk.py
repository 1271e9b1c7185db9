"""Bulk operation request, response and outcome models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from src.models.batch_result import BatchMetrics

MAX_BULK_OPERATION_TASKS = 100

_SECONDS_PER_DAY = 24 * 60 * 60
_REPEAT_UNIT_SECONDS = {
    "day": _SECONDS_PER_DAY,
    "week": 7 * _SECONDS_PER_DAY,
    "month": 30 * _SECONDS_PER_DAY,
    "year": 365 * _SECONDS_PER_DAY,
}

# Backend repeat_mode integers: 0 = use repeat_after, 1 = monthly.
_REPEAT_MODE_CODES = {"day": 0, "week": 0, "month": 1, "year": 0}


class BulkField(StrEnum):
    """Task fields that can be set on many tasks at once."""

    DONE = "done"
    PRIORITY = "priority"
    DUE_DATE = "due_date"
    PROJECT_ID = "project_id"
    ASSIGNEES = "assignees"
    LABELS = "labels"
    REPEAT_AFTER = "repeat_after"
    REPEAT_MODE = "repeat_mode"


RELATIONSHIP_FIELDS = frozenset({BulkField.ASSIGNEES, BulkField.LABELS})
VERIFIABLE_FIELDS = frozenset(
    {BulkField.PRIORITY, BulkField.DONE, BulkField.DUE_DATE, BulkField.PROJECT_ID}
)


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing Z."""
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def _validate_task_ids(value: list[int]) -> list[int]:
    if not value:
        msg = "task_ids must contain at least one task ID"
        raise ValueError(msg)
    if len(value) > MAX_BULK_OPERATION_TASKS:
        msg = (
            f"Too many tasks for bulk operation. Maximum allowed: "
            f"{MAX_BULK_OPERATION_TASKS}. Consider breaking into smaller batches."
        )
        raise ValueError(msg)
    for task_id in value:
        if task_id <= 0:
            msg = f"task ID must be a positive integer, got {task_id}"
            raise ValueError(msg)
    return value


def _validate_id_list(value: Any, label: str) -> list[int]:
    if not isinstance(value, list):
        msg = f"{label} must be an array of numbers"
        raise ValueError(msg)
    ids: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int) or item <= 0:
            msg = f"{label} IDs must be positive integers, got {item!r}"
            raise ValueError(msg)
        ids.append(item)
    return ids


class BulkUpdateRequest(BaseModel):
    """Set one field to one value on every listed task."""

    model_config = ConfigDict(extra="forbid")

    task_ids: list[int]
    field: BulkField
    value: Any

    @field_validator("task_ids")
    @classmethod
    def validate_task_ids(cls, value: list[int]) -> list[int]:
        """Between 1 and MAX_BULK_OPERATION_TASKS positive task IDs."""
        return _validate_task_ids(value)

    @model_validator(mode="after")
    def validate_value(self) -> BulkUpdateRequest:
        """Coerce string input and enforce per-field constraints."""
        value = self.value
        if value is None:
            msg = "value is required for bulk update operation"
            raise ValueError(msg)

        if self.field is BulkField.DONE:
            if value in ("true", "false"):
                value = value == "true"
            if not isinstance(value, bool):
                msg = "done field must be a boolean value (true or false)"
                raise ValueError(msg)

        elif self.field in (BulkField.PRIORITY, BulkField.PROJECT_ID, BulkField.REPEAT_AFTER):
            if isinstance(value, str):
                try:
                    value = int(value.strip())
                except ValueError:
                    msg = f"{self.field} must be a number"
                    raise ValueError(msg) from None
            if isinstance(value, bool) or not isinstance(value, int):
                msg = f"{self.field} must be an integer"
                raise ValueError(msg)
            if self.field is BulkField.PRIORITY and not 0 <= value <= 5:
                msg = "Priority must be between 0 and 5"
                raise ValueError(msg)
            if self.field is BulkField.PROJECT_ID and value <= 0:
                msg = "project_id must be a positive integer"
                raise ValueError(msg)
            if self.field is BulkField.REPEAT_AFTER and value < 0:
                msg = "repeat_after must be a non-negative number"
                raise ValueError(msg)

        elif self.field is BulkField.DUE_DATE:
            if not isinstance(value, str):
                msg = "due_date must be an ISO 8601 date string"
                raise ValueError(msg)
            try:
                parse_iso_datetime(value)
            except ValueError:
                msg = "due_date must be a valid ISO 8601 date string (e.g., 2024-05-24T10:00:00Z)"
                raise ValueError(msg) from None

        elif self.field in RELATIONSHIP_FIELDS:
            value = _validate_id_list(value, self.field.value)

        elif self.field is BulkField.REPEAT_MODE and (
            not isinstance(value, str) or value not in _REPEAT_MODE_CODES
        ):
            msg = f"Invalid repeat_mode: {value}. Valid modes: {', '.join(_REPEAT_MODE_CODES)}"
            raise ValueError(msg)

        self.value = value
        return self

    @property
    def backend_value(self) -> Any:
        """Value as the backend stores it (repeat_mode names become integers)."""
        if self.field is BulkField.REPEAT_MODE:
            return _REPEAT_MODE_CODES[self.value]
        return self.value

    @property
    def is_relationship(self) -> bool:
        """True for membership fields updated through add/remove calls."""
        return self.field in RELATIONSHIP_FIELDS


class BulkDeleteRequest(BaseModel):
    """Delete every listed task."""

    model_config = ConfigDict(extra="forbid")

    task_ids: list[int]

    @field_validator("task_ids")
    @classmethod
    def validate_task_ids(cls, value: list[int]) -> list[int]:
        """Between 1 and MAX_BULK_OPERATION_TASKS positive task IDs."""
        return _validate_task_ids(value)


class TaskCreationData(BaseModel):
    """One task of a bulk create request."""

    model_config = ConfigDict(extra="forbid")

    title: str
    description: str | None = None
    due_date: str | None = None
    priority: int | None = None
    labels: list[int] = []
    assignees: list[int] = []
    repeat_after: int | None = None
    repeat_mode: Literal["day", "week", "month", "year"] | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        """Title must be non-empty after stripping."""
        stripped = value.strip()
        if not stripped:
            msg = "Task must have a non-empty title"
            raise ValueError(msg)
        return stripped

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                parse_iso_datetime(value)
            except ValueError:
                msg = "due_date must be a valid ISO 8601 date string"
                raise ValueError(msg) from None
        return value

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, value: int | None) -> int | None:
        if value is not None and not 0 <= value <= 5:
            msg = "Priority must be between 0 and 5"
            raise ValueError(msg)
        return value

    @field_validator("labels", "assignees")
    @classmethod
    def validate_ids(cls, value: list[int]) -> list[int]:
        return _validate_id_list(value, "relation")

    def to_payload(self, project_id: int) -> dict[str, Any]:
        """Build the create-task body, converting repeat settings to seconds."""
        payload: dict[str, Any] = {"title": self.title, "project_id": project_id}
        if self.description is not None:
            payload["description"] = self.description
        if self.due_date is not None:
            payload["due_date"] = self.due_date
        if self.priority is not None:
            payload["priority"] = self.priority

        if self.repeat_mode == "month":
            payload["repeat_mode"] = 1
            if self.repeat_after is not None:
                payload["repeat_after"] = self.repeat_after * _REPEAT_UNIT_SECONDS["month"]
        elif self.repeat_after is not None:
            payload["repeat_mode"] = 0
            unit = _REPEAT_UNIT_SECONDS.get(self.repeat_mode or "", 1)
            payload["repeat_after"] = self.repeat_after * unit
        return payload


class BulkCreateRequest(BaseModel):
    """Create many tasks in one project."""

    model_config = ConfigDict(extra="forbid")

    project_id: int
    tasks: list[TaskCreationData]

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, value: int) -> int:
        if value <= 0:
            msg = "project_id must be a positive integer"
            raise ValueError(msg)
        return value

    @field_validator("tasks")
    @classmethod
    def validate_tasks(cls, value: list[TaskCreationData]) -> list[TaskCreationData]:
        """Between 1 and MAX_BULK_OPERATION_TASKS tasks."""
        if not value:
            msg = "tasks array is required and must contain at least one task"
            raise ValueError(msg)
        if len(value) > MAX_BULK_OPERATION_TASKS:
            msg = f"Too many tasks for bulk operation. Maximum allowed: {MAX_BULK_OPERATION_TASKS}"
            raise ValueError(msg)
        return value


# --- Bulk endpoint responses: the two success shapes the backend returns ---


@dataclass(frozen=True)
class BulkRecords:
    """Bulk endpoint returned the updated task records."""

    records: list[dict[str, Any]]


@dataclass(frozen=True)
class BulkAcknowledgement:
    """Bulk endpoint returned a bare acknowledgement with no per-task detail."""

    message: str


BulkResponse = BulkRecords | BulkAcknowledgement


@dataclass(frozen=True)
class BulkFieldUpdatePlan:
    """The field change a bulk call is expected to have applied."""

    field: BulkField
    expected_value: Any
    task_ids: list[int]


@dataclass(frozen=True)
class MembershipDiff:
    """Members to add and remove for one task's assignees or labels."""

    to_add: tuple[int, ...] = ()
    to_remove: tuple[int, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


@dataclass(frozen=True)
class UpdatedTask:
    """A task whose update succeeded; record is None when it must be re-fetched."""

    task_id: int
    record: dict[str, Any] | None = field(default=None)


# --- Outcomes ---


class BulkUpdateOutcome(BaseModel):
    """Classified result of a bulk field update."""

    field: BulkField
    success_count: int
    failed_count: int = 0
    fetch_errors: int = 0
    failed_ids: list[int] = []
    partial: bool = False
    used_fallback: bool = False
    message: str
    failure_messages: list[str] = []
    tasks: list[dict[str, Any]] = []
    metrics: BatchMetrics | None = None


class BulkDeleteOutcome(BaseModel):
    """Classified result of a bulk delete."""

    deleted_ids: list[int]
    failed_ids: list[int] = []
    partial: bool = False
    message: str
    failure_messages: list[str] = []
    previous_state: list[dict[str, Any]] = []
    metrics: BatchMetrics | None = None


class CreateFailure(BaseModel):
    """A task that could not be created, with the result of its cleanup."""

    index: int
    title: str
    error: str
    task_id: int | None = None
    rollback_attempted: bool = False
    rolled_back: bool = False
    rollback_error: str | None = None

    @property
    def requires_manual_cleanup(self) -> bool:
        """A created task may remain because its rollback failed."""
        return self.rollback_attempted and not self.rolled_back


class BulkCreateOutcome(BaseModel):
    """Classified result of a bulk create."""

    created: list[dict[str, Any]]
    failures: list[CreateFailure] = []
    partial: bool = False
    message: str
    metrics: BatchMetrics | None = None
