"""Service protocols defining interfaces for dependency injection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from src.models.bulk import BulkResponse


class TaskApiProtocol(Protocol):
    """Unit and bulk operations of the remote task-management API."""

    def get_task(self, task_id: int) -> dict[str, Any]: ...

    def create_task(self, project_id: int, data: dict[str, Any]) -> dict[str, Any]: ...

    def update_task(self, task_id: int, data: dict[str, Any]) -> dict[str, Any]: ...

    def delete_task(self, task_id: int) -> None: ...

    def bulk_update_tasks(self, task_ids: list[int], field: str, value: Any) -> BulkResponse: ...

    def add_assignees(self, task_id: int, user_ids: list[int]) -> None: ...

    def remove_assignee(self, task_id: int, user_id: int) -> None: ...

    def add_labels(self, task_id: int, label_ids: list[int]) -> None: ...

    def remove_label(self, task_id: int, label_id: int) -> None: ...
