"""Vikunja REST API client for task operations."""

from __future__ import annotations

from typing import Any

import requests
import structlog

from src.core.bulk_verification import parse_bulk_response
from src.models.bulk import BulkResponse

logger = structlog.get_logger(__name__)


class VikunjaClient:
    """Client for the Vikunja task endpoints used by bulk operations.

    HTTP failures surface as requests.HTTPError with the response attached,
    which the auth classifier inspects for 401/403.
    """

    def __init__(self, base_url: str, api_token: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    def _request(self, method: str, path: str, json: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        response = self.session.request(method, url, json=json, timeout=self.timeout)
        logger.debug("vikunja_request", method=method, path=path, status=response.status_code)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    def get_task(self, task_id: int) -> dict[str, Any]:
        return self._request("GET", f"/tasks/{task_id}")

    def create_task(self, project_id: int, data: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", f"/projects/{project_id}/tasks", json=data)

    def update_task(self, task_id: int, data: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/tasks/{task_id}", json=data)

    def delete_task(self, task_id: int) -> None:
        self._request("DELETE", f"/tasks/{task_id}")

    def bulk_update_tasks(self, task_ids: list[int], field: str, value: Any) -> BulkResponse:
        """Call the bulk endpoint and classify its body at the boundary.

        The endpoint answers either with the updated task array or with a
        bare {"message": ...} acknowledgement.
        """
        raw = self._request(
            "POST",
            "/tasks/bulk",
            json={"task_ids": task_ids, "field": field, "value": value},
        )
        return parse_bulk_response(raw)

    def add_assignees(self, task_id: int, user_ids: list[int]) -> None:
        # The /assignees/bulk endpoint replaces the whole set, so add one by one.
        for user_id in user_ids:
            self._request("PUT", f"/tasks/{task_id}/assignees", json={"user_id": user_id})

    def remove_assignee(self, task_id: int, user_id: int) -> None:
        self._request("DELETE", f"/tasks/{task_id}/assignees/{user_id}")

    def add_labels(self, task_id: int, label_ids: list[int]) -> None:
        for label_id in label_ids:
            self._request("PUT", f"/tasks/{task_id}/labels", json={"label_id": label_id})

    def remove_label(self, task_id: int, label_id: int) -> None:
        self._request("DELETE", f"/tasks/{task_id}/labels/{label_id}")

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
