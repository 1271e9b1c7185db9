"""Contract tests for BulkReconciler against an in-memory task API.

The fake API stands in for the remote service; retries run without delay
and every flow goes through the real BatchExecutor and breaker registry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from src.core.errors import (
    BulkOperationError,
    PartialRelationUpdateError,
    RelationAuthError,
    RelationUpdateError,
)
from src.models.bulk import BulkAcknowledgement, BulkField, BulkRecords
from src.services.circuit_breaker import BreakerName
from tests.fakes import FakeHttpError, FakeTaskApi

if TYPE_CHECKING:
    from src.services.bulk_reconciler import BulkReconciler
    from src.services.circuit_breaker import CircuitBreakerRegistry


def _ids(members: list[dict[str, Any]]) -> list[int]:
    return [m["id"] for m in members]


# ---------------------------------------------------------------------------
# Bulk update: bulk path
# ---------------------------------------------------------------------------


class TestBulkUpdateBulkPath:
    def test_verified_bulk_response_skips_fallback(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        outcome = reconciler.bulk_update({"task_ids": [1, 2, 3], "field": "priority", "value": 4})

        assert outcome.success_count == 3
        assert outcome.used_fallback is False
        assert outcome.partial is False
        assert len(api.calls_to("bulk_update_tasks")) == 1
        assert api.calls_to("update_task") == []
        assert [t["priority"] for t in outcome.tasks] == [4, 4, 4]

    def test_one_mismatch_triggers_fallback_for_every_task(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = BulkRecords(
            records=[
                {"id": 1, "priority": 5},
                {"id": 2, "priority": 0},
                {"id": 3, "priority": 5},
            ]
        )

        outcome = reconciler.bulk_update({"task_ids": [1, 2, 3], "field": "priority", "value": 5})

        assert len(api.calls_to("update_task")) == 3
        assert outcome.used_fallback is True
        assert outcome.success_count == 3
        assert all(api.tasks[i]["priority"] == 5 for i in (1, 2, 3))

    def test_empty_record_list_triggers_fallback(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = BulkRecords(records=[])
        outcome = reconciler.bulk_update({"task_ids": [1, 2], "field": "done", "value": True})
        assert outcome.used_fallback is True
        assert len(api.calls_to("update_task")) == 2

    def test_bulk_exception_triggers_fallback(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        outcome = reconciler.bulk_update({"task_ids": [1, 2], "field": "done", "value": True})
        assert outcome.used_fallback is True
        assert all(api.tasks[i]["done"] is True for i in (1, 2))

    def test_fallback_payload_keeps_other_fields(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(7, title="Keep me", description="body", priority=1)
        api.bulk_response = RuntimeError("bulk endpoint unavailable")

        reconciler.bulk_update({"task_ids": [7], "field": "priority", "value": 3})

        _, task_id, payload = api.calls_to("update_task")[0]
        assert task_id == 7
        assert payload["title"] == "Keep me"
        assert payload["description"] == "body"
        assert payload["priority"] == 3

    def test_repeat_mode_sent_as_backend_code(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        reconciler.bulk_update({"task_ids": [1], "field": "repeat_mode", "value": "month"})
        _, _, field, value = api.calls_to("bulk_update_tasks")[0]
        assert (field, value) == ("repeat_mode", 1)

    def test_acknowledgement_refetches_and_counts_fetch_errors(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = BulkAcknowledgement(message="Tasks updated")
        api.failures[("get_task", 2)] = RuntimeError("read failed")

        outcome = reconciler.bulk_update({"task_ids": [1, 2, 3], "field": "done", "value": True})

        assert outcome.success_count == 3
        assert outcome.failed_count == 0
        assert outcome.fetch_errors == 1
        assert [t["id"] for t in outcome.tasks] == [1, 3]
        assert "1 tasks could not be fetched" in outcome.message

    def test_invalid_request_raises_validation_error(self, reconciler: BulkReconciler) -> None:
        with pytest.raises(ValidationError):
            reconciler.bulk_update({"task_ids": [1], "field": "priority", "value": 9})


# ---------------------------------------------------------------------------
# Bulk update: fallback outcome classification
# ---------------------------------------------------------------------------


class TestBulkUpdateClassification:
    def test_partial_success_reports_failed_ids(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        api.failures[("update_task", 2)] = RuntimeError("validation failed")

        outcome = reconciler.bulk_update({"task_ids": [1, 2, 3], "field": "done", "value": True})

        assert outcome.partial is True
        assert outcome.success_count == 2
        assert outcome.failed_count == 1
        assert outcome.failed_ids == [2]
        assert outcome.fetch_errors == 0
        assert "Failed to update task IDs: 2" in outcome.message
        assert outcome.failure_messages == ["2: validation failed"]

    def test_zero_successes_raise(self, api: FakeTaskApi, reconciler: BulkReconciler) -> None:
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        api.failures[("update_task", 1)] = RuntimeError("validation failed")
        api.failures[("update_task", 2)] = RuntimeError("stale task")

        with pytest.raises(BulkOperationError) as exc_info:
            reconciler.bulk_update({"task_ids": [1, 2], "field": "done", "value": True})

        assert exc_info.value.failed_ids == [1, 2]
        assert "Could not update any tasks" in str(exc_info.value)

    def test_same_auth_cause_collapsed_into_one_message(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        api.failures[("add_assignees", 1)] = FakeHttpError(401)
        api.failures[("add_assignees", 2)] = FakeHttpError(401)

        with pytest.raises(BulkOperationError) as exc_info:
            reconciler.bulk_update({"task_ids": [1, 2], "field": "assignees", "value": [9]})

        message = str(exc_info.value)
        assert "Assignees operations may have authentication issues" in message
        assert "2 tasks affected" in message

    def test_open_breaker_failures_collapsed(
        self, api: FakeTaskApi, registry: CircuitBreakerRegistry, reconciler: BulkReconciler
    ) -> None:
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        registry.get(BreakerName.TASK_UPDATE).force_open()

        with pytest.raises(BulkOperationError) as exc_info:
            reconciler.bulk_update({"task_ids": [1, 2], "field": "done", "value": True})

        assert 'Circuit breaker "vikunja-task-update" is open' in str(exc_info.value)
        assert api.calls_to("update_task") == []

    def test_open_bulk_breaker_still_falls_back(
        self, api: FakeTaskApi, registry: CircuitBreakerRegistry, reconciler: BulkReconciler
    ) -> None:
        registry.get(BreakerName.BULK_OPERATIONS).force_open()

        outcome = reconciler.bulk_update({"task_ids": [1, 2], "field": "done", "value": True})

        assert api.calls_to("bulk_update_tasks") == []
        assert outcome.used_fallback is True
        assert outcome.success_count == 2


# ---------------------------------------------------------------------------
# Relationship fields
# ---------------------------------------------------------------------------


class TestRelationshipReconciliation:
    def test_additions_complete_before_removals_begin(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, assignees=[{"id": 1}, {"id": 2}])
        events: list[str] = []
        original_add = api.add_assignees
        original_remove = api.remove_assignee

        def tracked_add(task_id: int, user_ids: list[int]) -> None:
            events.append(f"add_start:{user_ids}")
            original_add(task_id, user_ids)
            events.append("add_end")

        def tracked_remove(task_id: int, user_id: int) -> None:
            events.append(f"remove_start:{user_id}")
            original_remove(task_id, user_id)
            events.append("remove_end")

        api.add_assignees = tracked_add  # type: ignore[method-assign]
        api.remove_assignee = tracked_remove  # type: ignore[method-assign]

        diff = reconciler.reconcile_membership(10, BulkField.ASSIGNEES, [2, 3])

        assert diff.to_add == (3,)
        assert diff.to_remove == (1,)
        assert events == ["add_start:[3]", "add_end", "remove_start:1", "remove_end"]
        assert _ids(api.tasks[10]["assignees"]) == [2, 3]

    def test_no_calls_when_membership_already_matches(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, labels=[{"id": 4}])
        diff = reconciler.reconcile_membership(10, BulkField.LABELS, [4])
        assert diff.is_empty
        assert api.calls_to("add_labels") == []
        assert api.calls_to("remove_label") == []

    def test_removal_failure_after_additions_is_partial(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, labels=[{"id": 1}, {"id": 2}])
        api.failures[("remove_label", 10)] = RuntimeError("remove refused")

        with pytest.raises(PartialRelationUpdateError) as exc_info:
            reconciler.reconcile_membership(10, BulkField.LABELS, [3])

        error = exc_info.value
        assert error.added == [3]
        assert error.not_removed == [1, 2]
        assert "were added but old labels" in str(error)
        assert 3 in _ids(api.tasks[10]["labels"])

    def test_removal_only_failure_is_plain_relation_error(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, labels=[{"id": 1}])
        api.failures[("remove_label", 10)] = RuntimeError("remove refused")

        with pytest.raises(RelationUpdateError) as exc_info:
            reconciler.reconcile_membership(10, BulkField.LABELS, [])

        assert not isinstance(exc_info.value, PartialRelationUpdateError)

    def test_auth_failure_on_add_is_relation_auth_error(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.failures[("add_assignees", 1)] = FakeHttpError(403)

        with pytest.raises(RelationAuthError) as exc_info:
            reconciler.reconcile_membership(1, BulkField.ASSIGNEES, [5])

        assert exc_info.value.field == "assignees"
        # auth errors are retried once under the relation policy
        assert len(api.calls_to("add_assignees")) == 2

    def test_bulk_relationship_update_via_fallback_refetches_tasks(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, assignees=[{"id": 1}])
        api.add_task(11, assignees=[{"id": 2}])
        api.bulk_response = RuntimeError("bulk endpoint unavailable")

        outcome = reconciler.bulk_update({"task_ids": [10, 11], "field": "assignees", "value": [3]})

        assert outcome.success_count == 2
        assert [_ids(t["assignees"]) for t in outcome.tasks] == [[3], [3]]

    def test_partial_relation_failures_collapsed_in_partial_outcome(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_task(10, labels=[{"id": 1}])
        api.add_task(11, labels=[{"id": 1}])
        api.bulk_response = RuntimeError("bulk endpoint unavailable")
        api.failures[("remove_label", 10)] = RuntimeError("remove refused")

        outcome = reconciler.bulk_update({"task_ids": [10, 11], "field": "labels", "value": [2]})

        assert outcome.partial is True
        assert outcome.failed_ids == [10]
        assert len(outcome.failure_messages) == 1
        assert "old labels could not be removed" in outcome.failure_messages[0]


# ---------------------------------------------------------------------------
# Bulk delete
# ---------------------------------------------------------------------------


class TestBulkDelete:
    def test_all_deleted_with_previous_state(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        outcome = reconciler.bulk_delete({"task_ids": [1, 2, 3]})

        assert outcome.deleted_ids == [1, 2, 3]
        assert outcome.partial is False
        assert [t["id"] for t in outcome.previous_state] == [1, 2, 3]
        assert set(api.tasks) == {4, 5}

    def test_partial_delete(self, api: FakeTaskApi, reconciler: BulkReconciler) -> None:
        api.failures[("delete_task", 2)] = RuntimeError("task locked")

        outcome = reconciler.bulk_delete({"task_ids": [1, 2, 3]})

        assert outcome.partial is True
        assert outcome.deleted_ids == [1, 3]
        assert outcome.failed_ids == [2]
        assert "Failed to delete task IDs: 2" in outcome.message

    def test_all_deletes_failing_raise(self, api: FakeTaskApi, reconciler: BulkReconciler) -> None:
        api.failures[("delete_task", 1)] = FakeHttpError(401)
        api.failures[("delete_task", 2)] = FakeHttpError(401)

        with pytest.raises(BulkOperationError) as exc_info:
            reconciler.bulk_delete({"task_ids": [1, 2]})

        assert exc_info.value.failed_ids == [1, 2]
        assert "authentication errors" in str(exc_info.value)

    def test_missing_task_does_not_block_others(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        outcome = reconciler.bulk_delete({"task_ids": [1, 99]})
        assert outcome.deleted_ids == [1]
        assert outcome.failed_ids == [99]
        assert [t["id"] for t in outcome.previous_state] == [1]


# ---------------------------------------------------------------------------
# Bulk create
# ---------------------------------------------------------------------------


class TestBulkCreate:
    def test_creates_and_enriches(self, api: FakeTaskApi, reconciler: BulkReconciler) -> None:
        outcome = reconciler.bulk_create(
            {
                "project_id": 3,
                "tasks": [
                    {"title": "Plain"},
                    {"title": "Tagged", "labels": [4], "assignees": [8]},
                ],
            }
        )

        assert outcome.partial is False
        assert [t["title"] for t in outcome.created] == ["Plain", "Tagged"]
        tagged = outcome.created[1]
        assert _ids(tagged["labels"]) == [4]
        assert _ids(tagged["assignees"]) == [8]
        assert all(call[2] == 3 for call in api.calls_to("create_task"))

    def test_enrichment_failure_rolls_back(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_labels = MagicMock(side_effect=FakeHttpError(500, "label service down"))  # type: ignore[method-assign]

        outcome = reconciler.bulk_create(
            {"project_id": 3, "tasks": [{"title": "Plain"}, {"title": "Tagged", "labels": [4]}]}
        )

        assert outcome.partial is True
        assert len(outcome.created) == 1
        failure = outcome.failures[0]
        assert failure.title == "Tagged"
        assert failure.index == 1
        assert failure.rollback_attempted is True
        assert failure.rolled_back is True
        assert failure.requires_manual_cleanup is False
        assert failure.task_id not in api.tasks
        assert "label service down" in failure.error

    def test_failed_rollback_requires_manual_cleanup(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_labels = MagicMock(side_effect=FakeHttpError(500, "label service down"))  # type: ignore[method-assign]
        api.delete_task = MagicMock(side_effect=RuntimeError("delete refused"))  # type: ignore[method-assign]

        outcome = reconciler.bulk_create(
            {"project_id": 3, "tasks": [{"title": "Plain"}, {"title": "Tagged", "labels": [4]}]}
        )

        failure = outcome.failures[0]
        assert failure.requires_manual_cleanup is True
        assert failure.rollback_error == "delete refused"
        assert failure.task_id in api.tasks
        assert f"Manual cleanup required for task IDs: {failure.task_id}" in outcome.message

    def test_assignee_auth_failure_rolls_back_with_explanation(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.add_assignees = MagicMock(side_effect=FakeHttpError(401))  # type: ignore[method-assign]

        outcome = reconciler.bulk_create(
            {"project_id": 3, "tasks": [{"title": "Plain"}, {"title": "Owned", "assignees": [8]}]}
        )

        failure = outcome.failures[0]
        assert failure.rolled_back is True
        assert "assignees could not be added" in failure.error

    def test_create_failure_needs_no_rollback(
        self, api: FakeTaskApi, reconciler: BulkReconciler
    ) -> None:
        api.failures[("create_task", "Broken")] = RuntimeError("project archived")

        outcome = reconciler.bulk_create(
            {"project_id": 3, "tasks": [{"title": "Fine"}, {"title": "Broken"}]}
        )

        failure = outcome.failures[0]
        assert failure.error == "project archived"
        assert failure.rollback_attempted is False
        assert failure.task_id is None

    def test_all_creates_failing_raise(self, api: FakeTaskApi, reconciler: BulkReconciler) -> None:
        api.failures[("create_task", "A")] = RuntimeError("project archived")
        api.failures[("create_task", "B")] = RuntimeError("project archived")

        with pytest.raises(BulkOperationError) as exc_info:
            reconciler.bulk_create({"project_id": 3, "tasks": [{"title": "A"}, {"title": "B"}]})

        assert exc_info.value.failed_ids == [0, 1]
        assert len(exc_info.value.details) == 2
