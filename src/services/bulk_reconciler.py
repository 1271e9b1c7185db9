"""Bulk update, delete and create flows over an unreliable task API.

Bulk updates first try the backend's bulk endpoint, verify what it claims to
have done, and fall back to one-by-one updates when verification fails. Deletes
and creates go straight through the BatchExecutor; creates roll back records
whose label/assignee enrichment failed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from src.core.bulk_verification import (
    build_update_payload,
    compute_membership_diff,
    failure_messages,
    membership_ids,
    summarize_common_cause,
    verify_bulk_response,
)
from src.core.errors import (
    BulkOperationError,
    PartialRelationUpdateError,
    RelationAuthError,
    RelationUpdateError,
    TaskCreationError,
)
from src.models.batch_config import (
    CREATE_BATCH_CONFIG,
    DELETE_BATCH_CONFIG,
    UPDATE_BATCH_CONFIG,
    BatchConfig,
)
from src.models.bulk import (
    BulkCreateOutcome,
    BulkCreateRequest,
    BulkDeleteOutcome,
    BulkDeleteRequest,
    BulkField,
    BulkFieldUpdatePlan,
    BulkUpdateOutcome,
    BulkUpdateRequest,
    CreateFailure,
    MembershipDiff,
    TaskCreationData,
    UpdatedTask,
)
from src.services.batch_processor import BatchExecutor
from src.services.circuit_breaker import BreakerName, with_circuit_breaker
from src.utils.auth_errors import is_authentication_error
from src.utils.retry import (
    AUTH_ERRORS_POLICY,
    BULK_OPERATIONS_POLICY,
    TASK_OPERATIONS_POLICY,
    RetryExecutor,
    RetryPolicy,
)

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable

    from src.models.batch_result import BatchResult, FailureRecord
    from src.services.circuit_breaker import CircuitBreakerRegistry
    from src.services.protocols import TaskApiProtocol

T = TypeVar("T")

logger = structlog.get_logger(__name__)


def _format_ids(ids: list[Any]) -> str:
    return ", ".join(str(i) for i in ids)


class BulkReconciler:
    """Runs bulk task operations with retries, shared breakers and fallback."""

    def __init__(
        self,
        api: TaskApiProtocol,
        registry: CircuitBreakerRegistry,
        update_config: BatchConfig = UPDATE_BATCH_CONFIG,
        delete_config: BatchConfig = DELETE_BATCH_CONFIG,
        create_config: BatchConfig = CREATE_BATCH_CONFIG,
        task_policy: RetryPolicy = TASK_OPERATIONS_POLICY,
        bulk_policy: RetryPolicy = BULK_OPERATIONS_POLICY,
        relation_policy: RetryPolicy = AUTH_ERRORS_POLICY,
        retry_executor: RetryExecutor | None = None,
    ) -> None:
        self.api = api
        self.registry = registry
        self.update_config = update_config
        self.delete_config = delete_config
        self.create_config = create_config
        self.task_policy = task_policy
        self.bulk_policy = bulk_policy
        self.relation_policy = relation_policy
        self._retry = retry_executor or RetryExecutor()

    def _call(
        self,
        breaker: BreakerName,
        operation: Callable[[], T],
        policy: RetryPolicy,
        cancel_event: threading.Event | None = None,
    ) -> T:
        return with_circuit_breaker(
            operation,
            breaker,
            self.registry,
            policy=policy,
            retry_executor=self._retry,
            cancel_event=cancel_event,
        )

    # --- bulk update ---

    def bulk_update(
        self,
        request: BulkUpdateRequest | dict[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> BulkUpdateOutcome:
        """Set one field on many tasks, verifying the bulk call's claimed effect.

        Raises BulkOperationError when no task could be updated.
        """
        req = (
            request
            if isinstance(request, BulkUpdateRequest)
            else BulkUpdateRequest.model_validate(request)
        )
        plan = BulkFieldUpdatePlan(
            field=req.field, expected_value=req.backend_value, task_ids=req.task_ids
        )

        try:
            response = self._call(
                BreakerName.BULK_OPERATIONS,
                lambda: self.api.bulk_update_tasks(
                    plan.task_ids, plan.field.value, plan.expected_value
                ),
                self.bulk_policy,
                cancel_event,
            )
            records = verify_bulk_response(response, plan)
        except Exception as exc:
            logger.warning(
                "bulk_update_fallback",
                field=req.field.value,
                task_count=len(req.task_ids),
                error=str(exc),
            )
            return self._fallback_update(req, cancel_event)

        if records:
            logger.info("bulk_update_verified", field=req.field.value, task_count=len(records))
            return BulkUpdateOutcome(
                field=req.field,
                success_count=len(req.task_ids),
                tasks=records,
                message=f"Successfully updated {len(req.task_ids)} tasks",
            )

        # Acknowledgement only: nothing to verify, read the tasks back instead.
        fetched = self._fetch_tasks(
            req.task_ids, self.update_config, "bulk_update_fetch", cancel_event
        )
        fetch_errors = len(fetched.failed)
        return BulkUpdateOutcome(
            field=req.field,
            success_count=len(req.task_ids),
            fetch_errors=fetch_errors,
            tasks=fetched.successful,
            message=self._updated_message(len(req.task_ids), fetch_errors),
            metrics=fetched.metrics,
        )

    def _fallback_update(
        self,
        req: BulkUpdateRequest,
        cancel_event: threading.Event | None,
    ) -> BulkUpdateOutcome:
        executor = BatchExecutor(self.update_config, label="bulk_update_individual_fallback")
        result = executor.process_batches(
            req.task_ids,
            lambda task_id, _index: self.update_single_task(task_id, req, cancel_event),
            cancel_event=cancel_event,
        )
        return self._classify_update(req, result, cancel_event)

    def update_single_task(
        self,
        task_id: int,
        req: BulkUpdateRequest,
        cancel_event: threading.Event | None = None,
    ) -> UpdatedTask:
        """Unit-level fallback for one task."""
        if req.is_relationship:
            self.reconcile_membership(task_id, req.field, req.value, cancel_event)
            return UpdatedTask(task_id=task_id)

        current = self._call(
            BreakerName.TASK_GET, lambda: self.api.get_task(task_id), self.task_policy, cancel_event
        )
        payload = build_update_payload(current, req.field, req.backend_value)
        updated = self._call(
            BreakerName.TASK_UPDATE,
            lambda: self.api.update_task(task_id, payload),
            self.task_policy,
            cancel_event,
        )
        return UpdatedTask(task_id=task_id, record=updated if isinstance(updated, dict) else None)

    def _relation_calls(
        self, field: BulkField
    ) -> tuple[Callable[[int, list[int]], None], Callable[[int, int], None], BreakerName]:
        if field is BulkField.ASSIGNEES:
            return self.api.add_assignees, self.api.remove_assignee, BreakerName.TASK_ASSIGNEES
        return self.api.add_labels, self.api.remove_label, BreakerName.TASK_LABELS

    def reconcile_membership(
        self,
        task_id: int,
        field: BulkField,
        desired: list[int],
        cancel_event: threading.Event | None = None,
    ) -> MembershipDiff:
        """Bring a task's assignees or labels to the desired set.

        Every addition completes before the first removal starts, so the task
        is never left without members when a removal fails.
        """
        current = self._call(
            BreakerName.TASK_GET, lambda: self.api.get_task(task_id), self.task_policy, cancel_event
        )
        diff = compute_membership_diff(membership_ids(current, field), desired)
        if diff.is_empty:
            return diff

        add, remove, breaker = self._relation_calls(field)
        name = field.value

        if diff.to_add:
            to_add = list(diff.to_add)
            try:
                self._call(breaker, lambda: add(task_id, to_add), self.relation_policy, cancel_event)
            except Exception as exc:
                if is_authentication_error(exc):
                    raise RelationAuthError(
                        name,
                        task_id,
                        f"{name.capitalize()} operations may have authentication issues with "
                        f"certain Vikunja API versions; could not add {name} {to_add} "
                        f"to task {task_id}",
                    ) from exc
                raise

        removed: list[int] = []
        for member_id in diff.to_remove:
            try:
                self._call(
                    breaker,
                    lambda member_id=member_id: remove(task_id, member_id),
                    self.relation_policy,
                    cancel_event,
                )
            except Exception as exc:
                not_removed = [m for m in diff.to_remove if m not in removed]
                if diff.to_add:
                    raise PartialRelationUpdateError(
                        name, task_id, list(diff.to_add), not_removed, exc
                    ) from exc
                if is_authentication_error(exc):
                    raise RelationAuthError(
                        name,
                        task_id,
                        f"{name.capitalize()} removal may have authentication issues with "
                        f"certain Vikunja API versions; could not remove {name} {not_removed} "
                        f"from task {task_id}",
                    ) from exc
                raise RelationUpdateError(
                    name, task_id, f"Task {task_id}: could not remove {name} {not_removed} ({exc})"
                ) from exc
            removed.append(member_id)

        logger.debug(
            "membership_reconciled",
            task_id=task_id,
            field=name,
            added=list(diff.to_add),
            removed=removed,
        )
        return diff

    def _classify_update(
        self,
        req: BulkUpdateRequest,
        result: BatchResult,
        cancel_event: threading.Event | None,
    ) -> BulkUpdateOutcome:
        failures = result.failed
        failed_ids = [f.original_item for f in failures]
        collapsed = summarize_common_cause(failures, req.field.value)

        if not result.successful:
            raise BulkOperationError(
                collapsed
                or f"Bulk update failed. Could not update any tasks. Failed IDs: {_format_ids(failed_ids)}",
                failed_ids=failed_ids,
                details=failure_messages(failures),
            )

        updated: list[UpdatedTask] = result.successful
        records: dict[int, dict[str, Any]] = {
            u.task_id: u.record for u in updated if u.record is not None
        }
        missing = [u.task_id for u in updated if u.record is None]
        fetch_errors = 0
        if missing:
            fetched = self._fetch_tasks(
                missing, self.update_config, "bulk_update_final_fetch", cancel_event
            )
            fetch_errors = len(fetched.failed)
            for index, record in zip(fetched.successful_indices, fetched.successful, strict=True):
                records[missing[index]] = record

        tasks = [records[u.task_id] for u in updated if u.task_id in records]
        success_count = len(updated)

        if failures:
            logger.warning(
                "bulk_update_partially_failed",
                field=req.field.value,
                success_count=success_count,
                failed_count=len(failures),
                failed_ids=failed_ids,
            )
            message = (
                f"Bulk update partially completed. Successfully updated {success_count} tasks. "
                f"Failed to update task IDs: {_format_ids(failed_ids)}"
            )
            if collapsed:
                message = f"{message}. {collapsed}"
            if fetch_errors:
                message = f"{message} ({fetch_errors} tasks could not be fetched after update)"
        else:
            message = self._updated_message(success_count, fetch_errors)
            logger.info("bulk_update_completed", field=req.field.value, task_count=success_count)

        return BulkUpdateOutcome(
            field=req.field,
            success_count=success_count,
            failed_count=len(failures),
            fetch_errors=fetch_errors,
            failed_ids=failed_ids,
            partial=bool(failures),
            used_fallback=True,
            message=message,
            failure_messages=[collapsed] if collapsed else failure_messages(failures),
            tasks=tasks,
            metrics=result.metrics,
        )

    @staticmethod
    def _updated_message(count: int, fetch_errors: int) -> str:
        suffix = f" ({fetch_errors} tasks could not be fetched after update)" if fetch_errors else ""
        return f"Successfully updated {count} tasks{suffix}"

    def _fetch_tasks(
        self,
        task_ids: list[int],
        config: BatchConfig,
        label: str,
        cancel_event: threading.Event | None,
    ) -> BatchResult:
        executor = BatchExecutor(config, label=label)
        return executor.process_batches(
            task_ids,
            lambda task_id, _index: self._call(
                BreakerName.TASK_GET,
                lambda: self.api.get_task(task_id),
                self.task_policy,
                cancel_event,
            ),
            cancel_event=cancel_event,
        )

    # --- bulk delete ---

    def bulk_delete(
        self,
        request: BulkDeleteRequest | dict[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> BulkDeleteOutcome:
        """Delete many tasks, keeping their previous state for the response.

        Raises BulkOperationError when no task could be deleted.
        """
        req = (
            request
            if isinstance(request, BulkDeleteRequest)
            else BulkDeleteRequest.model_validate(request)
        )
        previous = self._fetch_tasks(
            req.task_ids, self.update_config, "bulk_delete_fetch", cancel_event
        )

        def delete_one(task_id: int, _index: int) -> int:
            self._call(
                BreakerName.TASK_DELETE,
                lambda: self.api.delete_task(task_id),
                self.task_policy,
                cancel_event,
            )
            return task_id

        executor = BatchExecutor(self.delete_config, label="bulk_delete_execution")
        result = executor.process_batches(req.task_ids, delete_one, cancel_event=cancel_event)

        failed_ids = [f.original_item for f in result.failed]
        collapsed = summarize_common_cause(result.failed)
        if not result.successful:
            raise BulkOperationError(
                collapsed
                or f"Bulk delete failed. Could not delete any tasks. Failed IDs: {_format_ids(failed_ids)}",
                failed_ids=failed_ids,
                details=failure_messages(result.failed),
            )

        if failed_ids:
            message = (
                f"Bulk delete partially completed. Successfully deleted {len(result.successful)} "
                f"tasks. Failed to delete task IDs: {_format_ids(failed_ids)}"
            )
            if collapsed:
                message = f"{message}. {collapsed}"
            logger.warning(
                "bulk_delete_partially_failed",
                deleted=len(result.successful),
                failed_ids=failed_ids,
            )
        else:
            message = f"Successfully deleted {len(result.successful)} tasks"
            logger.info("bulk_delete_completed", task_count=len(result.successful))

        return BulkDeleteOutcome(
            deleted_ids=result.successful,
            failed_ids=failed_ids,
            partial=bool(failed_ids),
            message=message,
            failure_messages=[collapsed] if collapsed else failure_messages(result.failed),
            previous_state=previous.successful,
            metrics=result.metrics,
        )

    # --- bulk create ---

    def bulk_create(
        self,
        request: BulkCreateRequest | dict[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> BulkCreateOutcome:
        """Create many tasks in one project, rolling back half-enriched ones.

        Raises BulkOperationError when no task could be created.
        """
        req = (
            request
            if isinstance(request, BulkCreateRequest)
            else BulkCreateRequest.model_validate(request)
        )
        executor = BatchExecutor(self.create_config, label="bulk_create")
        result = executor.process_batches(
            req.tasks,
            lambda task, _index: self.create_single_task(req.project_id, task, cancel_event),
            cancel_event=cancel_event,
        )

        failures = [self._create_failure(record) for record in result.failed]
        if not result.successful:
            raise BulkOperationError(
                f"Bulk create failed. Could not create any tasks. "
                f"{len(failures)} tasks failed.",
                failed_ids=[f.index for f in failures],
                details=[f"#{f.index} {f.title}: {f.error}" for f in failures],
            )

        cleanup_needed = [f for f in failures if f.requires_manual_cleanup]
        if failures:
            message = (
                f"Bulk create partially completed. Successfully created "
                f"{len(result.successful)} tasks, {len(failures)} failed."
            )
            if cleanup_needed:
                ids = _format_ids([f.task_id for f in cleanup_needed])
                message = f"{message} Manual cleanup required for task IDs: {ids}"
            logger.warning(
                "bulk_create_partially_failed",
                created=len(result.successful),
                failed=len(failures),
                cleanup_needed=len(cleanup_needed),
            )
        else:
            message = f"Successfully created {len(result.successful)} tasks"
            logger.info("bulk_create_completed", task_count=len(result.successful))

        return BulkCreateOutcome(
            created=result.successful,
            failures=failures,
            partial=bool(failures),
            message=message,
            metrics=result.metrics,
        )

    def create_single_task(
        self,
        project_id: int,
        task: TaskCreationData,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        """Create one task and attach its labels and assignees.

        When attaching fails the new task is deleted again; the raised
        TaskCreationError says whether that cleanup worked.
        """
        payload = task.to_payload(project_id)
        created = self._call(
            BreakerName.TASK_CREATE,
            lambda: self.api.create_task(project_id, payload),
            self.task_policy,
            cancel_event,
        )
        task_id = created.get("id")
        if not task_id or not (task.labels or task.assignees):
            return created

        try:
            self._attach_relations(task_id, task, cancel_event)
        except Exception as exc:
            raise self._rollback(task_id, exc, cancel_event) from exc

        try:
            return self._call(
                BreakerName.TASK_GET, lambda: self.api.get_task(task_id), self.task_policy, cancel_event
            )
        except Exception as exc:
            logger.warning("created_task_refetch_failed", task_id=task_id, error=str(exc))
            return created

    def _attach_relations(
        self,
        task_id: int,
        task: TaskCreationData,
        cancel_event: threading.Event | None,
    ) -> None:
        if task.labels:
            self._call(
                BreakerName.TASK_LABELS,
                lambda: self.api.add_labels(task_id, task.labels),
                self.relation_policy,
                cancel_event,
            )
        if task.assignees:
            try:
                self._call(
                    BreakerName.TASK_ASSIGNEES,
                    lambda: self.api.add_assignees(task_id, task.assignees),
                    self.relation_policy,
                    cancel_event,
                )
            except Exception as exc:
                if is_authentication_error(exc):
                    raise RelationAuthError(
                        "assignees",
                        task_id,
                        "Assignee operations may have authentication issues with certain "
                        "Vikunja API versions. The task was created but assignees could "
                        f"not be added. Task ID: {task_id}",
                    ) from exc
                raise

    def _rollback(
        self,
        task_id: int,
        primary: Exception,
        cancel_event: threading.Event | None,
    ) -> TaskCreationError:
        try:
            self._call(
                BreakerName.TASK_DELETE,
                lambda: self.api.delete_task(task_id),
                self.task_policy,
                cancel_event,
            )
        except Exception as rollback_exc:
            logger.error(
                "task_rollback_failed",
                task_id=task_id,
                error=str(primary),
                rollback_error=str(rollback_exc),
            )
            return TaskCreationError(
                primary, task_id, rollback_attempted=True, rollback_error=rollback_exc
            )
        logger.info("task_rolled_back", task_id=task_id, error=str(primary))
        return TaskCreationError(primary, task_id, rollback_attempted=True)

    @staticmethod
    def _create_failure(record: FailureRecord) -> CreateFailure:
        error = record.error
        title = getattr(record.original_item, "title", str(record.original_item))
        if isinstance(error, TaskCreationError):
            return CreateFailure(
                index=record.index,
                title=title,
                error=str(error.primary),
                task_id=error.task_id,
                rollback_attempted=error.rollback_attempted,
                rolled_back=error.rolled_back,
                rollback_error=str(error.rollback_error) if error.rollback_error else None,
            )
        return CreateFailure(index=record.index, title=title, error=record.error_message)
