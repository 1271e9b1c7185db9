"""CLI command implementations for bulk task operations."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from src.core.errors import BulkOperationError
from src.models.config import Config
from src.services.bulk_reconciler import BulkReconciler
from src.services.circuit_breaker import BreakerName, CircuitBreakerRegistry
from src.services.vikunja_client import VikunjaClient
from src.utils.logger import configure_logging
from src.utils.retry import TASK_OPERATIONS_POLICY


def _get_config() -> Config:
    """Load configuration from .env file."""
    return Config()  # type: ignore[call-arg]


def _get_client(config: Config) -> VikunjaClient:
    return VikunjaClient(
        config.vikunja_url,
        config.vikunja_api_token,
        timeout=config.request_timeout_seconds,
    )


def _get_reconciler(config: Config, client: VikunjaClient) -> BulkReconciler:
    """Wire one registry and one reconciler for this process."""
    registry = CircuitBreakerRegistry(default_config=config.breaker_config())
    task_policy = TASK_OPERATIONS_POLICY.with_overrides(max_retries=config.max_retry_attempts)
    return BulkReconciler(client, registry, task_policy=task_policy)


def _parse_task_ids(raw: str) -> list[int]:
    """Parse a comma-separated ID list such as "1,2,3"."""
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        msg = f"Invalid task ID list: {raw}"
        raise click.BadParameter(msg) from None


def _parse_value(raw: str) -> Any:
    """Decode JSON scalars and arrays; anything else stays a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_summary(title: str, stats: dict[str, Any]) -> None:
    """Print a formatted summary of batch operation results."""
    click.echo(f"\n[SUCCESS] {title}")
    for key, value in stats.items():
        if key == "errors" and isinstance(value, list):
            if value:
                click.echo(f"  Errors ({len(value)}):")
                for error in value[:10]:
                    click.echo(f"    - {error}")
                if len(value) > 10:
                    click.echo(f"    ... and {len(value) - 10} more")
        else:
            click.echo(f"  {key}: {value}")


def _fail(error: Exception) -> None:
    click.echo(f"\n[ERROR] {error}", err=True)
    details = getattr(error, "details", [])
    for detail in details[:10]:
        click.echo(f"    - {detail}", err=True)
    raise SystemExit(1)


@click.command()
@click.option("--task-ids", required=True, help="Comma-separated task IDs")
@click.option(
    "--field",
    required=True,
    type=click.Choice(
        [
            "done",
            "priority",
            "due_date",
            "project_id",
            "assignees",
            "labels",
            "repeat_after",
            "repeat_mode",
        ]
    ),
    help="Field to set on every task",
)
@click.option("--value", required=True, help="New value (JSON for numbers, booleans and lists)")
@click.option(
    "--output-format",
    default="summary",
    type=click.Choice(["summary", "json"]),
    help="Output format",
)
def bulk_update(task_ids: str, field: str, value: str, output_format: str) -> None:
    """Set one field on many tasks."""
    config = _get_config()
    configure_logging(config.log_level)
    client = _get_client(config)
    reconciler = _get_reconciler(config, client)

    click.echo(f"[INFO] Updating {field} on tasks {task_ids}...")
    try:
        outcome = reconciler.bulk_update(
            {"task_ids": _parse_task_ids(task_ids), "field": field, "value": _parse_value(value)}
        )
    except (BulkOperationError, ValidationError) as exc:
        _fail(exc)
        return
    finally:
        client.close()

    if output_format == "json":
        click.echo(outcome.model_dump_json(indent=2, exclude={"tasks"}))
        return
    _print_summary(
        "Bulk update partially complete" if outcome.partial else "Bulk update complete",
        {
            "message": outcome.message,
            "updated": outcome.success_count,
            "failed": outcome.failed_count,
            "fetch_errors": outcome.fetch_errors,
            "used_fallback": outcome.used_fallback,
            "errors": outcome.failure_messages,
        },
    )


@click.command()
@click.option("--task-ids", required=True, help="Comma-separated task IDs")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
def bulk_delete(task_ids: str, yes: bool) -> None:
    """Delete many tasks."""
    ids = _parse_task_ids(task_ids)
    if not yes:
        click.confirm(f"Delete {len(ids)} tasks?", abort=True)

    config = _get_config()
    configure_logging(config.log_level)
    client = _get_client(config)
    reconciler = _get_reconciler(config, client)

    click.echo(f"[INFO] Deleting {len(ids)} tasks...")
    try:
        outcome = reconciler.bulk_delete({"task_ids": ids})
    except (BulkOperationError, ValidationError) as exc:
        _fail(exc)
        return
    finally:
        client.close()

    _print_summary(
        "Bulk delete partially complete" if outcome.partial else "Bulk delete complete",
        {
            "message": outcome.message,
            "deleted": len(outcome.deleted_ids),
            "failed_ids": outcome.failed_ids,
            "errors": outcome.failure_messages,
        },
    )


@click.command()
@click.option("--project-id", required=True, type=int, help="Project to create tasks in")
@click.option(
    "--file",
    "tasks_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file holding an array of task objects",
)
def bulk_create(project_id: int, tasks_file: Path) -> None:
    """Create many tasks from a JSON file."""
    config = _get_config()
    configure_logging(config.log_level)

    try:
        tasks = json.loads(tasks_file.read_text(encoding="utf-8"))
        if not isinstance(tasks, list):
            msg = f"{tasks_file} must hold a JSON array of task objects"
            raise TypeError(msg)
    except (json.JSONDecodeError, TypeError) as exc:
        _fail(exc)
        return

    client = _get_client(config)
    reconciler = _get_reconciler(config, client)

    click.echo(f"[INFO] Creating {len(tasks)} tasks in project {project_id}...")
    try:
        outcome = reconciler.bulk_create({"project_id": project_id, "tasks": tasks})
    except (BulkOperationError, ValidationError) as exc:
        _fail(exc)
        return
    finally:
        client.close()

    _print_summary(
        "Bulk create partially complete" if outcome.partial else "Bulk create complete",
        {
            "message": outcome.message,
            "created": [task.get("id") for task in outcome.created],
            "errors": [f"#{f.index} {f.title}: {f.error}" for f in outcome.failures],
        },
    )


@click.command()
@click.option("--probe-task", default=None, type=int, help="Fetch this task through the breakers first")
def breaker_status(probe_task: int | None) -> None:
    """Show circuit breaker thresholds and state."""
    config = _get_config()
    configure_logging(config.log_level)
    breaker_config = config.breaker_config()
    registry = CircuitBreakerRegistry(default_config=breaker_config)

    click.echo(
        f"[INFO] Breakers open above {breaker_config.error_threshold_percentage:.0f}% failures "
        f"over at least {breaker_config.volume_threshold} calls, "
        f"reset after {breaker_config.reset_timeout_seconds:.0f}s"
    )

    if probe_task is not None:
        client = _get_client(config)
        try:
            registry.execute(BreakerName.TASK_GET, lambda: client.get_task(probe_task))
            click.echo(f"[INFO] Task {probe_task} reachable")
        except Exception as exc:
            click.echo(f"[WARNING] Probe failed: {exc}")
        finally:
            client.close()

    for name in BreakerName:
        registry.get(name)
    for name, snap in registry.get_all_stats().items():
        click.echo(
            f"  {name}: {snap.state.value} "
            f"({snap.window_failures}/{snap.window_requests} failed in window)"
        )
