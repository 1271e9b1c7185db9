"""CLI entry point for bulk task operations."""

from __future__ import annotations

import click

from src.cli.commands import (
    breaker_status,
    bulk_create,
    bulk_delete,
    bulk_update,
)


@click.group()
def cli() -> None:
    """Resilient bulk operations for Vikunja tasks."""


cli.add_command(bulk_update)
cli.add_command(bulk_delete)
cli.add_command(bulk_create)
cli.add_command(breaker_status)
