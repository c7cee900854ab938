"""Database commands: ``stats``, ``list`` and ``migrate``."""

from __future__ import annotations

import typer

from ceres.modules.db import SQLiteRecordStore, apply_packaged_migrations
from ceres.sync import MigrationApplyError

from .context import CeresCLIContext, fail, require_context

__all__ = ["list_command", "migrate_command", "stats_command"]


def open_store(context: CeresCLIContext) -> SQLiteRecordStore:
    try:
        return SQLiteRecordStore.open(context.database_path, logger=context.logger)
    except MigrationApplyError as exc:
        fail(f"Database migration failed: {exc}", error=exc)


def stats_command(ctx: typer.Context) -> None:
    """Show how many datasets are indexed and when the index last changed."""

    context = require_context(ctx)
    if not context.database_path.exists():
        fail(
            f"No database at {context.database_path}. Run `ceres harvest` first."
        )

    stats = open_store(context).stats()
    last_update = (
        stats.last_update.strftime("%Y-%m-%d %H:%M:%S UTC")
        if stats.last_update
        else "never"
    )
    typer.secho("Index statistics", bold=True)
    typer.echo(f"  database: {context.database_path}")
    typer.echo(f"  datasets: {stats.total_datasets}")
    typer.echo(f"  with embeddings: {stats.datasets_with_embeddings}")
    if stats.datasets_without_embeddings:
        typer.secho(
            f"  pending embeddings: {stats.datasets_without_embeddings}",
            fg=typer.colors.YELLOW,
        )
    typer.echo(f"  portals: {stats.total_portals}")
    typer.echo(f"  last update: {last_update}")


def list_command(
    ctx: typer.Context,
    portal: str | None = typer.Option(
        None,
        "--portal",
        "-p",
        help="Only list datasets from this portal URL.",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        min=1,
        help="Maximum number of datasets to show.",
    ),
) -> None:
    """List stored datasets, newest first, including ones not yet embedded."""

    context = require_context(ctx)
    if not context.database_path.exists():
        fail(
            f"No database at {context.database_path}. Run `ceres harvest` first."
        )

    records = open_store(context).list_records(portal=portal, limit=limit)
    if not records:
        typer.echo("No datasets stored.")
        return
    for record in records:
        state = "indexed" if record.is_indexed else "pending"
        typer.echo(f"[{state}] {record.original_id}  {record.title}")
        typer.echo(f"    {record.url}")


def migrate_command(ctx: typer.Context) -> None:
    """Apply pending database migrations."""

    context = require_context(ctx)
    context.prepare_home()
    try:
        applied = apply_packaged_migrations(
            context.database_path,
            logger=context.logger,
        )
    except MigrationApplyError as exc:
        context.logger.error(
            "migrate-failed",
            migration=exc.migration_id,
            error=str(exc.cause),
        )
        fail(f"Migration {exc.migration_id} failed: {exc.cause}", error=exc)

    if not applied:
        typer.echo(f"Database up to date: {context.database_path}")
        return
    typer.secho("Migrations applied", fg=typer.colors.GREEN, bold=True)
    for migration_id in applied:
        typer.echo(f"  - {migration_id}")
