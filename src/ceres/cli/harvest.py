"""``ceres harvest``: delta-sync one or more portals into the index."""

from __future__ import annotations

from pathlib import Path

import typer

from ceres.core.config import (
    AppConfig,
    ConfigError,
    PortalEntry,
    SyncSettings,
    load_portals_config,
)
from ceres.core.logging import Logger
from ceres.modules.ckan import CkanFetcher
from ceres.modules.db import SQLiteRecordStore
from ceres.modules.embeddings import (
    EmbeddingConfigurationError,
    ProviderRegistryError,
    create_gateway,
)
from ceres.sync import (
    BatchCoordinator,
    BatchReport,
    EmbeddingGateway,
    FailureKind,
    MigrationApplyError,
    PortalDescriptor,
    PortalFetcher,
    PortalSyncReport,
    RecordStore,
    RunStatus,
    SyncOrchestrator,
)

from .context import CeresCLIContext, fail, require_context

__all__ = ["harvest_command", "render_batch_report"]

_STATUS_COLORS = {
    RunStatus.SUCCESS: typer.colors.GREEN,
    RunStatus.PARTIAL_FAILURE: typer.colors.YELLOW,
    RunStatus.FAILED: typer.colors.RED,
}
_API_KEY_HINTS = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
}
_MAX_LISTED_FAILURES = 10


def _build_store(context: CeresCLIContext) -> RecordStore:
    return SQLiteRecordStore.open(context.database_path, logger=context.logger)


def _build_embedder(config: AppConfig, logger: Logger) -> EmbeddingGateway:
    return create_gateway(config.embedding, logger=logger)


def _build_fetcher(config: AppConfig, logger: Logger) -> PortalFetcher:
    return CkanFetcher(settings=config.http, logger=logger)


def _descriptor(entry: PortalEntry) -> PortalDescriptor:
    return PortalDescriptor(
        name=entry.name,
        url=entry.url,
        portal_type=entry.portal_type,
    )


def _resolve_portals(
    context: CeresCLIContext,
    *,
    portal_url: str | None,
    portal_name: str | None,
    config_path: Path | None,
) -> list[PortalDescriptor]:
    if portal_url:
        return [PortalDescriptor(name=portal_url, url=portal_url)]

    try:
        portals_config = load_portals_config(
            config_path,
            default_path=context.paths.portals_file,
            logger=context.logger,
        )
    except ConfigError as exc:
        fail(f"Portal configuration error: {exc}", error=exc)

    if portals_config is None:
        fail(
            "No portals.toml available. Pass a portal URL or create "
            f"{context.paths.portals_file}."
        )

    if portal_name:
        entry = portals_config.find_by_name(portal_name)
        if entry is None:
            names = ", ".join(p.name for p in portals_config.portals) or "none"
            fail(f"Portal {portal_name!r} not found. Available: {names}")
        if not entry.enabled:
            typer.secho(
                f"Portal {entry.name!r} is disabled; harvesting on request.",
                fg=typer.colors.YELLOW,
            )
        return [_descriptor(entry)]

    enabled = portals_config.enabled_portals()
    if not enabled:
        fail("No enabled portals found in portals.toml.")
    return [_descriptor(entry) for entry in enabled]


def _sync_settings(
    config: AppConfig,
    *,
    concurrency: int | None,
    timeout: float | None,
) -> SyncSettings:
    updates: dict[str, object] = {}
    if concurrency is not None:
        updates["concurrency"] = concurrency
    if timeout is not None:
        updates["portal_timeout"] = timeout
    if not updates:
        return config.sync
    return config.sync.model_copy(update=updates)


def _render_portal_report(report: PortalSyncReport) -> None:
    color = _STATUS_COLORS[report.status]
    typer.secho(f"Portal {report.portal}: {report.status}", fg=color, bold=True)
    typer.echo(
        f"  created: {report.created}  updated: {report.updated}  "
        f"unchanged: {report.unchanged}  failed: {report.failed}  "
        f"skipped: {report.skipped}"
    )
    typer.echo(f"  duration: {report.duration:.1f}s")
    if report.abort_reason is not None:
        typer.secho(f"  aborted: {report.abort_reason}", fg=typer.colors.RED)
    if report.error:
        typer.echo(f"  error: {report.error}")
    for failure in report.failures[:_MAX_LISTED_FAILURES]:
        typer.echo(f"  - {failure.original_id}: {failure.kind}")
    hidden = len(report.failures) - _MAX_LISTED_FAILURES
    if hidden > 0:
        typer.echo(f"  ... and {hidden} more failed records")


def render_batch_report(report: BatchReport) -> None:
    """Print every portal report followed by the batch totals."""

    for portal_report in report.portals:
        _render_portal_report(portal_report)

    if report.total_portals < 2:
        return
    color = _STATUS_COLORS[report.status]
    typer.secho(f"Batch: {report.status}", fg=color, bold=True)
    typer.echo(
        f"  portals: {report.total_portals} "
        f"({report.successful_count} completed, {report.failed_count} failed)"
    )
    typer.echo(
        f"  datasets: {report.total_datasets} "
        f"(created {report.created}, updated {report.updated}, "
        f"unchanged {report.unchanged}, failed {report.failed})"
    )
    typer.echo(f"  duration: {report.duration:.1f}s")


def _emit_hints(report: BatchReport, provider: str) -> None:
    reasons = {p.abort_reason for p in report.portals if p.abort_reason}
    if FailureKind.AUTHENTICATION in reasons:
        variable = _API_KEY_HINTS.get(provider, "the provider API key")
        typer.secho(
            f"Hint: the embedding provider rejected the API key. Check {variable}.",
            fg=typer.colors.YELLOW,
        )
    if FailureKind.TIMEOUT in reasons:
        typer.secho(
            "Hint: raise --timeout or sync.portal_timeout for large portals.",
            fg=typer.colors.YELLOW,
        )


def harvest_command(
    ctx: typer.Context,
    portal_url: str | None = typer.Argument(
        None,
        help="Harvest a single CKAN portal URL, ignoring portals.toml.",
    ),
    portal: str | None = typer.Option(
        None,
        "--portal",
        "-p",
        help="Harvest only the named portal from portals.toml.",
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to portals.toml (defaults to <home>/portals.toml).",
    ),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        min=1,
        help="Override sync.concurrency for this run.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.001,
        help="Per-portal wall-clock budget in seconds.",
    ),
) -> None:
    """Fetch portal listings and embed only new or changed datasets."""

    context = require_context(ctx)
    if portal_url and portal:
        raise typer.BadParameter(
            "Pass either a portal URL or --portal, not both.",
            param_hint="PORTAL_URL/--portal",
        )

    context.prepare_home()
    targets = _resolve_portals(
        context,
        portal_url=portal_url,
        portal_name=portal,
        config_path=config_path,
    )
    config = context.config
    logger = context.logger.bind(command="harvest")

    try:
        store = _build_store(context)
    except MigrationApplyError as exc:
        fail(f"Database migration failed: {exc}", error=exc)

    try:
        embedder = _build_embedder(config, logger)
    except (EmbeddingConfigurationError, ProviderRegistryError) as exc:
        fail(f"Embedding provider error: {exc}", error=exc)

    orchestrator = SyncOrchestrator(
        store=store,
        embedder=embedder,
        settings=_sync_settings(config, concurrency=concurrency, timeout=timeout),
        logger=logger.bind(component="sync"),
    )
    coordinator = BatchCoordinator(
        fetcher=_build_fetcher(config, logger),
        orchestrator=orchestrator,
        logger=logger.bind(component="batch"),
    )
    try:
        report = coordinator.run_batch(targets)
    finally:
        close = getattr(embedder, "close", None)
        if callable(close):
            close()

    render_batch_report(report)
    _emit_hints(report, config.embedding.provider)
    if report.status is not RunStatus.SUCCESS:
        raise typer.Exit(code=1)
