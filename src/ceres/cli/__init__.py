"""Command-line interface for :mod:`ceres`.

Example:
    >>> import typer
    >>> from ceres.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

from pathlib import Path

import typer

from .config import create_config_app
from .context import build_cli_context
from .db import list_command, migrate_command, stats_command
from .export import export_command
from .harvest import harvest_command

_app_help = (
    "Harvest open-data portals and keep a semantic index in sync."
    "\n\n"
    "Only new or changed datasets are re-embedded on each run."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``ceres`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
    )

    @app.callback()
    def main_callback(
        ctx: typer.Context,
        home: Path | None = typer.Option(
            None,
            "--home",
            help="Override the home directory (defaults to CERES_HOME or ~/.config/ceres).",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        ctx.obj = build_cli_context(home=home, log_level=log_level)

    app.command("harvest")(harvest_command)
    app.command("stats")(stats_command)
    app.command("list")(list_command)
    app.command("export")(export_command)
    app.command("migrate")(migrate_command)
    app.add_typer(create_config_app(), name="config")
    return app


__all__ = ["create_app"]
