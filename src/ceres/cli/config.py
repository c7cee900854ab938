"""``ceres config`` commands."""

from __future__ import annotations

import typer

from ceres.core.config import (
    DEFAULTS_RESOURCE_NAME,
    ConfigError,
    load_portals_config,
    render_user_config,
)

from .context import fail, require_context

__all__ = ["create_config_app"]


def create_config_app() -> typer.Typer:
    app = typer.Typer(
        name="config",
        help="Inspect and seed ceres configuration files.",
        no_args_is_help=True,
    )

    @app.command("init", help="Write ceres.toml and a portals.toml template.")
    def init_command(
        ctx: typer.Context,
        force: bool = typer.Option(
            False,
            "--force",
            "-f",
            help="Overwrite an existing ceres.toml.",
        ),
    ) -> None:
        context = require_context(ctx)
        paths = context.paths
        paths.ensure_dirs()

        config_written = False
        if paths.config_file.exists() and not force:
            typer.secho(
                f"Keeping existing {paths.config_file} (use --force to overwrite).",
                fg=typer.colors.YELLOW,
            )
        else:
            paths.config_file.write_text(
                render_user_config(context.config),
                encoding="utf-8",
            )
            config_written = True

        try:
            portals = load_portals_config(
                None,
                default_path=paths.portals_file,
                logger=context.logger,
            )
        except ConfigError as exc:
            fail(f"Portal configuration error: {exc}", error=exc)

        context.logger.info(
            "config-init",
            home=str(paths.home),
            config_written=config_written,
            portals=0 if portals is None else len(portals.portals),
        )
        typer.secho("Configuration ready", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  home: {paths.home}")
        typer.echo(f"  config: {paths.config_file}")
        typer.echo(f"  portals: {paths.portals_file}")
        typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
        typer.echo(f"  log level: {context.config.log_level}")

    @app.command("show", help="Print the effective configuration as TOML.")
    def show_command(ctx: typer.Context) -> None:
        context = require_context(ctx)
        typer.echo(render_user_config(context.config), nl=False)

    return app
