"""Shared state and helpers for ``ceres`` commands."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping, NoReturn

import typer

from ceres.core.config import (
    AppConfig,
    ConfigError,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    load_user_config,
)
from ceres.core.logging import Logger, configure_logging, get_logger
from ceres.core.paths import CeresPaths, resolve_paths

__all__ = [
    "CeresCLIContext",
    "build_cli_context",
    "fail",
    "require_context",
]


@dataclass(slots=True)
class CeresCLIContext:
    """Resolved paths, configuration and logger shared by every command."""

    paths: CeresPaths
    config: AppConfig
    logger: Logger

    @property
    def database_path(self) -> Path:
        return self.paths.database_path(self.config.db.filename)

    def prepare_home(self) -> Path | None:
        """Create the home layout and enable the JSON log file.

        Returns:
            The log file path.
        """

        self.paths.ensure_dirs()
        return configure_logging(
            level=self.config.log_level,
            logs_dir=self.paths.logs_dir,
        )


def fail(
    message: str,
    *,
    code: int = 1,
    error: BaseException | None = None,
) -> NoReturn:
    """Print ``message`` in red and exit with ``code``."""

    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code) from error


def build_cli_context(
    *,
    home: Path | None,
    log_level: str | None,
    environ: Mapping[str, str] | None = None,
) -> CeresCLIContext:
    """Resolve paths and layered configuration for one CLI invocation."""

    source = os.environ if environ is None else environ
    env_home = source.get("CERES_HOME")
    try:
        paths = resolve_paths(
            home_override=home,
            env_override=Path(env_home).expanduser() if env_home else None,
        )
    except ValueError as exc:
        fail(f"Home directory error: {exc}", error=exc)

    cli_overrides = {"log_level": log_level} if log_level else None
    try:
        config = load_config(
            defaults=load_packaged_defaults(),
            user_config=load_user_config(paths.config_file),
            env_config=env_config_from_environ(source),
            cli_overrides=cli_overrides,
        )
    except ConfigError as exc:
        fail(f"Configuration error: {exc}", error=exc)

    try:
        configure_logging(level=config.log_level)
    except ValueError as exc:
        fail(f"Configuration error: {exc}", error=exc)

    return CeresCLIContext(
        paths=paths,
        config=config,
        logger=get_logger("ceres.cli", component="cli"),
    )


def require_context(ctx: typer.Context) -> CeresCLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, CeresCLIContext):
        fail("Internal error: CLI context not initialized.")
    return context
