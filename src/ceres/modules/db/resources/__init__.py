"""Bundled resources for the database module."""

from __future__ import annotations

import importlib.resources as _resources
from pathlib import Path

__all__ = ["MIGRATIONS_DIR", "resource_path"]

MIGRATIONS_DIR = "migrations"


def resource_path(relative: str) -> Path:
    """Return a filesystem path for a packaged resource."""

    return Path(_resources.files(__name__).joinpath(relative))
