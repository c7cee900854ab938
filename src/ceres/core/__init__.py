"""Core utilities shared across :mod:`ceres` modules.

Configuration loading, logging setup, and path resolution live here so the
sync engine and its collaborators stay free of bootstrap concerns.
"""

from __future__ import annotations

from .config import AppConfig, ConfigError, load_config
from .logging import configure_logging, get_logger
from .paths import CeresPaths, resolve_paths

__all__ = [
    "AppConfig",
    "CeresPaths",
    "ConfigError",
    "configure_logging",
    "get_logger",
    "load_config",
    "resolve_paths",
]
