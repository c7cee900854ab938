"""Top-level package for :mod:`ceres`.

Ceres harvests dataset metadata from open-data portals, embeds it for
semantic search, and keeps the index in sync incrementally.

Example:
    >>> from ceres import __version__
    >>> __version__.split(".")[0]
    '0'
"""

from importlib import metadata

try:
    __version__ = metadata.version("ceres")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
