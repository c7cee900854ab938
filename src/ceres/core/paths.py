"""Filesystem locations used by :mod:`ceres`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "CeresPaths",
    "resolve_paths",
]

CONFIG_FILENAME = "ceres.toml"
PORTALS_FILENAME = "portals.toml"


@dataclass(frozen=True, slots=True)
class CeresPaths:
    """Resolved locations for a ceres home directory.

    Example:
        >>> from pathlib import Path
        >>> paths = CeresPaths.under(Path("/tmp/ceres"))
        >>> paths.portals_file.name
        'portals.toml'
    """

    home: Path
    config_file: Path
    portals_file: Path
    logs_dir: Path
    data_dir: Path

    @classmethod
    def under(cls, home: Path) -> "CeresPaths":
        return cls(
            home=home,
            config_file=home / CONFIG_FILENAME,
            portals_file=home / PORTALS_FILENAME,
            logs_dir=home / "logs",
            data_dir=home / "data",
        )

    def iter_dirs(self) -> Iterable[Path]:
        yield from (self.home, self.logs_dir, self.data_dir)

    def ensure_dirs(self) -> None:
        """Create every managed directory if missing."""

        for directory in self.iter_dirs():
            directory.mkdir(parents=True, exist_ok=True)

    def database_path(self, filename: str) -> Path:
        """Return the SQLite database path for ``filename``.

        Absolute filenames are returned untouched.
        """

        candidate = Path(filename).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.data_dir / candidate


def _default_home() -> Path:
    return Path.home() / ".config" / "ceres"


def resolve_paths(
    *,
    home_override: Path | None = None,
    env_override: Path | None = None,
) -> CeresPaths:
    """Resolve the ceres home directory honouring overrides.

    Precedence: CLI flag > ``CERES_HOME`` > ``~/.config/ceres``.

    Raises:
        ValueError: If the resolved home points to a regular file.
    """

    base = Path(home_override or env_override or _default_home()).expanduser()
    if not base.is_absolute():
        base = Path.cwd() / base
    home = base.resolve(strict=False)

    if home.exists() and home.is_file():
        raise ValueError(f"Ceres home must be a directory: {home}")

    return CeresPaths.under(home)
