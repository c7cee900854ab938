"""Configuration models and loaders for :mod:`ceres`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
import os
from pathlib import Path
from typing import Any, Literal, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, ValidationError, field_validator

from ceres.core.logging import Logger, get_logger
from ceres.resources import get_resource

__all__ = [
    "AppConfig",
    "ConfigError",
    "DbSettings",
    "EmbeddingSettings",
    "HttpSettings",
    "PortalEntry",
    "PortalsConfig",
    "SyncSettings",
    "DEFAULTS_RESOURCE_NAME",
    "PORTALS_TEMPLATE_RESOURCE_NAME",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_portals_config",
    "load_user_config",
    "render_user_config",
]

DEFAULTS_RESOURCE_NAME = "ceres.defaults.toml"
PORTALS_TEMPLATE_RESOURCE_NAME = "portals.template.toml"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class SyncSettings(BaseModel):
    """Tuning knobs for the delta sync engine."""

    concurrency: int = Field(
        default=10,
        ge=1,
        description="Maximum simultaneous embed+upsert operations per portal.",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Embedding attempts per record, including the first one.",
    )
    retry_base_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    retry_max_delay: float = Field(
        default=8.0,
        ge=0.0,
        description="Upper bound in seconds applied to a single backoff.",
    )
    retry_jitter_ratio: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Relative jitter applied to each backoff delay.",
    )
    portal_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Optional wall-clock budget in seconds per portal sync.",
    )
    fingerprint_metadata_keys: list[str] = Field(
        default_factory=list,
        description=(
            "Raw metadata keys folded into the content fingerprint so a "
            "change to them triggers re-embedding."
        ),
    )

    model_config = {"frozen": True}


class EmbeddingSettings(BaseModel):
    """Embedding provider selection."""

    provider: Literal["gemini", "openai"] = Field(
        default="gemini",
        description="Embedding provider key registered in the registry.",
    )
    model: str | None = Field(
        default=None,
        description="Provider model; ``None`` selects the provider default.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )
    dimension: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Expected vector length; ``None`` uses the provider default "
            "for known models and skips the check otherwise."
        ),
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("provider", mode="before")
    @classmethod
    def _lower_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class HttpSettings(BaseModel):
    """Transport settings for portal clients."""

    timeout: float = Field(default=30.0, gt=0.0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0.0)
    user_agent: str = Field(default="Ceres/0.3 (semantic-search-bot)")

    model_config = {"frozen": True, "str_strip_whitespace": True}


class DbSettings(BaseModel):
    """Location of the SQLite record store."""

    filename: str = Field(
        default="ceres.sqlite3",
        description="Database file, relative to the data directory.",
    )

    model_config = {"frozen": True, "str_strip_whitespace": True}


class AppConfig(BaseModel):
    """Root configuration for the :mod:`ceres` application."""

    log_level: str = Field(default="INFO")
    sync: SyncSettings = Field(default_factory=SyncSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    db: DbSettings = Field(default_factory=DbSettings)

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


# ---------------------------------------------------------------------------
# Portals (portals.toml)
# ---------------------------------------------------------------------------


class PortalEntry(BaseModel):
    """A single portal definition from ``portals.toml``."""

    name: str
    url: str
    portal_type: str = Field(default="ckan", alias="type")
    enabled: bool = True
    description: str | None = None

    model_config = {
        "frozen": True,
        "populate_by_name": True,
        "str_strip_whitespace": True,
    }

    @field_validator("name", "url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("portal name and url cannot be blank")
        return value


class PortalsConfig(BaseModel):
    """Root of ``portals.toml``."""

    portals: list[PortalEntry] = Field(default_factory=list)

    def enabled_portals(self) -> list[PortalEntry]:
        """Return portals that take part in batch harvesting.

        Example:
            >>> config = PortalsConfig(portals=[
            ...     PortalEntry(name="a", url="https://a"),
            ...     PortalEntry(name="b", url="https://b", enabled=False),
            ... ])
            >>> [portal.name for portal in config.enabled_portals()]
            ['a']
        """

        return [portal for portal in self.portals if portal.enabled]

    def find_by_name(self, name: str) -> PortalEntry | None:
        """Return the portal named ``name`` (case-insensitive)."""

        wanted = name.strip().casefold()
        for portal in self.portals:
            if portal.name.casefold() == wanted:
                return portal
        return None


def _read_portals_template() -> str:
    resource = get_resource(PORTALS_TEMPLATE_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_portals_config(
    path: Path | None,
    *,
    default_path: Path,
    logger: Logger | None = None,
) -> PortalsConfig | None:
    """Load ``portals.toml``.

    When ``path`` is ``None`` the ``default_path`` is used and a template
    file is written there if none exists yet. An explicit ``path`` that does
    not exist is an error.

    Returns:
        The parsed configuration, or ``None`` when the default file could
        not be created.

    Raises:
        ConfigError: If the file is missing (explicit path) or invalid.
    """

    log = logger or get_logger(__name__, component="config")
    using_default = path is None
    config_path = default_path if path is None else path

    if not config_path.exists():
        if not using_default:
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(_read_portals_template(), encoding="utf-8")
        except OSError as exc:
            log.warning(
                "portals-template-create-failed",
                path=str(config_path),
                error=str(exc),
            )
            return None
        log.info("portals-template-created", path=str(config_path))

    try:
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(
            f"Failed to read config file '{config_path}': {exc}"
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in '{config_path}': {exc}") from exc

    try:
        return PortalsConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid portal configuration in '{config_path}': {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Application config layering
# ---------------------------------------------------------------------------


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["sync"]["concurrency"]
        10
    """

    text = get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")
    return tomllib.loads(text)


def load_user_config(path: Path) -> dict[str, Any]:
    """Read a user ``ceres.toml``; a missing file yields an empty layer."""

    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in '{path}': {exc}") from exc


_ENV_KEYS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("CERES_LOG_LEVEL", ("log_level",)),
    ("CERES_SYNC_CONCURRENCY", ("sync", "concurrency")),
    ("CERES_SYNC_MAX_ATTEMPTS", ("sync", "max_attempts")),
    ("CERES_SYNC_PORTAL_TIMEOUT", ("sync", "portal_timeout")),
    ("CERES_EMBEDDING_PROVIDER", ("embedding", "provider")),
    ("CERES_EMBEDDING_MODEL", ("embedding", "model")),
    ("CERES_DB_FILENAME", ("db", "filename")),
)


def env_config_from_environ(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Translate ``CERES_*`` environment variables into a config layer.

    Values stay strings; pydantic coerces them during validation.

    Example:
        >>> env_config_from_environ({"CERES_SYNC_CONCURRENCY": "4"})
        {'sync': {'concurrency': '4'}}
    """

    source = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    for variable, key_path in _ENV_KEYS:
        value = source.get(variable)
        if value is None or not value.strip():
            continue
        target = layer
        for key in key_path[:-1]:
            target = target.setdefault(key, {})
        target[key_path[-1]] = value.strip()
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Precedence: CLI flags > environment > ``ceres.toml`` > packaged defaults.

    Raises:
        ConfigError: If the merged configuration fails validation.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    try:
        return AppConfig(**stack)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def render_user_config(config: AppConfig) -> str:
    """Render a commented ``ceres.toml`` reflecting ``config``."""

    document = tomlkit.document()
    document.add(tomlkit.comment("Generated by ceres config init"))
    document.add(
        tomlkit.comment("Precedence: CLI flags > env vars > ceres.toml > defaults")
    )
    document.add(tomlkit.comment("Environment overrides:"))
    for variable, _ in _ENV_KEYS:
        document.add(tomlkit.comment(f"  {variable}"))
    document.add(tomlkit.nl())

    document["log_level"] = config.log_level

    for name, section in (
        ("sync", config.sync),
        ("embedding", config.embedding),
        ("http", config.http),
        ("db", config.db),
    ):
        table = tomlkit.table()
        for key, value in section.model_dump(mode="python").items():
            if value is None:
                continue
            table[key] = value
        document[name] = table

    return tomlkit.dumps(document)
