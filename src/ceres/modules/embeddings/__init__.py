"""Embedding gateways and the registry that builds them from settings."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Mapping, Sequence

from ceres.core.config import EmbeddingSettings
from ceres.core.logging import Logger, get_logger
from ceres.sync.errors import UnclassifiedProviderFailure
from ceres.sync.gateways import EmbeddingGateway
from ceres.sync.models import EmbeddingVector

__all__ = [
    "EmbeddingConfigurationError",
    "GatewayFactory",
    "GatewayInitContext",
    "GeminiEmbeddingGateway",
    "OpenAIEmbeddingGateway",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "ProviderRegistryError",
    "create_default_provider_registry",
    "create_gateway",
    "register_builtin_providers",
    "to_vector",
]


class EmbeddingConfigurationError(RuntimeError):
    """Raised when a gateway cannot be built, e.g. a missing API key."""


def to_vector(
    values: Sequence[object],
    *,
    provider: str,
    expected_dimension: int | None,
) -> EmbeddingVector:
    """Coerce a provider payload into a vector, checking its length.

    Raises:
        UnclassifiedProviderFailure: If the payload is not numeric or its
            length differs from ``expected_dimension``.
    """

    try:
        vector = tuple(float(value) for value in values)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise UnclassifiedProviderFailure(
            f"Non-numeric embedding payload: {exc}",
            provider=provider,
        ) from exc
    if not vector:
        raise UnclassifiedProviderFailure(
            "Provider returned an empty embedding.",
            provider=provider,
        )
    if expected_dimension is not None and len(vector) != expected_dimension:
        raise UnclassifiedProviderFailure(
            (
                "Embedding dimension mismatch: expected "
                f"{expected_dimension}, got {len(vector)}."
            ),
            provider=provider,
        )
    return vector


@dataclass(frozen=True, slots=True)
class GatewayInitContext:
    """Construction context supplied to gateway factories."""

    logger: Logger
    settings: EmbeddingSettings
    environ: Mapping[str, str] | None = None

    def __post_init__(self) -> None:
        if self.environ is not None:
            object.__setattr__(self, "environ", MappingProxyType(dict(self.environ)))


GatewayFactory = Callable[[GatewayInitContext], EmbeddingGateway]
"""Factory callable responsible for instantiating gateways."""


class ProviderRegistryError(RuntimeError):
    """Base error type raised when interacting with the provider registry."""


class ProviderNotRegisteredError(ProviderRegistryError):
    """Raised when a provider lookup fails for the requested key."""


class ProviderRegistry:
    """Mutable registry mapping provider keys to gateway factories."""

    def __init__(
        self,
        factories: Mapping[str, GatewayFactory] | None = None,
    ) -> None:
        self._factories: dict[str, GatewayFactory] = {}
        if factories:
            for key, factory in factories.items():
                self.register(key, factory)

    @staticmethod
    def _normalize_key(key: str) -> str:
        normalized = key.strip().lower()
        if not normalized:
            raise ValueError("provider key cannot be empty")
        return normalized

    def register(self, key: str, factory: GatewayFactory) -> None:
        """Register ``factory`` under ``key``; errors if key already present."""

        normalized = self._normalize_key(key)
        if normalized in self._factories:
            raise ProviderRegistryError(
                f"Provider {normalized!r} already registered",
            )
        self._factories[normalized] = factory

    def unregister(self, key: str) -> None:
        normalized = self._normalize_key(key)
        self._factories.pop(normalized, None)

    def get_factory(self, key: str) -> GatewayFactory:
        """Return the factory registered for ``key`` or raise."""

        normalized = self._normalize_key(key)
        try:
            return self._factories[normalized]
        except KeyError as exc:
            raise ProviderNotRegisteredError(
                f"No provider registered under key {normalized!r}",
            ) from exc

    def create(
        self,
        key: str,
        *,
        logger: Logger,
        settings: EmbeddingSettings,
        environ: Mapping[str, str] | None = None,
    ) -> EmbeddingGateway:
        """Instantiate the gateway registered under ``key``."""

        factory = self.get_factory(key)
        context = GatewayInitContext(
            logger=logger,
            settings=settings,
            environ=environ,
        )
        return factory(context)

    def snapshot(self) -> Mapping[str, GatewayFactory]:
        """Return an immutable view of registered gateway factories."""

        return MappingProxyType(dict(self._factories))


if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from .gemini import GeminiEmbeddingGateway
    from .openai import OpenAIEmbeddingGateway


def __getattr__(name: str) -> object:
    if name == "GeminiEmbeddingGateway":
        from .gemini import GeminiEmbeddingGateway

        return GeminiEmbeddingGateway
    if name == "OpenAIEmbeddingGateway":
        from .openai import OpenAIEmbeddingGateway

        return OpenAIEmbeddingGateway

    message = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(message)


def __dir__() -> list[str]:
    return sorted({*globals(), *__all__})


def _load_gemini_factory() -> GatewayFactory:
    from .gemini import gemini_gateway_factory

    return gemini_gateway_factory


def _load_openai_factory() -> GatewayFactory:
    from .openai import openai_gateway_factory

    return openai_gateway_factory


def register_builtin_providers(registry: ProviderRegistry) -> ProviderRegistry:
    """Register the built-in gemini and openai gateways on ``registry``."""

    registered = registry.snapshot()
    if "gemini" not in registered:
        registry.register("gemini", _load_gemini_factory())
    if "openai" not in registered:
        registry.register("openai", _load_openai_factory())
    return registry


def create_default_provider_registry() -> ProviderRegistry:
    """Return a provider registry populated with built-in providers."""

    return register_builtin_providers(ProviderRegistry())


def create_gateway(
    settings: EmbeddingSettings,
    *,
    logger: Logger | None = None,
    registry: ProviderRegistry | None = None,
    environ: Mapping[str, str] | None = None,
) -> EmbeddingGateway:
    """Build the gateway selected by ``settings.provider``.

    Raises:
        ProviderNotRegisteredError: If no factory matches the provider key.
        EmbeddingConfigurationError: If the gateway lacks credentials.
    """

    active = registry or create_default_provider_registry()
    return active.create(
        settings.provider,
        logger=logger or get_logger(__name__, component="embeddings"),
        settings=settings,
        environ=environ,
    )
