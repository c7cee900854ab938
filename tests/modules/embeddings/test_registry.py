from __future__ import annotations

import pytest

from ceres.core.config import EmbeddingSettings
from ceres.core.logging import get_logger
from ceres.modules import embeddings
from ceres.modules.embeddings import (
    EmbeddingConfigurationError,
    ProviderNotRegisteredError,
    ProviderRegistry,
    ProviderRegistryError,
    create_default_provider_registry,
    create_gateway,
    to_vector,
)
from ceres.sync import EmbeddingGateway, UnclassifiedProviderFailure


class _StaticGateway:
    provider = "static"

    def __init__(self, context) -> None:
        self.context = context

    def embed(self, text: str):
        return (1.0,)


def test_registry_normalizes_keys_and_rejects_duplicates() -> None:
    registry = ProviderRegistry()
    registry.register(" Static ", _StaticGateway)

    assert registry.get_factory("STATIC") is _StaticGateway
    with pytest.raises(ProviderRegistryError):
        registry.register("static", _StaticGateway)

    registry.unregister("static")
    with pytest.raises(ProviderNotRegisteredError):
        registry.get_factory("static")


def test_registry_rejects_blank_key() -> None:
    with pytest.raises(ValueError):
        ProviderRegistry().register("  ", _StaticGateway)


def test_registry_create_passes_context() -> None:
    registry = ProviderRegistry({"static": _StaticGateway})
    settings = EmbeddingSettings()

    gateway = registry.create(
        "static",
        logger=get_logger(__name__),
        settings=settings,
        environ={"A": "1"},
    )

    assert isinstance(gateway, EmbeddingGateway)
    assert gateway.context.settings is settings
    assert dict(gateway.context.environ) == {"A": "1"}


def test_snapshot_is_read_only() -> None:
    registry = ProviderRegistry({"static": _StaticGateway})
    snapshot = registry.snapshot()

    with pytest.raises(TypeError):
        snapshot["other"] = _StaticGateway  # type: ignore[index]


def test_default_registry_contains_builtin_providers() -> None:
    registry = create_default_provider_registry()

    assert set(registry.snapshot()) == {"gemini", "openai"}


def test_create_gateway_uses_selected_provider() -> None:
    gateway = create_gateway(
        EmbeddingSettings(provider="openai"),
        environ={"OPENAI_API_KEY": "sk-test"},
    )

    assert gateway.provider == "openai"


def test_create_gateway_without_key_fails_cleanly() -> None:
    with pytest.raises(EmbeddingConfigurationError):
        create_gateway(EmbeddingSettings(provider="gemini"), environ={})


def test_lazy_gateway_exports() -> None:
    assert embeddings.GeminiEmbeddingGateway.__name__ == "GeminiEmbeddingGateway"
    assert embeddings.OpenAIEmbeddingGateway.__name__ == "OpenAIEmbeddingGateway"
    with pytest.raises(AttributeError):
        embeddings.DoesNotExist  # noqa: B018


def test_to_vector_validates_payload() -> None:
    assert to_vector([1, "2.5"], provider="x", expected_dimension=2) == (1.0, 2.5)
    with pytest.raises(UnclassifiedProviderFailure, match="Non-numeric"):
        to_vector(["abc"], provider="x", expected_dimension=None)
    with pytest.raises(UnclassifiedProviderFailure, match="empty"):
        to_vector([], provider="x", expected_dimension=None)
