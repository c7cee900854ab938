"""Google Gemini embeddings over the Generative Language REST API."""

from __future__ import annotations

import os
from typing import Any, Mapping

import httpx

from ceres.core.logging import Logger
from ceres.sync.errors import (
    AuthenticationFailure,
    EmbeddingProviderError,
    NetworkFailure,
    QuotaExceededFailure,
    RateLimitFailure,
    ServerFailure,
    UnclassifiedProviderFailure,
)
from ceres.sync.models import EmbeddingVector

from . import EmbeddingConfigurationError, GatewayInitContext, to_vector

__all__ = [
    "DEFAULT_GEMINI_MODEL",
    "GeminiEmbeddingGateway",
    "gemini_gateway_factory",
]

PROVIDER = "gemini"
DEFAULT_GEMINI_MODEL = "text-embedding-004"
API_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
API_KEY_ENV = "GEMINI_API_KEY"

_KNOWN_DIMENSIONS: Mapping[str, int] = {
    "text-embedding-004": 768,
    "embedding-001": 768,
}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, Mapping):
        detail = payload.get("error")
        if isinstance(detail, Mapping):
            message = detail.get("message")
            if isinstance(message, str) and message:
                return message
    return f"HTTP {response.status_code}"


class GeminiEmbeddingGateway:
    """Embed one text per request with ``models/<model>:embedContent``.

    The API key travels in the ``x-goog-api-key`` header rather than the
    query string so it never appears in transport logs.
    """

    def __init__(
        self,
        *,
        api_key: str,
        logger: Logger,
        model: str = DEFAULT_GEMINI_MODEL,
        timeout: float = 30.0,
        dimension: int | None = None,
        client: httpx.Client | None = None,
        base_url: str = API_BASE_URL,
    ) -> None:
        if not api_key.strip():
            raise EmbeddingConfigurationError("Gemini API key cannot be blank.")
        self.logger = logger
        self._api_key = api_key.strip()
        self._model = model
        self._dimension = (
            dimension if dimension is not None else _KNOWN_DIMENSIONS.get(model)
        )
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def provider(self) -> str:
        return PROVIDER

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def close(self) -> None:
        self._client.close()

    def embed(self, text: str) -> EmbeddingVector:
        sanitized = text.replace("\n", " ")
        body = {
            "model": f"models/{self._model}",
            "content": {"parts": [{"text": sanitized}]},
        }
        url = f"{self._base_url}/models/{self._model}:embedContent"
        try:
            response = self._client.post(
                url,
                json=body,
                headers={"x-goog-api-key": self._api_key},
            )
        except httpx.TransportError as exc:
            raise NetworkFailure(
                f"Gemini request failed: {exc.__class__.__name__}",
                provider=PROVIDER,
            ) from exc

        if response.status_code != httpx.codes.OK:
            raise self._translate_status(response)

        try:
            payload: Any = response.json()
            values = payload["embedding"]["values"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UnclassifiedProviderFailure(
                f"Failed to parse Gemini response: {exc}",
                provider=PROVIDER,
                status_code=response.status_code,
            ) from exc

        return to_vector(
            values,
            provider=PROVIDER,
            expected_dimension=self._dimension,
        )

    @staticmethod
    def _translate_status(response: httpx.Response) -> EmbeddingProviderError:
        status = response.status_code
        message = _error_message(response)
        request_id = response.headers.get("x-request-id")
        lowered = message.casefold()

        if status in (401, 403) or "api key" in lowered:
            error_type: type[EmbeddingProviderError] = AuthenticationFailure
        elif status == 429 and "quota" in lowered:
            error_type = QuotaExceededFailure
        elif status == 429:
            error_type = RateLimitFailure
        elif status >= 500:
            error_type = ServerFailure
        else:
            error_type = UnclassifiedProviderFailure
        return error_type(
            message,
            provider=PROVIDER,
            status_code=status,
            request_id=request_id,
        )


def gemini_gateway_factory(context: GatewayInitContext) -> GeminiEmbeddingGateway:
    """Factory registered with the provider registry."""

    environ = context.environ if context.environ is not None else os.environ
    api_key = environ.get(API_KEY_ENV, "")
    if not api_key.strip():
        raise EmbeddingConfigurationError(
            f"{API_KEY_ENV} must be set to use the Gemini provider."
        )
    settings = context.settings
    return GeminiEmbeddingGateway(
        api_key=api_key,
        logger=context.logger,
        model=settings.model or DEFAULT_GEMINI_MODEL,
        timeout=settings.timeout,
        dimension=settings.dimension,
    )
