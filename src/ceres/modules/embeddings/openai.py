"""OpenAI embeddings gateway."""

from __future__ import annotations

import os
from typing import Mapping

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    AuthenticationError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

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
    "DEFAULT_OPENAI_MODEL",
    "OpenAIEmbeddingGateway",
    "openai_gateway_factory",
]

PROVIDER = "openai"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
API_KEY_ENV = "OPENAI_API_KEY"
_QUOTA_CODE = "insufficient_quota"

_KNOWN_DIMENSIONS: Mapping[str, int] = {
    "text-embedding-3-small": 1_536,
    "text-embedding-3-large": 3_072,
    "text-embedding-ada-002": 1_536,
}


class OpenAIEmbeddingGateway:
    """Embed texts via the OpenAI embeddings API.

    The SDK's own retry loop is disabled: retries belong to the sync
    engine's policy, which needs to see every failure to classify it.
    """

    def __init__(
        self,
        *,
        logger: Logger,
        model: str = DEFAULT_OPENAI_MODEL,
        timeout: float = 30.0,
        dimension: int | None = None,
        client: OpenAI | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.logger = logger
        self._model = model
        self._dimension = (
            dimension if dimension is not None else _KNOWN_DIMENSIONS.get(model)
        )
        self._client = client or self._build_client(
            timeout=timeout,
            environ=os.environ if environ is None else environ,
        )

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
        normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
        try:
            response = self._client.embeddings.create(
                model=self._model,
                input=[normalized],
            )
        except Exception as exc:
            raise self._translate_exception(exc) from exc

        if not response.data:
            raise UnclassifiedProviderFailure(
                "OpenAI returned no embeddings.",
                provider=PROVIDER,
            )
        return to_vector(
            response.data[0].embedding,
            provider=PROVIDER,
            expected_dimension=self._dimension,
        )

    @staticmethod
    def _build_client(*, timeout: float, environ: Mapping[str, str]) -> OpenAI:
        api_key = environ.get(API_KEY_ENV)
        if not api_key:
            raise EmbeddingConfigurationError(
                f"{API_KEY_ENV} must be set to use the OpenAI provider."
            )
        return OpenAI(
            api_key=api_key,
            base_url=environ.get("OPENAI_BASE_URL"),
            organization=environ.get("OPENAI_ORG_ID"),
            timeout=timeout,
            max_retries=0,
        )

    @staticmethod
    def _extract_context(exc: Exception) -> tuple[int | None, str | None]:
        status: int | None = None
        request_id: str | None = None
        if isinstance(exc, APIStatusError):
            status = exc.status_code
            request_id = exc.request_id
        return status, request_id

    @classmethod
    def _translate_exception(cls, exc: Exception) -> EmbeddingProviderError:
        status, request_id = cls._extract_context(exc)
        message = str(exc) or exc.__class__.__name__

        if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
            error_type: type[EmbeddingProviderError] = AuthenticationFailure
        elif isinstance(exc, RateLimitError):
            if getattr(exc, "code", None) == _QUOTA_CODE:
                error_type = QuotaExceededFailure
            else:
                error_type = RateLimitFailure
        elif isinstance(exc, (APIConnectionError, httpx.TransportError)):
            error_type = NetworkFailure
        elif isinstance(exc, APIStatusError) and status is not None and status >= 500:
            error_type = ServerFailure
        else:
            error_type = UnclassifiedProviderFailure
        return error_type(
            message,
            provider=PROVIDER,
            status_code=status,
            request_id=request_id,
        )


def openai_gateway_factory(context: GatewayInitContext) -> OpenAIEmbeddingGateway:
    """Factory registered with the provider registry."""

    settings = context.settings
    return OpenAIEmbeddingGateway(
        logger=context.logger,
        model=settings.model or DEFAULT_OPENAI_MODEL,
        timeout=settings.timeout,
        dimension=settings.dimension,
        environ=context.environ,
    )
