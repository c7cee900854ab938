"""Boundary contracts between the sync engine and its collaborators."""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable

from .models import (
    DatasetRecord,
    EmbeddingVector,
    FetchedDataset,
    FetchFailure,
    PortalDescriptor,
)

__all__ = [
    "EmbeddingGateway",
    "PortalFetcher",
    "RecordStore",
]


@runtime_checkable
class RecordStore(Protocol):
    """Persistence collaborator owning durable dataset records.

    ``upsert`` must be insert-or-update keyed on
    ``(source_portal, original_id)`` and safe under concurrent calls for
    distinct keys. Failures surface as
    :class:`~ceres.sync.errors.StorageWriteFailure`.
    """

    def find_by_identity(
        self,
        source_portal: str,
        original_id: str,
    ) -> DatasetRecord | None:
        """Return the stored snapshot for the identity pair, if any."""

    def upsert(self, record: DatasetRecord) -> None:
        """Insert or update ``record``."""


@runtime_checkable
class EmbeddingGateway(Protocol):
    """Embedding-provider collaborator.

    ``embed`` returns a vector or raises a subclass of
    :class:`~ceres.sync.errors.EmbeddingProviderError` whose ``kind`` tells
    the engine how to react.
    """

    @property
    def provider(self) -> str:
        """Short provider key used in logs and diagnostics."""

    def embed(self, text: str) -> EmbeddingVector:
        """Return the embedding of ``text``."""


@runtime_checkable
class PortalFetcher(Protocol):
    """Portal listing collaborator.

    Returns the complete, already-paginated listing of a portal in listing
    order. Identity keys are unique within one listing. A package that is
    listed but cannot be retrieved is yielded as a :class:`FetchFailure`.
    """

    def fetch(
        self,
        portal: PortalDescriptor,
    ) -> Iterable[FetchedDataset | FetchFailure]:
        """Yield every dataset currently published by ``portal``."""
