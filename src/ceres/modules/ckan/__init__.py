"""CKAN portal fetch collaborator."""

from __future__ import annotations

from .client import CkanClient, CkanClientError, CkanFetcher, to_fetched_dataset

__all__ = [
    "CkanClient",
    "CkanClientError",
    "CkanFetcher",
    "to_fetched_dataset",
]
