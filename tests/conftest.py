"""Shared pytest fixtures: in-memory collaborators for the sync engine."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta, timezone
import threading
from typing import Any

import pytest

from ceres.core.config import SyncSettings
from ceres.sync.errors import StorageWriteFailure
from ceres.sync.models import (
    DatasetRecord,
    EmbeddingVector,
    FetchedDataset,
    PortalDescriptor,
)

PORTAL_URL = "https://p1.example.org"


class FakeRecordStore:
    """Thread-safe dict-backed record store.

    ``fail_writes_for`` and ``fail_reads_for`` name original ids whose upsert
    or lookup raises.
    """

    def __init__(
        self,
        *,
        fail_writes_for: Iterable[str] = (),
        fail_reads_for: Iterable[str] = (),
    ) -> None:
        self.records: dict[tuple[str, str], DatasetRecord] = {}
        self.upserts: list[DatasetRecord] = []
        self.lookups: list[tuple[str, str]] = []
        self._fail_writes = set(fail_writes_for)
        self._fail_reads = set(fail_reads_for)
        self._lock = threading.Lock()

    def find_by_identity(
        self,
        source_portal: str,
        original_id: str,
    ) -> DatasetRecord | None:
        with self._lock:
            self.lookups.append((source_portal, original_id))
            if original_id in self._fail_reads:
                raise RuntimeError(f"lookup failed for {original_id}")
            return self.records.get((source_portal, original_id))

    def upsert(self, record: DatasetRecord) -> None:
        with self._lock:
            if record.original_id in self._fail_writes:
                raise StorageWriteFailure(f"disk full for {record.original_id}")
            self.records[record.identity] = record
            self.upserts.append(record)


class ScriptedEmbedder:
    """Embedding gateway whose failures are scripted per dataset title.

    ``script`` maps a title to exceptions raised on successive calls, after
    which calls succeed. ``always`` maps a title to an exception raised on
    every call.
    """

    provider = "fake"

    def __init__(
        self,
        *,
        script: Mapping[str, Sequence[Exception]] | None = None,
        always: Mapping[str, Exception] | None = None,
        on_call: Callable[[str], None] | None = None,
    ) -> None:
        self.calls: list[str] = []
        self._script = {key: list(value) for key, value in (script or {}).items()}
        self._always = dict(always or {})
        self._on_call = on_call
        self._lock = threading.Lock()

    @staticmethod
    def title_of(text: str) -> str:
        return text.split("\n", 1)[0]

    def calls_for(self, title: str) -> int:
        return sum(1 for text in self.calls if self.title_of(text) == title)

    def embed(self, text: str) -> EmbeddingVector:
        title = self.title_of(text)
        with self._lock:
            self.calls.append(text)
            scripted = self._script.get(title)
            error = scripted.pop(0) if scripted else self._always.get(title)
        if self._on_call is not None:
            self._on_call(title)
        if error is not None:
            raise error
        return (float(len(text)), 0.5, 1.0)


class FakeFetcher:
    """Portal fetcher returning canned listings keyed by portal URL."""

    def __init__(
        self,
        listings: Mapping[str, Sequence[FetchedDataset] | Exception],
    ) -> None:
        self._listings = dict(listings)
        self.fetched: list[str] = []

    def fetch(self, portal: PortalDescriptor) -> list[FetchedDataset]:
        self.fetched.append(portal.name)
        listing = self._listings[portal.url]
        if isinstance(listing, Exception):
            raise listing
        return list(listing)


class SteppingClock:
    """Monotonic clock advancing by ``step`` seconds on every read."""

    def __init__(self, step: float = 0.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


def _make_dataset(
    original_id: str,
    *,
    title: str | None = None,
    description: str | None = "description",
    portal: str = PORTAL_URL,
    metadata: Mapping[str, Any] | None = None,
) -> FetchedDataset:
    return FetchedDataset(
        source_portal=portal,
        original_id=original_id,
        url=f"{portal}/dataset/{original_id}",
        title=title or f"Dataset {original_id}",
        description=description,
        raw_metadata=dict(metadata or {}),
    )


@pytest.fixture
def make_dataset() -> Callable[..., FetchedDataset]:
    """Factory building :class:`FetchedDataset` objects for ``PORTAL_URL``."""

    return _make_dataset


@pytest.fixture
def portal() -> PortalDescriptor:
    return PortalDescriptor(name="p1", url=PORTAL_URL)


@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def store_factory() -> type[FakeRecordStore]:
    return FakeRecordStore


@pytest.fixture
def embedder_factory() -> type[ScriptedEmbedder]:
    return ScriptedEmbedder


@pytest.fixture
def fetcher_factory() -> type[FakeFetcher]:
    return FakeFetcher


@pytest.fixture
def stepping_clock() -> type[SteppingClock]:
    return SteppingClock


@pytest.fixture
def fast_sync_settings() -> SyncSettings:
    """Sync settings with zero backoff so retry tests never sleep."""

    return SyncSettings(
        concurrency=4,
        max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter_ratio=0.0,
    )


@pytest.fixture
def fixed_now() -> Callable[[], datetime]:
    moment = datetime(2025, 11, 29, 12, 0, tzinfo=timezone.utc)
    return lambda: moment


@pytest.fixture
def stored_record() -> Callable[..., DatasetRecord]:
    """Factory building a stored counterpart for a fetched dataset."""

    def _build(
        dataset: FetchedDataset,
        *,
        fingerprint: str | None,
        embedding: EmbeddingVector | None = (0.1, 0.2, 0.3),
    ) -> DatasetRecord:
        seen = datetime(2025, 1, 1, tzinfo=timezone.utc)
        return DatasetRecord(
            source_portal=dataset.source_portal,
            original_id=dataset.original_id,
            url=dataset.url,
            title=dataset.title,
            description=dataset.description,
            content_fingerprint=fingerprint,
            embedding=embedding,
            raw_metadata=dict(dataset.raw_metadata),
            first_seen_at=seen,
            last_updated_at=seen + timedelta(days=1),
        )

    return _build
