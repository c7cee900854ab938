"""Data model shared by the sync engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Iterable, Mapping

from .errors import FailureKind

__all__ = [
    "EMBEDDABLE_TEXT_SEPARATOR",
    "EmbeddingVector",
    "PortalDescriptor",
    "FetchedDataset",
    "FetchFailure",
    "DatasetRecord",
    "OutcomeKind",
    "SyncOutcome",
    "RecordFailure",
    "SyncStats",
    "RunStatus",
    "PortalSyncReport",
    "BatchReport",
]

EmbeddingVector = tuple[float, ...]
EMBEDDABLE_TEXT_SEPARATOR = "\n"


@dataclass(frozen=True, slots=True)
class PortalDescriptor:
    """Identifies one portal to harvest."""

    name: str
    url: str
    portal_type: str = "ckan"

    @property
    def identity(self) -> str:
        """Value stored as ``source_portal`` on every record of the portal."""

        return self.url


@dataclass(frozen=True, slots=True)
class FetchedDataset:
    """A dataset as listed by a portal, before any sync decision."""

    source_portal: str
    original_id: str
    url: str
    title: str
    description: str | None = None
    raw_metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.source_portal, self.original_id)

    @property
    def embeddable_text(self) -> str:
        """Title and description joined by a newline.

        Example:
            >>> FetchedDataset("p", "a", "u", "Air quality", "stations").embeddable_text
            'Air quality\\nstations'
        """

        if not self.description:
            return self.title
        return f"{self.title}{EMBEDDABLE_TEXT_SEPARATOR}{self.description}"


@dataclass(frozen=True, slots=True)
class FetchFailure:
    """A listed package whose details could not be retrieved or converted.

    Fetchers yield it in place of a :class:`FetchedDataset` so the record is
    reported as failed instead of disappearing from the listing.
    """

    original_id: str
    error: str


@dataclass(frozen=True, slots=True)
class DatasetRecord:
    """Durable representation of one dataset from one portal.

    ``(source_portal, original_id)`` is the sole identity key. A record with
    ``embedding`` set to ``None`` is indexed-incomplete: it is listed in
    statistics and exports but never returned by similarity queries.
    """

    source_portal: str
    original_id: str
    url: str
    title: str
    description: str | None
    content_fingerprint: str | None
    embedding: EmbeddingVector | None
    raw_metadata: Mapping[str, Any]
    first_seen_at: datetime
    last_updated_at: datetime

    @property
    def identity(self) -> tuple[str, str]:
        return (self.source_portal, self.original_id)

    @property
    def is_indexed(self) -> bool:
        return self.embedding is not None


class OutcomeKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    """Per-record result. Never persisted."""

    original_id: str
    kind: OutcomeKind
    reason: FailureKind | None = None

    @classmethod
    def failed(cls, original_id: str, reason: FailureKind) -> "SyncOutcome":
        return cls(original_id=original_id, kind=OutcomeKind.FAILED, reason=reason)


@dataclass(frozen=True, slots=True)
class RecordFailure:
    """Diagnostic entry for a record that ended ``Failed``."""

    original_id: str
    kind: FailureKind


@dataclass(slots=True)
class SyncStats:
    """Mutable counters accumulated while a portal is synced.

    Example:
        >>> stats = SyncStats()
        >>> stats.record(OutcomeKind.CREATED)
        >>> stats.record(OutcomeKind.FAILED)
        >>> (stats.total, stats.successful)
        (2, 1)
    """

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    def record(self, kind: OutcomeKind) -> None:
        if kind is OutcomeKind.CREATED:
            self.created += 1
        elif kind is OutcomeKind.UPDATED:
            self.updated += 1
        elif kind is OutcomeKind.UNCHANGED:
            self.unchanged += 1
        else:
            self.failed += 1

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    @property
    def successful(self) -> int:
        return self.created + self.updated + self.unchanged


class RunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PortalSyncReport:
    """Outcome of one portal sync handed to presentation layers."""

    portal: str
    created: int
    updated: int
    unchanged: int
    failed: int
    duration: float
    status: RunStatus
    skipped: int = 0
    abort_reason: FailureKind | None = None
    error: str | None = None
    failures: tuple[RecordFailure, ...] = ()

    @classmethod
    def from_stats(
        cls,
        portal: str,
        stats: SyncStats,
        *,
        duration: float,
        skipped: int = 0,
        abort_reason: FailureKind | None = None,
        error: str | None = None,
        failures: Iterable[RecordFailure] = (),
    ) -> "PortalSyncReport":
        """Build a report deriving the terminal status from the counters."""

        if abort_reason is not None:
            status = RunStatus.FAILED
        elif stats.failed:
            status = RunStatus.PARTIAL_FAILURE
        else:
            status = RunStatus.SUCCESS
        return cls(
            portal=portal,
            created=stats.created,
            updated=stats.updated,
            unchanged=stats.unchanged,
            failed=stats.failed,
            duration=duration,
            status=status,
            skipped=skipped,
            abort_reason=abort_reason,
            error=error,
            failures=tuple(failures),
        )

    @classmethod
    def portal_failure(
        cls,
        portal: str,
        *,
        reason: FailureKind,
        error: str,
        duration: float = 0.0,
    ) -> "PortalSyncReport":
        """Report for a portal that could not be synced at all."""

        return cls(
            portal=portal,
            created=0,
            updated=0,
            unchanged=0,
            failed=0,
            duration=duration,
            status=RunStatus.FAILED,
            abort_reason=reason,
            error=error,
        )

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed

    @property
    def successful(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def is_success(self) -> bool:
        return self.status is RunStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Ordered per-portal reports plus run-level aggregates.

    Built by the batch coordinator while portals complete and frozen once
    handed to the caller.
    """

    portals: tuple[PortalSyncReport, ...]
    duration: float = 0.0

    @property
    def status(self) -> RunStatus:
        """``Success`` only when every portal succeeded.

        Example:
            >>> BatchReport(portals=()).status
            <RunStatus.SUCCESS: 'success'>
        """

        if all(report.is_success for report in self.portals):
            return RunStatus.SUCCESS
        if all(report.status is RunStatus.FAILED for report in self.portals):
            return RunStatus.FAILED
        return RunStatus.PARTIAL_FAILURE

    @property
    def total_portals(self) -> int:
        return len(self.portals)

    @property
    def successful_count(self) -> int:
        """Portals whose sync ran to completion, partial failures included."""

        return self.total_portals - self.failed_count

    @property
    def failed_count(self) -> int:
        return sum(
            1 for report in self.portals if report.status is RunStatus.FAILED
        )

    @property
    def total_datasets(self) -> int:
        return sum(report.total for report in self.portals)

    @property
    def created(self) -> int:
        return sum(report.created for report in self.portals)

    @property
    def updated(self) -> int:
        return sum(report.updated for report in self.portals)

    @property
    def unchanged(self) -> int:
        return sum(report.unchanged for report in self.portals)

    @property
    def failed(self) -> int:
        return sum(report.failed for report in self.portals)
