"""Per-portal delta sync driven over a bounded worker pool."""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
import random
import threading
import time
from typing import Callable, Iterable, Iterator

from ceres.core.config import SyncSettings
from ceres.core.logging import Logger, get_logger

from .classifier import ReprocessingDecision, classify_change
from .errors import FailureKind, StorageWriteFailure, classify_exception
from .fingerprint import ContentFingerprinter
from .gateways import EmbeddingGateway, RecordStore
from .models import (
    DatasetRecord,
    EmbeddingVector,
    FetchFailure,
    FetchedDataset,
    OutcomeKind,
    PortalDescriptor,
    PortalSyncReport,
    RecordFailure,
    SyncOutcome,
    SyncStats,
)
from .retry import RetryPolicy

__all__ = [
    "CancellationSignal",
    "SyncOrchestrator",
]

_POLL_INTERVAL = 0.05


class CancellationSignal:
    """Run-level abort flag shared between the coordinator and its workers.

    Only the first reason is kept; later calls to :meth:`abort` are no-ops so
    an authentication abort is never masked by a timeout that follows it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: FailureKind | None = None

    def abort(self, reason: FailureKind) -> bool:
        """Request cancellation; return ``True`` when this call set it."""

        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> FailureKind | None:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early on abort."""

        return self._event.wait(timeout)


class _RunCancelled(Exception):
    """Raised inside a worker when the run aborts during a retry wait."""


@dataclass(slots=True)
class _PortalRun:
    """Mutable bookkeeping owned by the coordinating thread."""

    portal: PortalDescriptor
    signal: CancellationSignal
    deadline: float | None
    stats: SyncStats = field(default_factory=SyncStats)
    failures: list[RecordFailure] = field(default_factory=list)
    skipped: int = 0
    error: str | None = None

    def record(self, outcome: SyncOutcome | None) -> None:
        if outcome is None:
            self.skipped += 1
            return
        self.stats.record(outcome.kind)
        if outcome.kind is OutcomeKind.FAILED and outcome.reason is not None:
            self.failures.append(RecordFailure(outcome.original_id, outcome.reason))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Synchronize one portal's listing against the record store.

    Unchanged records are settled in the coordinating thread. Create and
    update work (embed, then upsert) runs on a thread pool with at most
    ``settings.concurrency`` units in flight. An authentication failure or
    an expired deadline sets a :class:`CancellationSignal`: no new work is
    dispatched, queued work is skipped, and in-flight work finishes and is
    still counted. A record whose embedding fails for another reason is
    stored without an embedding so the next run picks it up again.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        embedder: EmbeddingGateway,
        settings: SyncSettings | None = None,
        fingerprinter: ContentFingerprinter | None = None,
        logger: Logger | None = None,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._settings = settings or SyncSettings()
        self._fingerprinter = fingerprinter or ContentFingerprinter(
            self._settings.fingerprint_metadata_keys
        )
        self._logger = logger or get_logger(__name__, component="sync")
        self._now = now
        self._clock = clock
        self._rng = rng
        self._policy = RetryPolicy(
            max_attempts=self._settings.max_attempts,
            base_delay=self._settings.retry_base_delay,
            max_delay=self._settings.retry_max_delay,
            jitter_ratio=self._settings.retry_jitter_ratio,
        )

    @property
    def settings(self) -> SyncSettings:
        return self._settings

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def sync_portal(
        self,
        portal: PortalDescriptor,
        datasets: Iterable[FetchedDataset | FetchFailure],
        *,
        timeout: float | None = None,
    ) -> PortalSyncReport:
        """Sync ``datasets`` for ``portal`` and return the portal report.

        Args:
            portal: Portal the listing belongs to.
            datasets: Listing in portal order with unique identity keys.
            timeout: Wall-clock budget in seconds; defaults to
                ``settings.portal_timeout``. Expiry aborts the run with
                :attr:`FailureKind.TIMEOUT`.
        """

        started = self._clock()
        budget = timeout if timeout is not None else self._settings.portal_timeout
        run = _PortalRun(
            portal=portal,
            signal=CancellationSignal(),
            deadline=None if budget is None else started + budget,
        )
        log = self._logger.bind(portal=portal.name)
        log.info(
            "sync-portal-start",
            url=portal.url,
            concurrency=self._settings.concurrency,
        )

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self._settings.concurrency,
            thread_name_prefix="ceres-sync",
        ) as executor:
            futures = self._dispatch(run, datasets, executor, log)
            self._drain(run, futures, log)

        report = PortalSyncReport.from_stats(
            portal.name,
            run.stats,
            duration=round(self._clock() - started, 3),
            skipped=run.skipped,
            abort_reason=run.signal.reason,
            error=run.error,
            failures=run.failures,
        )
        log.info(
            "sync-portal-complete",
            status=str(report.status),
            created=report.created,
            updated=report.updated,
            unchanged=report.unchanged,
            failed=report.failed,
            skipped=report.skipped,
            abort_reason=(
                None if report.abort_reason is None else str(report.abort_reason)
            ),
            duration=report.duration,
        )
        return report

    # ------------------------------------------------------------------
    # Coordinating thread
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        run: _PortalRun,
        datasets: Iterable[FetchedDataset | FetchFailure],
        executor: concurrent.futures.ThreadPoolExecutor,
        log: Logger,
    ) -> dict[concurrent.futures.Future[SyncOutcome | None], str]:
        slots = threading.BoundedSemaphore(self._settings.concurrency)
        futures: dict[concurrent.futures.Future[SyncOutcome | None], str] = {}

        for dataset in self._iter_listing(run, datasets, log):
            if not self._still_running(run, log):
                break

            if isinstance(dataset, FetchFailure):
                log.warning(
                    "sync-record-fetch-failed",
                    original_id=dataset.original_id,
                    error=dataset.error,
                )
                run.record(SyncOutcome.failed(dataset.original_id, FailureKind.FETCH))
                continue

            try:
                stored = self._store.find_by_identity(
                    dataset.source_portal, dataset.original_id
                )
            except Exception as exc:
                log.warning(
                    "sync-record-lookup-failed",
                    original_id=dataset.original_id,
                    error=str(exc),
                )
                run.record(
                    SyncOutcome.failed(dataset.original_id, FailureKind.STORAGE_READ)
                )
                continue

            digest = self._fingerprinter.fingerprint(dataset)
            decision = classify_change(digest, stored)
            if not decision.needs_embedding:
                run.record(SyncOutcome(dataset.original_id, OutcomeKind.UNCHANGED))
                continue

            if not self._acquire_slot(slots, run, log):
                run.skipped += 1
                break

            log.debug(
                "sync-record-dispatch",
                original_id=dataset.original_id,
                reason=decision.reason,
            )
            future = executor.submit(
                self._process_record,
                dataset,
                digest,
                stored,
                decision,
                run.signal,
                log,
            )
            future.add_done_callback(lambda _: slots.release())
            futures[future] = dataset.original_id
        return futures

    def _iter_listing(
        self,
        run: _PortalRun,
        datasets: Iterable[FetchedDataset | FetchFailure],
        log: Logger,
    ) -> Iterator[FetchedDataset | FetchFailure]:
        """Yield the listing, turning a failing lazy fetch into an abort."""

        iterator = iter(datasets)
        while True:
            try:
                dataset = next(iterator)
            except StopIteration:
                return
            except Exception as exc:
                log.error("sync-listing-failed", error=str(exc))
                if run.signal.abort(FailureKind.FETCH):
                    run.error = f"Portal listing failed: {exc}"
                return
            yield dataset

    def _still_running(self, run: _PortalRun, log: Logger) -> bool:
        if run.signal.is_set:
            return False
        if run.deadline is not None and self._clock() >= run.deadline:
            if run.signal.abort(FailureKind.TIMEOUT):
                log.warning("sync-portal-timeout")
            return False
        return True

    def _acquire_slot(
        self,
        slots: threading.BoundedSemaphore,
        run: _PortalRun,
        log: Logger,
    ) -> bool:
        while not slots.acquire(timeout=_POLL_INTERVAL):
            if not self._still_running(run, log):
                return False
        if not self._still_running(run, log):
            slots.release()
            return False
        return True

    def _drain(
        self,
        run: _PortalRun,
        futures: dict[concurrent.futures.Future[SyncOutcome | None], str],
        log: Logger,
    ) -> None:
        pending = set(futures)
        cancelled = False
        while pending:
            if run.signal.is_set and not cancelled:
                # Queued work never starts; in-flight work runs to the end.
                for future in pending:
                    future.cancel()
                cancelled = True

            done, pending = concurrent.futures.wait(
                pending,
                timeout=_POLL_INTERVAL,
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
            for future in done:
                run.record(self._result_of(future, futures[future], log))
            self._still_running(run, log)

    def _result_of(
        self,
        future: concurrent.futures.Future[SyncOutcome | None],
        original_id: str,
        log: Logger,
    ) -> SyncOutcome | None:
        if future.cancelled():
            return None
        try:
            return future.result()
        except Exception as exc:  # pragma: no cover - worker guards its own calls
            log.exception(
                "sync-worker-error",
                original_id=original_id,
                error=str(exc),
            )
            return SyncOutcome.failed(original_id, FailureKind.UNKNOWN)

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------

    def _process_record(
        self,
        dataset: FetchedDataset,
        digest: str,
        stored: DatasetRecord | None,
        decision: ReprocessingDecision,
        signal: CancellationSignal,
        log: Logger,
    ) -> SyncOutcome | None:
        """Embed then upsert one record; ``None`` means it never started."""

        if signal.is_set:
            return None

        record_log = log.bind(original_id=dataset.original_id)
        try:
            vector = self._embed_with_retry(dataset, signal, record_log)
        except _RunCancelled:
            record_log.info("sync-record-cancelled")
            return SyncOutcome.failed(dataset.original_id, FailureKind.CANCELLED)
        except Exception as exc:
            kind = classify_exception(exc)
            if kind is FailureKind.AUTHENTICATION and signal.abort(kind):
                record_log.error(
                    "sync-portal-abort",
                    kind=str(kind),
                    provider=self._embedder.provider,
                )
            record_log.warning("sync-record-failed", kind=str(kind))
            record_log.debug("sync-record-failure-detail", error=str(exc))
            if kind is not FailureKind.AUTHENTICATION:
                self._store_pending(dataset, digest, stored, record_log)
            return SyncOutcome.failed(dataset.original_id, kind)

        record = self._build_record(dataset, digest, stored, vector)
        try:
            self._store.upsert(record)
        except StorageWriteFailure as exc:
            record_log.warning(
                "sync-record-failed",
                kind=str(FailureKind.STORAGE_WRITE),
                error=str(exc),
            )
            return SyncOutcome.failed(dataset.original_id, FailureKind.STORAGE_WRITE)

        record_log.debug("sync-record-stored", change=str(decision.kind))
        return SyncOutcome(dataset.original_id, decision.kind.outcome)

    def _build_record(
        self,
        dataset: FetchedDataset,
        digest: str,
        stored: DatasetRecord | None,
        vector: EmbeddingVector | None,
    ) -> DatasetRecord:
        now = self._now()
        return DatasetRecord(
            source_portal=dataset.source_portal,
            original_id=dataset.original_id,
            url=dataset.url,
            title=dataset.title,
            description=dataset.description,
            content_fingerprint=digest,
            embedding=vector,
            raw_metadata=dict(dataset.raw_metadata),
            first_seen_at=stored.first_seen_at if stored is not None else now,
            last_updated_at=now,
        )

    def _store_pending(
        self,
        dataset: FetchedDataset,
        digest: str,
        stored: DatasetRecord | None,
        log: Logger,
    ) -> None:
        """Persist the metadata of a record whose embedding failed.

        The record is written without an embedding so it stays visible to
        statistics and exports, and the next run classifies it as an
        incomplete retry. The failure outcome is reported either way.
        """

        try:
            self._store.upsert(self._build_record(dataset, digest, stored, None))
        except StorageWriteFailure as exc:
            log.warning("sync-record-pending-write-failed", error=str(exc))
            return
        log.debug("sync-record-stored-pending")

    def _embed_with_retry(
        self,
        dataset: FetchedDataset,
        signal: CancellationSignal,
        log: Logger,
    ) -> EmbeddingVector:
        text = dataset.embeddable_text
        attempt = 0
        while True:
            attempt += 1
            try:
                vector = self._embedder.embed(text)
            except Exception as exc:
                kind = classify_exception(exc)
                decision = self._policy.decide(kind, attempt, rng=self._rng)
                if not decision.retry:
                    raise
                log.info(
                    "embedding-retry",
                    kind=str(kind),
                    attempt=attempt,
                    delay=decision.delay,
                )
                if signal.wait(decision.delay):
                    raise _RunCancelled() from exc
                continue
            return tuple(float(value) for value in vector)
