from __future__ import annotations

import threading
import time

import pytest

from ceres.core.config import SyncSettings
from ceres.sync import (
    AuthenticationFailure,
    CancellationSignal,
    FailureKind,
    FetchFailure,
    RateLimitFailure,
    RecordFailure,
    RunStatus,
    SyncOrchestrator,
    classify_change,
)
from ceres.sync.fingerprint import ContentFingerprinter


@pytest.fixture
def orchestrator_factory(store, fast_sync_settings, fixed_now):
    def _build(embedder, *, store_override=None, settings=None, **kwargs):
        return SyncOrchestrator(
            store=store_override if store_override is not None else store,
            embedder=embedder,
            settings=settings or fast_sync_settings,
            now=fixed_now,
            **kwargs,
        )

    return _build


def test_cancellation_signal_keeps_first_reason() -> None:
    signal = CancellationSignal()

    assert not signal.is_set
    assert signal.abort(FailureKind.AUTHENTICATION) is True
    assert signal.abort(FailureKind.TIMEOUT) is False
    assert signal.is_set
    assert signal.reason is FailureKind.AUTHENTICATION
    assert signal.wait(0.0) is True


def test_retry_policy_follows_settings(orchestrator_factory, embedder_factory) -> None:
    settings = SyncSettings(max_attempts=5, retry_base_delay=0.25, retry_jitter_ratio=0)
    orchestrator = orchestrator_factory(embedder_factory(), settings=settings)

    assert orchestrator.settings is settings
    assert orchestrator.retry_policy.max_attempts == 5
    assert orchestrator.retry_policy.base_delay == 0.25


def test_delta_sync_lifecycle(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
) -> None:
    embedder = embedder_factory()
    orchestrator = orchestrator_factory(embedder)
    listing = [make_dataset("a"), make_dataset("b")]

    first = orchestrator.sync_portal(portal, listing)
    assert (first.created, first.updated, first.unchanged, first.failed) == (
        2,
        0,
        0,
        0,
    )
    assert first.status is RunStatus.SUCCESS
    assert first.portal == "p1"
    assert len(embedder.calls) == 2

    second = orchestrator.sync_portal(portal, listing)
    assert (second.created, second.unchanged) == (0, 2)
    assert len(embedder.calls) == 2
    assert len(store.upserts) == 2

    edited = [make_dataset("a"), make_dataset("b", description="new description")]
    third = orchestrator.sync_portal(portal, edited)
    assert (third.created, third.updated, third.unchanged) == (0, 1, 1)
    assert len(embedder.calls) == 3
    assert embedder.calls[-1] == "Dataset b\nnew description"
    assert store.records[(portal.url, "b")].description == "new description"


def test_persistent_rate_limit_fails_only_that_record(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
) -> None:
    embedder = embedder_factory(
        always={"Dataset r3": RateLimitFailure("slow down", provider="fake")}
    )
    orchestrator = orchestrator_factory(embedder)
    listing = [make_dataset(f"r{index}") for index in range(10)]

    report = orchestrator.sync_portal(portal, listing)

    assert report.created == 9
    assert report.failed == 1
    assert report.status is RunStatus.PARTIAL_FAILURE
    assert report.abort_reason is None
    assert report.failures == (RecordFailure("r3", FailureKind.RATE_LIMIT),)
    assert embedder.calls_for("Dataset r3") == 3
    pending = store.records[(portal.url, "r3")]
    assert pending.embedding is None
    assert pending.content_fingerprint == ContentFingerprinter().fingerprint(
        listing[3]
    )


def test_transient_failure_recovers_within_budget(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
) -> None:
    embedder = embedder_factory(
        script={"Dataset a": [RateLimitFailure("slow down", provider="fake")] * 2}
    )
    orchestrator = orchestrator_factory(embedder)

    report = orchestrator.sync_portal(portal, [make_dataset("a")])

    assert report.created == 1
    assert report.status is RunStatus.SUCCESS
    assert embedder.calls_for("Dataset a") == 3


def test_unclassified_error_is_not_retried(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
) -> None:
    embedder = embedder_factory(always={"Dataset a": ValueError("weird payload")})
    orchestrator = orchestrator_factory(embedder)

    report = orchestrator.sync_portal(portal, [make_dataset("a"), make_dataset("b")])

    assert report.failures == (RecordFailure("a", FailureKind.UNKNOWN),)
    assert report.created == 1
    assert embedder.calls_for("Dataset a") == 1


def test_authentication_failure_aborts_portal(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
) -> None:
    embedder = embedder_factory(
        always={"Dataset a": AuthenticationFailure("bad key", provider="fake")}
    )
    settings = SyncSettings(concurrency=1, retry_base_delay=0, retry_jitter_ratio=0)
    orchestrator = orchestrator_factory(embedder, settings=settings)
    listing = [make_dataset(name) for name in ("a", "b", "c", "d")]

    report = orchestrator.sync_portal(portal, listing)

    assert report.status is RunStatus.FAILED
    assert report.abort_reason is FailureKind.AUTHENTICATION
    assert report.failed == 1
    assert report.created == 0
    assert len(embedder.calls) == 1
    assert store.upserts == []


def test_authentication_abort_cancels_record_waiting_to_retry(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
) -> None:
    first_called = threading.Event()

    def coordinate(title: str) -> None:
        if title == "Dataset a":
            first_called.set()
        elif title == "Dataset b":
            first_called.wait(5)

    embedder = embedder_factory(
        script={"Dataset a": [RateLimitFailure("slow down", provider="fake")]},
        always={"Dataset b": AuthenticationFailure("bad key", provider="fake")},
        on_call=coordinate,
    )
    settings = SyncSettings(
        concurrency=2,
        retry_base_delay=5.0,
        retry_max_delay=10.0,
        retry_jitter_ratio=0,
    )
    orchestrator = orchestrator_factory(embedder, settings=settings)

    started = time.monotonic()
    report = orchestrator.sync_portal(portal, [make_dataset("a"), make_dataset("b")])

    assert time.monotonic() - started < 5.0
    assert report.status is RunStatus.FAILED
    assert report.abort_reason is FailureKind.AUTHENTICATION
    assert set(report.failures) == {
        RecordFailure("a", FailureKind.CANCELLED),
        RecordFailure("b", FailureKind.AUTHENTICATION),
    }
    assert embedder.calls_for("Dataset a") == 1


def test_storage_write_failure_is_per_record(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store_factory,
) -> None:
    failing_store = store_factory(fail_writes_for=["b"])
    embedder = embedder_factory()
    orchestrator = orchestrator_factory(embedder, store_override=failing_store)

    report = orchestrator.sync_portal(portal, [make_dataset("a"), make_dataset("b")])

    assert report.status is RunStatus.PARTIAL_FAILURE
    assert report.created == 1
    assert report.failures == (RecordFailure("b", FailureKind.STORAGE_WRITE),)
    assert embedder.calls_for("Dataset b") == 1
    assert (portal.url, "b") not in failing_store.records


def test_lookup_failure_skips_embedding(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store_factory,
) -> None:
    failing_store = store_factory(fail_reads_for=["a"])
    embedder = embedder_factory()
    orchestrator = orchestrator_factory(embedder, store_override=failing_store)

    report = orchestrator.sync_portal(portal, [make_dataset("a"), make_dataset("b")])

    assert report.failures == (RecordFailure("a", FailureKind.STORAGE_READ),)
    assert report.created == 1
    assert embedder.calls_for("Dataset a") == 0


def test_empty_listing_is_success(
    orchestrator_factory,
    embedder_factory,
    portal,
) -> None:
    report = orchestrator_factory(embedder_factory()).sync_portal(portal, [])

    assert report.status is RunStatus.SUCCESS
    assert report.total == 0
    assert report.skipped == 0


def test_record_missing_embedding_is_reembedded(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
    stored_record,
) -> None:
    dataset = make_dataset("a")
    digest = ContentFingerprinter().fingerprint(dataset)
    store.records[dataset.identity] = stored_record(
        dataset,
        fingerprint=digest,
        embedding=None,
    )
    embedder = embedder_factory()

    report = orchestrator_factory(embedder).sync_portal(portal, [dataset])

    assert report.updated == 1
    assert len(embedder.calls) == 1
    assert store.records[dataset.identity].is_indexed


def test_failed_embedding_is_stored_pending_and_retried_next_run(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
    fixed_now,
) -> None:
    dataset = make_dataset("a")
    embedder = embedder_factory(script={"Dataset a": [ValueError("bad payload")]})
    orchestrator = orchestrator_factory(embedder)

    first = orchestrator.sync_portal(portal, [dataset])

    assert first.failures == (RecordFailure("a", FailureKind.UNKNOWN),)
    pending = store.records[dataset.identity]
    assert not pending.is_indexed
    assert pending.first_seen_at == fixed_now()
    digest = ContentFingerprinter().fingerprint(dataset)
    assert classify_change(digest, pending).is_incomplete_retry

    second = orchestrator.sync_portal(portal, [dataset])

    assert (second.updated, second.failed) == (1, 0)
    assert store.records[dataset.identity].is_indexed
    assert embedder.calls_for("Dataset a") == 2


def test_pending_write_failure_keeps_embedding_failure_kind(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store_factory,
) -> None:
    failing_store = store_factory(fail_writes_for=["a"])
    embedder = embedder_factory(
        always={"Dataset a": RateLimitFailure("slow down", provider="fake")}
    )
    orchestrator = orchestrator_factory(embedder, store_override=failing_store)

    report = orchestrator.sync_portal(portal, [make_dataset("a")])

    assert report.failures == (RecordFailure("a", FailureKind.RATE_LIMIT),)
    assert failing_store.records == {}


def test_unretrievable_listing_entry_counts_as_fetch_failure(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
) -> None:
    embedder = embedder_factory()
    listing = [make_dataset("a"), FetchFailure("gone", "HTTP 404"), make_dataset("b")]

    report = orchestrator_factory(embedder).sync_portal(portal, listing)

    assert report.created == 2
    assert report.failed == 1
    assert report.status is RunStatus.PARTIAL_FAILURE
    assert report.abort_reason is None
    assert report.failures == (RecordFailure("gone", FailureKind.FETCH),)
    assert (portal.url, "gone") not in store.lookups
    assert len(embedder.calls) == 2


def test_configured_metadata_keys_feed_the_fingerprint(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    fast_sync_settings,
) -> None:
    settings = fast_sync_settings.model_copy(
        update={"fingerprint_metadata_keys": ["license_id"]}
    )
    embedder = embedder_factory()
    orchestrator = orchestrator_factory(embedder, settings=settings)
    plain = orchestrator_factory(embedder_factory())

    licensed = [make_dataset("a", metadata={"license_id": "cc-by"})]
    relicensed = [make_dataset("a", metadata={"license_id": "odc-odbl"})]

    orchestrator.sync_portal(portal, licensed)
    report = orchestrator.sync_portal(portal, relicensed)

    assert report.updated == 1
    assert len(embedder.calls) == 2

    plain_report = plain.sync_portal(portal, licensed)
    assert plain_report.updated == 1
    assert plain.sync_portal(portal, relicensed).unchanged == 1


def test_update_preserves_first_seen_at(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
    stored_record,
    fixed_now,
) -> None:
    dataset = make_dataset("a", metadata={"license_id": "cc-by"})
    previous = stored_record(dataset, fingerprint="sha256:stale")
    store.records[dataset.identity] = previous

    orchestrator_factory(embedder_factory()).sync_portal(portal, [dataset])

    saved = store.records[dataset.identity]
    assert saved.first_seen_at == previous.first_seen_at
    assert saved.last_updated_at == fixed_now()
    assert saved.content_fingerprint == ContentFingerprinter().fingerprint(dataset)
    assert saved.raw_metadata == {"license_id": "cc-by"}
    assert saved.embedding == (float(len(dataset.embeddable_text)), 0.5, 1.0)


def test_new_record_uses_now_for_both_timestamps(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    store,
    fixed_now,
) -> None:
    orchestrator_factory(embedder_factory()).sync_portal(portal, [make_dataset("a")])

    saved = store.records[(portal.url, "a")]
    assert saved.first_seen_at == fixed_now()
    assert saved.last_updated_at == fixed_now()


def test_deadline_aborts_with_timeout(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    stepping_clock,
) -> None:
    embedder = embedder_factory()
    orchestrator = orchestrator_factory(embedder, clock=stepping_clock(step=1.0))
    listing = [make_dataset(f"r{index}") for index in range(5)]

    report = orchestrator.sync_portal(portal, listing, timeout=2.5)

    assert report.status is RunStatus.FAILED
    assert report.abort_reason is FailureKind.TIMEOUT
    assert report.created + report.skipped == 1
    assert len(embedder.calls) <= 1


def test_deadline_defaults_to_configured_portal_timeout(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
    stepping_clock,
) -> None:
    settings = SyncSettings(
        retry_base_delay=0,
        retry_jitter_ratio=0,
        portal_timeout=0.5,
    )
    orchestrator = orchestrator_factory(
        embedder_factory(),
        settings=settings,
        clock=stepping_clock(step=1.0),
    )

    report = orchestrator.sync_portal(portal, [make_dataset("a")])

    assert report.abort_reason is FailureKind.TIMEOUT
    assert report.total == 0


def test_failing_listing_aborts_with_fetch(
    orchestrator_factory,
    embedder_factory,
    make_dataset,
    portal,
) -> None:
    def listing():
        yield make_dataset("a")
        raise ConnectionError("portal went away")

    report = orchestrator_factory(embedder_factory()).sync_portal(portal, listing())

    assert report.status is RunStatus.FAILED
    assert report.abort_reason is FailureKind.FETCH
    assert report.error == "Portal listing failed: portal went away"
    assert report.created + report.skipped == 1


class _PeakTrackingEmbedder:
    provider = "peak"

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def embed(self, text: str):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.01)
        with self._lock:
            self.active -= 1
        return (1.0, 2.0)


def test_in_flight_work_never_exceeds_concurrency(
    orchestrator_factory,
    make_dataset,
    portal,
) -> None:
    embedder = _PeakTrackingEmbedder()
    settings = SyncSettings(concurrency=3, retry_base_delay=0, retry_jitter_ratio=0)
    orchestrator = orchestrator_factory(embedder, settings=settings)
    listing = [make_dataset(f"r{index}") for index in range(20)]

    report = orchestrator.sync_portal(portal, listing)

    assert report.created == 20
    assert 1 <= embedder.peak <= 3
