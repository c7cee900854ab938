"""Delta harvest and sync engine."""

from __future__ import annotations

from .batch import BatchCoordinator
from .classifier import ChangeKind, ReprocessingDecision, classify_change
from .errors import (
    AuthenticationFailure,
    EmbeddingProviderError,
    FailureKind,
    MigrationApplyError,
    NetworkFailure,
    QuotaExceededFailure,
    RateLimitFailure,
    ServerFailure,
    StorageWriteFailure,
    TransientProviderFailure,
    UnclassifiedProviderFailure,
    classify_exception,
)
from .fingerprint import ContentFingerprinter, fingerprint
from .gateways import EmbeddingGateway, PortalFetcher, RecordStore
from .models import (
    BatchReport,
    DatasetRecord,
    EmbeddingVector,
    FetchFailure,
    FetchedDataset,
    OutcomeKind,
    PortalDescriptor,
    PortalSyncReport,
    RecordFailure,
    RunStatus,
    SyncOutcome,
    SyncStats,
)
from .orchestrator import CancellationSignal, SyncOrchestrator
from .retry import RetryDecision, RetryPolicy

__all__ = [
    "AuthenticationFailure",
    "BatchCoordinator",
    "BatchReport",
    "CancellationSignal",
    "ChangeKind",
    "ContentFingerprinter",
    "DatasetRecord",
    "EmbeddingGateway",
    "EmbeddingProviderError",
    "EmbeddingVector",
    "FailureKind",
    "FetchFailure",
    "FetchedDataset",
    "MigrationApplyError",
    "NetworkFailure",
    "OutcomeKind",
    "PortalDescriptor",
    "PortalFetcher",
    "PortalSyncReport",
    "QuotaExceededFailure",
    "RateLimitFailure",
    "RecordFailure",
    "RecordStore",
    "ReprocessingDecision",
    "RetryDecision",
    "RetryPolicy",
    "RunStatus",
    "ServerFailure",
    "StorageWriteFailure",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncStats",
    "TransientProviderFailure",
    "UnclassifiedProviderFailure",
    "classify_change",
    "classify_exception",
    "fingerprint",
]
