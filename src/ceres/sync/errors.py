"""Failure taxonomy for the delta sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

__all__ = [
    "FailureKind",
    "EmbeddingProviderError",
    "AuthenticationFailure",
    "TransientProviderFailure",
    "RateLimitFailure",
    "QuotaExceededFailure",
    "ServerFailure",
    "NetworkFailure",
    "UnclassifiedProviderFailure",
    "StorageWriteFailure",
    "MigrationApplyError",
    "classify_exception",
]


class FailureKind(StrEnum):
    """Distinguishing kind attached to every failed record or aborted run."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"
    STORAGE_READ = "storage_read"
    STORAGE_WRITE = "storage_write"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    FETCH = "fetch"

    @property
    def is_transient(self) -> bool:
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset(
    {
        FailureKind.RATE_LIMIT,
        FailureKind.QUOTA_EXCEEDED,
        FailureKind.SERVER_ERROR,
        FailureKind.NETWORK_ERROR,
    }
)


@dataclass(slots=True)
class EmbeddingProviderError(RuntimeError):
    """Base error raised by embedding gateways.

    Gateways never return partial results: a call either yields a vector or
    raises one of the subclasses below so the orchestrator can react to the
    failure kind without inspecting provider payloads.
    """

    message: str
    provider: str
    status_code: int | None = None
    request_id: str | None = None

    kind = FailureKind.UNKNOWN

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class AuthenticationFailure(EmbeddingProviderError):
    """Credentials were rejected; no call in the run can succeed."""

    kind = FailureKind.AUTHENTICATION


@dataclass(slots=True)
class TransientProviderFailure(EmbeddingProviderError):
    """Retryable provider failure."""

    kind = FailureKind.SERVER_ERROR


@dataclass(slots=True)
class RateLimitFailure(TransientProviderFailure):
    kind = FailureKind.RATE_LIMIT


@dataclass(slots=True)
class QuotaExceededFailure(TransientProviderFailure):
    kind = FailureKind.QUOTA_EXCEEDED


@dataclass(slots=True)
class ServerFailure(TransientProviderFailure):
    kind = FailureKind.SERVER_ERROR


@dataclass(slots=True)
class NetworkFailure(TransientProviderFailure):
    kind = FailureKind.NETWORK_ERROR


@dataclass(slots=True)
class UnclassifiedProviderFailure(EmbeddingProviderError):
    """Provider failure that does not map to a known kind."""

    kind = FailureKind.UNKNOWN


class StorageWriteFailure(RuntimeError):
    """Raised by record stores when an upsert cannot be persisted."""


class MigrationApplyError(RuntimeError):
    """Raised when a guarded migration fails; nothing is recorded."""

    def __init__(self, migration_id: str, cause: BaseException) -> None:
        super().__init__(f"Migration {migration_id!r} failed: {cause}")
        self.migration_id = migration_id
        self.cause = cause


def classify_exception(exc: BaseException) -> FailureKind:
    """Return the failure kind for an exception raised by an embed call.

    Anything that is not a typed provider error is treated conservatively
    as :attr:`FailureKind.UNKNOWN`.

    Example:
        >>> classify_exception(RateLimitFailure("slow down", provider="x"))
        <FailureKind.RATE_LIMIT: 'rate_limit'>
        >>> classify_exception(ValueError("boom"))
        <FailureKind.UNKNOWN: 'unknown'>
    """

    if isinstance(exc, EmbeddingProviderError):
        return exc.kind
    return FailureKind.UNKNOWN
