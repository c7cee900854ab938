from __future__ import annotations

import random

import pytest

from ceres.sync.errors import (
    AuthenticationFailure,
    FailureKind,
    NetworkFailure,
    QuotaExceededFailure,
    RateLimitFailure,
    ServerFailure,
    UnclassifiedProviderFailure,
    classify_exception,
)
from ceres.sync.retry import RetryDecision, RetryPolicy


@pytest.mark.parametrize(
    "kind",
    [
        FailureKind.RATE_LIMIT,
        FailureKind.QUOTA_EXCEEDED,
        FailureKind.SERVER_ERROR,
        FailureKind.NETWORK_ERROR,
    ],
)
def test_transient_kinds_are_retried_until_budget(kind: FailureKind) -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter_ratio=0.0)

    assert policy.decide(kind, attempt=1) == RetryDecision(retry=True, delay=1.0)
    assert policy.decide(kind, attempt=2) == RetryDecision(retry=True, delay=2.0)
    assert policy.decide(kind, attempt=3).retry is False


@pytest.mark.parametrize(
    "kind",
    [FailureKind.AUTHENTICATION, FailureKind.UNKNOWN, FailureKind.STORAGE_WRITE],
)
def test_non_transient_kinds_never_retry(kind: FailureKind) -> None:
    policy = RetryPolicy(max_attempts=5)

    assert policy.decide(kind, attempt=1).retry is False


def test_backoff_is_capped_by_max_delay() -> None:
    policy = RetryPolicy(
        max_attempts=10,
        base_delay=1.0,
        max_delay=4.0,
        jitter_ratio=0.0,
    )

    assert policy.backoff(1) == 1.0
    assert policy.backoff(3) == 4.0
    assert policy.backoff(8) == 4.0


def test_jitter_stays_within_ratio() -> None:
    policy = RetryPolicy(base_delay=2.0, jitter_ratio=0.25)
    rng = random.Random(1234)

    delays = [policy.backoff(1, rng=rng) for _ in range(50)]

    assert all(1.5 <= delay <= 2.5 for delay in delays)
    assert len(set(delays)) > 1


def test_single_attempt_disables_retries() -> None:
    policy = RetryPolicy(max_attempts=1)

    assert policy.decide(FailureKind.RATE_LIMIT, attempt=1).retry is False


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_attempts": 0}, "max_attempts"),
        ({"base_delay": -1.0}, "negative"),
        ({"jitter_ratio": 1.5}, "jitter_ratio"),
    ],
)
def test_policy_rejects_invalid_parameters(kwargs, message) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (AuthenticationFailure("bad key", provider="x"), FailureKind.AUTHENTICATION),
        (RateLimitFailure("slow", provider="x"), FailureKind.RATE_LIMIT),
        (QuotaExceededFailure("quota", provider="x"), FailureKind.QUOTA_EXCEEDED),
        (ServerFailure("500", provider="x"), FailureKind.SERVER_ERROR),
        (NetworkFailure("reset", provider="x"), FailureKind.NETWORK_ERROR),
        (UnclassifiedProviderFailure("??", provider="x"), FailureKind.UNKNOWN),
        (ValueError("plain"), FailureKind.UNKNOWN),
    ],
)
def test_classify_exception_maps_typed_errors(error, kind) -> None:
    assert classify_exception(error) is kind


def test_provider_errors_carry_context() -> None:
    error = RateLimitFailure(
        "Too many requests",
        provider="gemini",
        status_code=429,
        request_id="req-1",
    )

    assert str(error) == "Too many requests"
    assert error.status_code == 429
    assert error.request_id == "req-1"
    assert error.kind.is_transient
