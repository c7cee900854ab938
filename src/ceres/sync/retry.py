"""Retry and backoff policy for embedding calls.

The policy is a pure function of the failure kind and attempt number, kept
apart from any transport so it can be exercised without network access.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from .errors import FailureKind

__all__ = [
    "RetryDecision",
    "RetryPolicy",
]


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


_GIVE_UP = RetryDecision(retry=False)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by ``max_attempts``.

    ``max_attempts`` counts every call including the first one, so a value
    of ``1`` disables retries entirely.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=0.5, jitter_ratio=0.0)
        >>> policy.decide(FailureKind.RATE_LIMIT, attempt=1)
        RetryDecision(retry=True, delay=0.5)
        >>> policy.decide(FailureKind.RATE_LIMIT, attempt=2)
        RetryDecision(retry=True, delay=1.0)
        >>> policy.decide(FailureKind.RATE_LIMIT, attempt=3).retry
        False
        >>> policy.decide(FailureKind.AUTHENTICATION, attempt=1).retry
        False
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays cannot be negative")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1]")

    def backoff(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Delay before the call following failed ``attempt`` (1-based)."""

        base = self.base_delay * (self.multiplier ** (attempt - 1))
        base = min(base, self.max_delay)
        if self.jitter_ratio and base:
            source = rng or random
            base *= 1.0 + source.uniform(-self.jitter_ratio, self.jitter_ratio)
        return round(max(base, 0.0), 3)

    def decide(
        self,
        kind: FailureKind,
        attempt: int,
        *,
        rng: random.Random | None = None,
    ) -> RetryDecision:
        """Return whether to retry after ``attempt`` failed with ``kind``."""

        if not kind.is_transient:
            return _GIVE_UP
        if attempt >= self.max_attempts:
            return _GIVE_UP
        return RetryDecision(retry=True, delay=self.backoff(attempt, rng=rng))
