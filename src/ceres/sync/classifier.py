"""Delta detection between a fetched dataset and its stored counterpart."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from .models import DatasetRecord, OutcomeKind

__all__ = [
    "ChangeKind",
    "ReprocessingDecision",
    "classify_change",
]


class ChangeKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"

    @property
    def outcome(self) -> OutcomeKind:
        """Outcome recorded when work for this change succeeds."""

        return _OUTCOMES[self]


_OUTCOMES = {
    ChangeKind.CREATE: OutcomeKind.CREATED,
    ChangeKind.UPDATE: OutcomeKind.UPDATED,
    ChangeKind.UNCHANGED: OutcomeKind.UNCHANGED,
}


@dataclass(frozen=True, slots=True)
class ReprocessingDecision:
    """Classification result with a human-readable reason."""

    kind: ChangeKind
    reason: str

    @property
    def needs_embedding(self) -> bool:
        return self.kind is not ChangeKind.UNCHANGED

    @property
    def is_incomplete_retry(self) -> bool:
        return self.reason == _REASON_EMBEDDING_MISSING


_REASON_NEW = "new dataset"
_REASON_EMBEDDING_MISSING = "embedding missing"
_REASON_CHANGED = "content hash changed"
_REASON_MATCH = "content hash matches"


def classify_change(
    fingerprint: str,
    stored: DatasetRecord | None,
) -> ReprocessingDecision:
    """Decide what the sync engine must do with a fetched dataset.

    A stored record without an embedding is always re-embedded, even when its
    fingerprint matches, so a record that failed mid-sync is retried on the
    next run.

    Example:
        >>> classify_change("sha256:abc", None).kind
        <ChangeKind.CREATE: 'create'>
    """

    if stored is None:
        return ReprocessingDecision(ChangeKind.CREATE, _REASON_NEW)
    if stored.embedding is None:
        return ReprocessingDecision(ChangeKind.UPDATE, _REASON_EMBEDDING_MISSING)
    if stored.content_fingerprint != fingerprint:
        return ReprocessingDecision(ChangeKind.UPDATE, _REASON_CHANGED)
    return ReprocessingDecision(ChangeKind.UNCHANGED, _REASON_MATCH)
