"""Content fingerprints deciding whether a dataset needs re-embedding."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, Mapping

from .models import FetchedDataset

__all__ = [
    "DEFAULT_HASH_ALGORITHM",
    "FINGERPRINT_VERSION",
    "ContentFingerprinter",
    "fingerprint",
]


DEFAULT_HASH_ALGORITHM = "sha256"
# Bump when the digest input layout changes so every record re-embeds once.
FINGERPRINT_VERSION = "1"
_DELIMITER = b"\x00"
_MISSING_DESCRIPTION = ""


def _canonical_json(value: Any) -> bytes:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def fingerprint(
    title: str,
    description: str | None,
    relevant_metadata: Mapping[str, Any] | None = None,
    *,
    algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> str:
    """Return a deterministic digest over embedding-relevant content.

    A missing description hashes exactly like an empty one, so the digest is
    total over its inputs. Metadata keys are sorted, which makes the digest
    independent of portal-side key order.

    Example:
        >>> fingerprint("Air quality", "stations") == fingerprint(
        ...     "Air quality", "stations")
        True
        >>> fingerprint("Air quality", None) == fingerprint("Air quality", "")
        True
    """

    digest = hashlib.new(algorithm)
    digest.update(FINGERPRINT_VERSION.encode("utf-8"))
    digest.update(_DELIMITER)
    digest.update(title.encode("utf-8"))
    digest.update(_DELIMITER)
    text = _MISSING_DESCRIPTION if description is None else description
    digest.update(text.encode("utf-8"))
    digest.update(_DELIMITER)
    digest.update(_canonical_json(dict(relevant_metadata or {})))
    return f"{algorithm}:{digest.hexdigest()}"


class ContentFingerprinter:
    """Fingerprint fetched datasets over a configurable metadata subset.

    Only ``relevant_keys`` of ``raw_metadata`` participate in the digest.
    Portal bookkeeping such as ``metadata_modified`` therefore never causes
    a spurious re-embedding. The default subset is empty because the
    embeddable text is built from title and description alone.
    """

    def __init__(
        self,
        relevant_keys: Iterable[str] = (),
        *,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
    ) -> None:
        self._relevant_keys = tuple(sorted(set(relevant_keys)))
        self._algorithm = algorithm

    @property
    def relevant_keys(self) -> tuple[str, ...]:
        return self._relevant_keys

    def relevant_subset(self, metadata: Mapping[str, Any]) -> dict[str, Any]:
        return {
            key: metadata[key] for key in self._relevant_keys if key in metadata
        }

    def fingerprint(self, dataset: FetchedDataset) -> str:
        return fingerprint(
            dataset.title,
            dataset.description,
            self.relevant_subset(dataset.raw_metadata),
            algorithm=self._algorithm,
        )
