from __future__ import annotations

from ceres.sync.fingerprint import ContentFingerprinter, fingerprint


def test_fingerprint_is_deterministic_and_prefixed() -> None:
    first = fingerprint("Air quality", "Hourly readings")
    second = fingerprint("Air quality", "Hourly readings")

    assert first == second
    assert first.startswith("sha256:")
    assert len(first.split(":", 1)[1]) == 64


def test_fingerprint_changes_with_title_or_description() -> None:
    base = fingerprint("Air quality", "Hourly readings")

    assert fingerprint("Air quality 2024", "Hourly readings") != base
    assert fingerprint("Air quality", "Daily readings") != base


def test_missing_description_matches_empty_description() -> None:
    assert fingerprint("Parks", None) == fingerprint("Parks", "")


def test_field_boundaries_are_not_ambiguous() -> None:
    assert fingerprint("ab", "c") != fingerprint("a", "bc")


def test_metadata_key_order_does_not_matter() -> None:
    left = fingerprint("Parks", None, {"a": 1, "b": [1, 2]})
    right = fingerprint("Parks", None, {"b": [1, 2], "a": 1})

    assert left == right


def test_fingerprinter_ignores_irrelevant_metadata(make_dataset) -> None:
    fingerprinter = ContentFingerprinter(relevant_keys=["license_id"])
    before = make_dataset(
        "a",
        metadata={"license_id": "cc-by", "metadata_modified": "2024-01-01"},
    )
    after = make_dataset(
        "a",
        metadata={"license_id": "cc-by", "metadata_modified": "2025-06-30"},
    )
    relicensed = make_dataset(
        "a",
        metadata={"license_id": "odbl", "metadata_modified": "2025-06-30"},
    )

    assert fingerprinter.relevant_keys == ("license_id",)
    assert fingerprinter.fingerprint(before) == fingerprinter.fingerprint(after)
    assert fingerprinter.fingerprint(before) != fingerprinter.fingerprint(relicensed)


def test_default_fingerprinter_covers_title_and_description_only(
    make_dataset,
) -> None:
    fingerprinter = ContentFingerprinter()
    dataset = make_dataset("a", title="Parks", description="Green areas")
    noisy = make_dataset(
        "a",
        title="Parks",
        description="Green areas",
        metadata={"tags": ["x"]},
    )

    assert fingerprinter.fingerprint(dataset) == fingerprint("Parks", "Green areas")
    assert fingerprinter.fingerprint(noisy) == fingerprinter.fingerprint(dataset)
