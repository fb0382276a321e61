"""Tests for the content fingerprint and the derived dedup and idempotency keys."""

from app.core.fingerprint import content_hash, dedup_key, fingerprint_base, idempotency_key, normalize_amount

BASE = {
    "type": "expense",
    "amount": 200,
    "category": "Coffee",
    "member": "Family",
    "source": "Main",
    "date": "2024-01-01",
    "note": "latte",
    "time": "08:15:00",
    "createdAt": 1704096900000,
}


def test_fingerprint_is_deterministic() -> None:
    """Hashing identical field values twice yields the same SHA-256 hex digest."""
    first, second = content_hash(dict(BASE)), content_hash(dict(BASE))
    if first != second:
        msg = f"Expected identical hashes, got {first} and {second}"
        raise AssertionError(msg)
    if len(first) != 64 or any(c not in "0123456789abcdef" for c in first):
        msg = f"Expected a SHA-256 hex digest, got {first}"
        raise AssertionError(msg)


def test_every_semantic_field_changes_the_hash() -> None:
    """Changing any one fingerprinted field produces a different digest."""
    reference = content_hash(BASE)
    changes = {
        "type": "income",
        "amount": 201,
        "category": "Tea",
        "member": "Partner",
        "source": "Salary",
        "date": "2024-01-02",
        "note": "espresso",
        "time": "08:15:01",
        "createdAt": 1704096900001,
    }
    for field, value in changes.items():
        if content_hash({**BASE, field: value}) == reference:
            msg = f"Changing {field} did not change the hash"
            raise AssertionError(msg)


def test_normalization_ignores_case_whitespace_and_amount_format() -> None:
    """Case, surrounding whitespace and amount rendering do not affect the fingerprint."""
    variant = {**BASE, "category": "  COFFEE ", "note": "Latte", "amount": "200.00"}
    if content_hash(variant) != content_hash(BASE):
        msg = "Expected normalized fields to hash identically"
        raise AssertionError(msg)
    for raw in (100, 100.0, "100.00", " 100 "):
        if normalize_amount(raw) != "100":
            msg = f"Expected {raw!r} to normalize to '100', got {normalize_amount(raw)!r}"
            raise AssertionError(msg)
    if normalize_amount(12.5) != "12.5":
        msg = f"Expected 12.5 to stay 12.5, got {normalize_amount(12.5)!r}"
        raise AssertionError(msg)


def test_missing_fields_are_empty() -> None:
    """Absent and None fields render as empty segments."""
    base = fingerprint_base({"type": "expense", "amount": 5, "note": None})
    if base != "expense|5|||||||":
        msg = f"Unexpected fingerprint base: {base!r}"
        raise AssertionError(msg)


def test_idempotency_key_refines_dedup_key() -> None:
    """The idempotency key extends the natural key with time and createdAt."""
    digest = content_hash(BASE)
    natural = dedup_key(3, digest, BASE["amount"], BASE["date"])
    key = idempotency_key(3, BASE)
    if not key.startswith(f"{natural}:"):
        msg = f"Expected {key} to extend {natural}"
        raise AssertionError(msg)
    if idempotency_key(4, BASE) == key:
        msg = "Expected the budget id to be part of the key"
        raise AssertionError(msg)
