"""Content fingerprint and idempotency keys for transactions.

The fingerprint is a SHA-256 hex digest over the pipe-joined semantic fields
of a transaction. It is a deduplication signal only. Every field is rendered
as stripped, NFC-normalized, case-folded text so that the same entry typed on
two devices yields the same digest; amounts are rendered as normalized
decimals so ``100``, ``100.0`` and ``"100.00"`` agree.
"""

import hashlib
import unicodedata
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation

FINGERPRINT_FIELDS = ("type", "amount", "category", "member", "source", "date", "note", "time", "createdAt")


def normalize_amount(value: object) -> str:
    """Render an amount as a canonical decimal string; missing amounts become ''."""
    if value is None or value == "":
        return ""
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation:
        return str(value).strip().casefold()
    if not dec.is_finite():
        return str(dec).casefold()
    if dec == dec.to_integral_value():
        return str(dec.quantize(Decimal(1)))
    return format(dec.normalize(), "f")


def normalize_text(value: object) -> str:
    """Render a field as locale-independent comparison text."""
    if value is None:
        return ""
    return unicodedata.normalize("NFC", str(value)).strip().casefold()


def fingerprint_base(item: Mapping[str, object]) -> str:
    """Build the pipe-joined string the content hash is computed over."""
    parts = []
    for field in FINGERPRINT_FIELDS:
        value = item.get(field)
        parts.append(normalize_amount(value) if field == "amount" else normalize_text(value))
    return "|".join(parts)


def content_hash(item: Mapping[str, object]) -> str:
    """Compute the content fingerprint of a camelCase transaction mapping."""
    return hashlib.sha256(fingerprint_base(item).encode("utf-8")).hexdigest()


def dedup_key(budget_id: int, digest: str, amount: object, day: object) -> str:
    """Natural key used by bulk upsert: budget, content hash, amount and date."""
    return f"{int(budget_id)}:{digest}:{normalize_amount(amount)}:{normalize_text(day)}"


def idempotency_key(budget_id: int, item: Mapping[str, object], digest: str | None = None) -> str:
    """Composite submission key, refined by time and createdAt."""
    digest = digest or content_hash(item)
    base = dedup_key(budget_id, digest, item.get("amount"), item.get("date"))
    return f"{base}:{normalize_text(item.get('time'))}:{normalize_text(item.get('createdAt'))}"
