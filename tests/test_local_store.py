"""Tests for the device-local replica."""

from pathlib import Path

import pytest

from app.client.local_store import LocalStore
from app.core.models import MetaBundle, Transaction
from app.core.settings import ClientSettings


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    """Fresh SQLite-backed replica."""
    return LocalStore(f"sqlite:///{tmp_path / 'local.db'}", ClientSettings(default_member="Me"))


def server_copy(tx_id: int | None, **fields: object) -> Transaction:
    """A record as the server would return it."""
    base = {
        "type": "expense",
        "amount": 42,
        "category": "Fuel",
        "member": "Me",
        "source": "Main",
        "date": "2024-05-05",
        "budgetId": 1,
    }
    return Transaction.model_validate({**base, **fields, "id": tx_id})


def test_add_fills_defaults(store: LocalStore) -> None:
    """New records get an id, origin, date, member, source and creation stamps."""
    record = store.add({"type": "expense", "amount": 12.5, "category": "Lunch", "budgetId": 1})
    if record is None or record.id is None or record.origin != "local":
        msg = f"Expected a local record with an id, got {record}"
        raise AssertionError(msg)
    if record.member != "Me" or record.source != "Main" or not record.date:
        msg = f"Expected default labels and date, got {record}"
        raise AssertionError(msg)
    if not record.time or not record.created_at:
        msg = f"Expected creation stamps, got {record}"
        raise AssertionError(msg)
    stored = store.get(record.id, origin="local")
    if stored is None or stored.category != "Lunch" or stored.created_at != record.created_at:
        msg = f"Expected the stored copy to match, got {stored}"
        raise AssertionError(msg)


def test_local_and_server_ids_do_not_collide(store: LocalStore) -> None:
    """A server record with the same numeric id as a local record is stored separately."""
    local = store.add({"type": "income", "amount": 900, "category": "Salary", "budgetId": 1})
    store.import_batch([server_copy(local.id)])
    mine, theirs = store.get(local.id, origin="local"), store.get(local.id, origin="server")
    if mine is None or theirs is None or mine.category != "Salary" or theirs.category != "Fuel":
        msg = f"Expected both records to survive, got {mine} / {theirs}"
        raise AssertionError(msg)
    if len(store.get_all(budget_id=1)) != 2:
        msg = "Expected two records in the budget"
        raise AssertionError(msg)


def test_tombstone_survives_reimport(store: LocalStore) -> None:
    """Importing a record without deletedAt never clears a local tombstone."""
    store.import_batch([server_copy(5)])
    first = store.soft_delete(5, origin="server")
    second = store.soft_delete(5, origin="server")
    if first is None or first != second:
        msg = f"Expected repeated deletes to keep the first stamp, got {first} / {second}"
        raise AssertionError(msg)
    store.import_batch([server_copy(5, note="edited elsewhere")])
    record = store.get(5, origin="server")
    if record is None or record.deleted_at != first:
        msg = f"Expected the tombstone to be preserved, got {record}"
        raise AssertionError(msg)
    if store.get_active(budget_id=1):
        msg = "Expected no active records"
        raise AssertionError(msg)


def test_string_ids_reach_numeric_keys(store: LocalStore) -> None:
    """Ids given as text find records stored under numeric ids."""
    store.import_batch([server_copy(5), server_copy(6, amount=7)])
    stamp = store.soft_delete("5", origin="server")
    record = store.get(5, origin="server")
    if stamp is None or record is None or record.deleted_at != stamp:
        msg = f"Expected record 5 to be tombstoned through its text id, got {record}"
        raise AssertionError(msg)
    if store.hard_remove(" 6 ", origin="server") != 1 or store.get(6) is not None:
        msg = "Expected record 6 to be removed through its text id"
        raise AssertionError(msg)


def test_imported_tombstone_is_applied(store: LocalStore) -> None:
    """A server tombstone marks the local copy deleted."""
    store.import_batch([server_copy(8)])
    store.import_batch([server_copy(8, deletedAt=1717171717000)])
    record = store.get(8)
    if record is None or record.deleted_at != 1717171717000:
        msg = f"Expected the server tombstone, got {record}"
        raise AssertionError(msg)


def test_content_tombstone_blocks_resurrection(store: LocalStore) -> None:
    """A deletion recorded under a local id still applies when the same content arrives under a server id."""
    local = store.add(server_copy(None, time="10:00:00", createdAt=1714900000000).model_dump())
    deleted_at = store.soft_delete(local.id, origin="local")
    store.import_batch([server_copy(77, time="10:00:00", createdAt=1714900000000)])
    record = store.get(77, origin="server")
    if record is None or record.deleted_at != deleted_at:
        msg = f"Expected the server copy to inherit the local tombstone, got {record}"
        raise AssertionError(msg)


def test_update_keeps_unsupplied_fields(store: LocalStore) -> None:
    """Partial updates leave time, createdAt and tombstones untouched."""
    record = store.add({"type": "expense", "amount": 3, "category": "Bus", "budgetId": 1})
    updated = store.update({"id": record.id, "amount": 4, "time": None}, origin="local")
    if updated is None or updated.amount != 4 or updated.time != record.time:
        msg = f"Expected amount changed and time kept, got {updated}"
        raise AssertionError(msg)
    if updated.created_at != record.created_at or updated.category != "Bus":
        msg = f"Expected createdAt and category kept, got {updated}"
        raise AssertionError(msg)
    stamp = store.soft_delete(record.id, origin="local")
    after = store.update({"id": record.id, "deletedAt": None, "note": "late"}, origin="local")
    if after is None or after.deleted_at != stamp or after.note != "late":
        msg = f"Expected the tombstone to survive an update, got {after}"
        raise AssertionError(msg)


def test_hard_remove_and_clear(store: LocalStore) -> None:
    """Hard removal deletes physically and reports how many rows went."""
    record = store.add({"type": "expense", "amount": 1, "budgetId": 1})
    if store.hard_remove(record.id, origin="server") != 0:
        msg = "Expected the origin restriction to protect the local record"
        raise AssertionError(msg)
    if store.hard_remove(record.id, origin="local") != 1 or store.get(record.id) is not None:
        msg = "Expected the record to be removed"
        raise AssertionError(msg)
    store.add({"type": "expense", "amount": 2, "budgetId": 1})
    store.clear()
    if store.get_all():
        msg = "Expected an empty store after clear"
        raise AssertionError(msg)


def test_export_import_json(store: LocalStore, tmp_path: Path) -> None:
    """An export re-imports as new local records; unreadable input imports nothing."""
    store.add({"type": "income", "amount": 50, "category": "Gift", "date": "2024-06-01", "budgetId": 1})
    exported = store.export_json()
    other = LocalStore(f"sqlite:///{tmp_path / 'other.db'}")
    if other.import_json(exported, budget_id=2) != 1:
        msg = "Expected one imported record"
        raise AssertionError(msg)
    imported = other.get_active(budget_id=2)
    if len(imported) != 1 or imported[0].category != "Gift" or imported[0].origin != "local":
        msg = f"Unexpected import: {imported}"
        raise AssertionError(msg)
    if other.import_json("not json") != 0 or other.import_json('{"a": 1}') != 0:
        msg = "Expected malformed imports to be ignored"
        raise AssertionError(msg)


def test_meta_bundle_storage(store: LocalStore) -> None:
    """Metadata bundles default to empty and are replaced on save."""
    if store.get_meta(4) != MetaBundle():
        msg = "Expected an empty default bundle"
        raise AssertionError(msg)
    bundle = MetaBundle(categories=["Rent"], members=["Ana"], sources=["Main"], updated_at=10)
    store.save_meta(4, bundle)
    if store.get_meta(4) != bundle:
        msg = f"Expected {bundle}, got {store.get_meta(4)}"
        raise AssertionError(msg)
