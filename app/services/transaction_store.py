"""Authoritative per-budget transaction set.

All mutation goes through ``create``, ``bulk_upsert`` or ``soft_delete``; each one loads the whole
collection, mutates it in memory and saves it once under the collection lock. Records are never removed
here: a deletion stamps ``deletedAt`` and the record stays behind as a tombstone so the deletion can reach
other replicas.
"""

from app.core.db import TRANSACTIONS, JsonStore, next_id
from app.core.errors import NotFoundError
from app.core.fingerprint import content_hash, dedup_key, idempotency_key
from app.core.models import (
    BulkItem,
    BulkResult,
    ChangeEvent,
    IdMapping,
    SoftDeleteResult,
    Transaction,
    TransactionCreate,
)
from app.core.settings import Settings
from app.core.utils import get_logger, now_ms
from app.services.budget_service import BudgetService
from app.workers.notifier import ChangeNotifier

logger = get_logger("budget-sync.store")

DAY_MS = 24 * 60 * 60 * 1000

# Semantic fields copied from a submitted item onto the stored record.
STORED_FIELDS = ("type", "amount", "category", "member", "source", "note", "date", "time", "createdAt")


def record_key(record: dict) -> str:
    """Natural dedup key of a stored record, hashing legacy records that lack a contentHash."""
    digest = record.get("contentHash") or content_hash(record)
    return dedup_key(record.get("budgetId") or 0, digest, record.get("amount"), record.get("date"))


def _in_budget(record: dict, budget_id: int) -> bool:
    return int(record.get("budgetId") or 0) == budget_id


class TransactionStore:
    """Read, bulk upsert and soft delete over the JSON transaction collection."""

    def __init__(
        self, store: JsonStore, settings: Settings, budgets: BudgetService, notifier: ChangeNotifier
    ) -> None:
        """Bind the store to persistence, membership checks and the change notifier."""
        self.store = store
        self.settings = settings
        self.budgets = budgets
        self.notifier = notifier

    def list_active(self, budget_id: int) -> list[Transaction]:
        """Every transaction of the budget that has not been soft-deleted."""
        return [
            Transaction.model_validate(t)
            for t in self.store.read(TRANSACTIONS)
            if _in_budget(t, budget_id) and not t.get("deletedAt")
        ]

    def list_tombstones(self, budget_id: int, since: int | None = None) -> list[Transaction]:
        """Soft-deleted transactions of the budget, bounded by the tombstone horizon."""
        horizon = now_ms() - self.settings.tombstone_horizon_days * DAY_MS
        floor = max(since or 0, horizon)
        return [
            Transaction.model_validate(t)
            for t in self.store.read(TRANSACTIONS)
            if _in_budget(t, budget_id) and t.get("deletedAt") and t["deletedAt"] >= floor
        ]

    def get(self, tx_id: int) -> Transaction:
        """Transaction by server id, tombstones included."""
        raw = next((t for t in self.store.read(TRANSACTIONS) if t.get("id") == tx_id), None)
        if raw is None:
            raise NotFoundError("not_found")
        return Transaction.model_validate(raw)

    def create(self, item: TransactionCreate, user_id: int) -> Transaction:
        """Insert one transaction without deduplication."""
        self.budgets.require_member(item.budget_id, user_id)
        fields = item.to_json()
        digest = content_hash(fields)
        with self.store.mutate(TRANSACTIONS) as records:
            tx = Transaction(
                **{k: v for k, v in item.model_dump().items() if k != "budget_id"},
                id=next_id(records),
                budget_id=item.budget_id,
                created_by=user_id,
                content_hash=digest,
                idempotency_key=idempotency_key(item.budget_id, fields, digest),
            )
            records.append(tx.to_json(exclude={"origin"}))
        logger.info(f"Created transaction {tx.id} in budget {tx.budget_id}")
        self.notifier.publish(ChangeEvent(budget_id=item.budget_id, id=tx.id, op="create"))
        return tx

    def bulk_upsert(self, budget_id: int, items: list[BulkItem], user_id: int) -> BulkResult:
        """Reconcile a batch of client records against the authoritative set.

        A record whose natural key is already present is a duplicate, unless the submission carries a
        deletion the server has not seen yet, in which case the existing record is soft-deleted and
        reported as updated. Everything else is created. Re-submitting the same batch is a no-op.
        """
        self.budgets.require_member(budget_id, user_id)
        result = BulkResult()
        with self.store.mutate(TRANSACTIONS) as records:
            by_key = {}
            for t in records:
                if _in_budget(t, budget_id):
                    # Legacy records get their fingerprint written back so resubmissions match them.
                    if not t.get("contentHash"):
                        t["contentHash"] = content_hash(t)
                    by_key[record_key(t)] = t
            new_id = next_id(records)
            for item in items:
                raw = item.to_json()
                digest = item.content_hash or content_hash(raw)
                key = dedup_key(budget_id, digest, raw.get("amount"), raw.get("date"))
                submitted_key = item.idempotency_key or idempotency_key(budget_id, raw, digest)
                existing = by_key.get(key)
                if existing is not None and (
                    existing.get("idempotencyKey") == submitted_key or existing.get("contentHash") == digest
                ):
                    if item.deleted_at and not existing.get("deletedAt"):
                        existing["deletedAt"] = item.deleted_at
                        result.updated.append(Transaction.model_validate(existing))
                    else:
                        result.duplicates.append(Transaction.model_validate(existing))
                    result.mapping.append(IdMapping(client_id=item.client_id, server_id=existing["id"]))
                    continue
                record = {field: raw.get(field) for field in STORED_FIELDS}
                record.update(
                    id=new_id,
                    budgetId=budget_id,
                    createdBy=user_id,
                    contentHash=digest,
                    idempotencyKey=submitted_key,
                    deletedAt=item.deleted_at,
                )
                new_id += 1
                records.append(record)
                by_key[key] = record
                result.created.append(Transaction.model_validate(record))
                result.mapping.append(IdMapping(client_id=item.client_id, server_id=record["id"]))
        logger.info(
            f"Bulk upsert on budget {budget_id}: created={len(result.created)} "
            f"duplicates={len(result.duplicates)} updated={len(result.updated)}"
        )
        self.notifier.publish(ChangeEvent(budget_id=budget_id, count=len(result.created), op="bulk"))
        return result

    def soft_delete(self, tx_id: int, user_id: int) -> SoftDeleteResult:
        """Stamp ``deletedAt`` on a transaction; deleting a tombstone again returns the original stamp."""
        with self.store.mutate(TRANSACTIONS) as records:
            record = next((t for t in records if t.get("id") == tx_id), None)
            if record is None:
                raise NotFoundError("not_found")
            budget_id = int(record.get("budgetId") or 0)
            self.budgets.require_member(budget_id, user_id)
            if not record.get("deletedAt"):
                record["deletedAt"] = now_ms()
                logger.info(f"Soft-deleted transaction {tx_id} in budget {budget_id}")
        self.notifier.publish(ChangeEvent(budget_id=budget_id, id=tx_id, op="soft_delete"))
        return SoftDeleteResult(id=tx_id, deleted_at=record["deletedAt"])
