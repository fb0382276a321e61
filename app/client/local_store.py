"""Device-local replica of transactions and metadata bundles, stored with SQLAlchemy.

A record is identified by ``(origin, id)``: locally created records take ids from the table's
autoincrement sequence, server copies keep their server id. Storage errors are soft failures: they are
logged and the operation returns an empty or default result instead of raising.
"""

import json
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import JSON, Column, Integer, String, UniqueConstraint, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.fingerprint import content_hash
from app.core.models import MetaBundle, Origin, Transaction
from app.core.settings import ClientSettings
from app.core.utils import get_logger, now_ms, now_time, safe_cast, today_iso

logger = get_logger("budget-sync.local")

LocalBase = declarative_base()


class LocalTransaction(LocalBase):
    """One replica record; the full camelCase record lives in ``data``."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("origin", "id", name="uq_origin_id"), {"sqlite_autoincrement": True})
    key = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Integer, nullable=True, index=True)
    origin = Column(String, nullable=False, default="local")
    budget_id = Column(Integer, nullable=True, index=True)
    fingerprint = Column(String, nullable=True, index=True)
    deleted_at = Column(Integer, nullable=True)
    data = Column(JSON, nullable=False)

    def to_model(self) -> Transaction:
        """Decode the stored record."""
        record = Transaction.model_validate(self.data)
        record.id = self.id
        record.origin = self.origin
        record.deleted_at = self.deleted_at
        return record


class LocalMeta(LocalBase):
    """Per-budget metadata bundle."""

    __tablename__ = "budget_meta"
    budget_id = Column(Integer, primary_key=True)
    categories = Column(JSON, nullable=False, default=list)
    members = Column(JSON, nullable=False, default=list)
    sources = Column(JSON, nullable=False, default=list)
    updated_at = Column(Integer, nullable=False, default=0)


def _store(row: LocalTransaction, record: Transaction) -> None:
    data = record.to_json(exclude={"origin", "deleted_at", "id"})
    row.id = record.id
    row.origin = record.origin or "local"
    row.budget_id = record.budget_id
    row.deleted_at = record.deleted_at
    row.fingerprint = content_hash(data)
    row.data = data


class LocalStore:
    """Durable keyed store for one device."""

    def __init__(self, url: str, settings: ClientSettings | None = None) -> None:
        """Open (and create if needed) the SQLite database at ``url``."""
        self.settings = settings or ClientSettings()
        self.engine = create_engine(url)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        LocalBase.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _rows(self, session: Session, tx_id: object, origin: Origin | None) -> list[LocalTransaction]:
        lookup = safe_cast(tx_id, int)
        stmt = select(LocalTransaction).order_by(LocalTransaction.key)
        if origin:
            stmt = stmt.where(LocalTransaction.origin == origin)
        if lookup is not None:
            rows = list(session.scalars(stmt.where(LocalTransaction.id == lookup)))
            if rows:
                return rows
        wanted = str(tx_id).strip()
        return [r for r in session.scalars(stmt) if str(r.id) == wanted]

    def add(self, item: Transaction | dict) -> Transaction | None:
        """Append a record, filling date, member, source, origin and creation stamps when absent."""
        record = item.model_copy() if isinstance(item, Transaction) else Transaction.model_validate(item)
        record.date = record.date or today_iso()
        record.member = record.member or self.settings.default_member
        record.source = record.source or self.settings.default_source
        record.origin = record.origin or "local"
        record.time = record.time or now_time()
        record.created_at = record.created_at or now_ms()
        try:
            with self._session() as session:
                row = LocalTransaction()
                _store(row, record)
                session.add(row)
                session.flush()
                if row.id is None:
                    row.id = row.key
                    record.id = row.key
        except SQLAlchemyError:
            logger.warning("Local add failed", exc_info=True)
            return None
        return record

    def get_all(self, budget_id: int | None = None) -> list[Transaction]:
        """Every record including tombstones, optionally limited to one budget."""
        try:
            with self._session() as session:
                stmt = select(LocalTransaction).order_by(LocalTransaction.key)
                if budget_id is not None:
                    stmt = stmt.where(LocalTransaction.budget_id == budget_id)
                return [row.to_model() for row in session.scalars(stmt)]
        except SQLAlchemyError:
            logger.warning("Local read failed", exc_info=True)
            return []

    def get_active(self, budget_id: int | None = None) -> list[Transaction]:
        """Records that are not tombstoned."""
        return [t for t in self.get_all(budget_id) if not t.deleted_at]

    def get(self, tx_id: object, origin: Origin | None = None) -> Transaction | None:
        """First record matching the id (and origin when given)."""
        try:
            with self._session() as session:
                rows = self._rows(session, tx_id, origin)
                return rows[0].to_model() if rows else None
        except SQLAlchemyError:
            logger.warning(f"Local lookup of {tx_id} failed", exc_info=True)
            return None

    def soft_delete(self, tx_id: object, origin: Origin | None = None, deleted_at: int | None = None) -> int | None:
        """Tombstone a record; repeated calls keep the first ``deletedAt``. Returns the stamp.

        ``deleted_at`` carries over a stamp recorded elsewhere; the current time is used otherwise.
        """
        try:
            with self._session() as session:
                rows = self._rows(session, tx_id, origin)
                if not rows:
                    return None
                row = rows[0]
                if not row.deleted_at:
                    row.deleted_at = deleted_at or now_ms()
                return row.deleted_at
        except SQLAlchemyError:
            logger.warning(f"Local soft delete of {tx_id} failed", exc_info=True)
            return None

    def hard_remove(self, tx_id: object, origin: Origin | None = None) -> int:
        """Physically delete matching records; returns how many were removed."""
        try:
            with self._session() as session:
                rows = self._rows(session, tx_id, origin)
                for row in rows:
                    session.delete(row)
                return len(rows)
        except SQLAlchemyError:
            logger.warning(f"Local hard remove of {tx_id} failed", exc_info=True)
            return 0

    def update(self, patch: Transaction | dict, origin: Origin | None = None) -> Transaction | None:
        """Merge supplied fields onto an existing record; fields absent from the patch are kept."""
        if isinstance(patch, Transaction):
            changes = patch.model_dump(exclude_unset=True)
        else:
            changes = Transaction.model_validate(patch).model_dump(exclude_unset=True)
        tx_id = changes.pop("id", None)
        changes.pop("origin", None)
        for kept in ("time", "created_at"):
            if changes.get(kept) is None:
                changes.pop(kept, None)
        try:
            with self._session() as session:
                rows = self._rows(session, tx_id, origin)
                if not rows:
                    return None
                row = rows[0]
                current = row.to_model()
                if current.deleted_at:
                    changes.pop("deleted_at", None)
                merged = current.model_copy(update=changes)
                _store(row, merged)
                return merged
        except SQLAlchemyError:
            logger.warning(f"Local update of {tx_id} failed", exc_info=True)
            return None

    def import_batch(self, records: Iterable[Transaction]) -> int:
        """Upsert server-origin records without ever clearing a local tombstone.

        When no server copy with the same id exists yet, a tombstone with the same content recorded under
        another id still wins, so a deletion made before the ids were reconciled survives the import.
        """
        count = 0
        try:
            with self._session() as session:
                for incoming in records:
                    record = incoming.model_copy(update={"origin": "server"})
                    row = session.scalars(
                        select(LocalTransaction).where(
                            LocalTransaction.origin == "server", LocalTransaction.id == record.id
                        )
                    ).first()
                    if row is not None:
                        record.deleted_at = row.deleted_at or record.deleted_at
                    else:
                        if not record.deleted_at:
                            record.deleted_at = self._content_tombstone(session, record)
                        row = LocalTransaction()
                        session.add(row)
                    _store(row, record)
                    session.flush()
                    count += 1
        except SQLAlchemyError:
            logger.warning("Local import failed", exc_info=True)
            return 0
        return count

    def _content_tombstone(self, session: Session, record: Transaction) -> int | None:
        fingerprint = content_hash(record.to_json(exclude={"origin", "deleted_at", "id"}))
        stmt = select(LocalTransaction.deleted_at).where(
            LocalTransaction.fingerprint == fingerprint,
            LocalTransaction.deleted_at.is_not(None),
            LocalTransaction.budget_id == record.budget_id,
        )
        return session.scalars(stmt).first()

    def clear(self) -> None:
        """Drop every transaction."""
        try:
            with self._session() as session:
                session.query(LocalTransaction).delete()
        except SQLAlchemyError:
            logger.warning("Local clear failed", exc_info=True)

    def export_json(self) -> str:
        """Serialize every record, tombstones included."""
        return json.dumps([t.to_json() for t in self.get_all()], indent=2, ensure_ascii=False)

    def import_json(self, text: str, budget_id: int | None = None) -> int:
        """Add records from an export as new local entries; unreadable input imports nothing."""
        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable JSON import")
            return 0
        if not isinstance(items, list):
            return 0
        added = 0
        for raw in items:
            if not isinstance(raw, dict):
                continue
            fields = {k: raw.get(k) for k in ("type", "amount", "category", "note", "date") if raw.get(k) is not None}
            fields["budgetId"] = budget_id if budget_id is not None else raw.get("budgetId")
            if self.add(fields) is not None:
                added += 1
        return added

    def get_meta(self, budget_id: int) -> MetaBundle:
        """The local metadata bundle; empty when none is stored."""
        try:
            with self._session() as session:
                row = session.get(LocalMeta, budget_id)
                if row is None:
                    return MetaBundle()
                return MetaBundle(
                    categories=list(row.categories or []),
                    members=list(row.members or []),
                    sources=list(row.sources or []),
                    updated_at=row.updated_at or 0,
                )
        except SQLAlchemyError:
            logger.warning(f"Local meta read for budget {budget_id} failed", exc_info=True)
            return MetaBundle()

    def save_meta(self, budget_id: int, bundle: MetaBundle) -> None:
        """Replace the local metadata bundle."""
        try:
            with self._session() as session:
                row = session.get(LocalMeta, budget_id) or LocalMeta(budget_id=budget_id)
                row.categories = list(bundle.categories)
                row.members = list(bundle.members)
                row.sources = list(bundle.sources)
                row.updated_at = bundle.updated_at
                session.add(row)
        except SQLAlchemyError:
            logger.warning(f"Local meta write for budget {budget_id} failed", exc_info=True)

