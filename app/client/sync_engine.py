"""Client-side sync engine: pull, push and real-time refresh for one device replica.

Pull and push share one ``asyncio.Lock``, so a push (including the local hard removal of records the server
absorbed) always finishes before a pull may import, and a pull never resurrects a record that an
unacknowledged push is about to retire.

Background work (interval pull, debounced push, event-triggered pull) runs in tasks owned by the engine.
``stop`` cancels those tasks but never aborts a request already in flight: the network call runs shielded,
and its continuation checks the engine's generation before touching the local store.
"""

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import aclosing
from enum import Enum
from typing import Any

from app.client.api_client import BudgetApiClient
from app.client.local_store import LocalStore
from app.client.meta_sync import MetaSync
from app.core.errors import AccessDeniedError, ApiError, TransientError, UnauthorizedError
from app.core.fingerprint import content_hash, idempotency_key
from app.core.models import BulkItem, BulkResult, Origin, Transaction
from app.core.settings import ClientSettings
from app.core.utils import get_logger

logger = get_logger("budget-sync.sync")


class SyncStatus(str, Enum):
    """Last known state shown by the status indicator."""

    IDLE = "idle"
    PULLING = "pulling"
    PUSHING = "pushing"
    OK = "ok"
    LIVE = "live"
    ERROR = "error"


class SyncMode(str, Enum):
    """Whether the replica is connected to the server."""

    LOCAL = "local"
    SERVER = "server"


def to_bulk_item(budget_id: int, record: Transaction) -> BulkItem:
    """Prepare a local record for bulk upsert with its fingerprint and idempotency key."""
    fields = record.to_json()
    digest = content_hash(fields)
    return BulkItem(
        client_id=record.id,
        budget_id=budget_id,
        type=record.type,
        amount=record.amount,
        category=record.category,
        member=record.member,
        source=record.source,
        note=record.note,
        date=record.date,
        time=record.time,
        created_at=record.created_at,
        content_hash=digest,
        idempotency_key=idempotency_key(budget_id, fields, digest),
        deleted_at=record.deleted_at,
    )


def needs_push(record: Transaction) -> bool:
    """Records the server has not acknowledged, plus pending deletions."""
    return record.origin != "server" or bool(record.deleted_at)


class SyncEngine:
    """Orchestrates one device's replica against the server."""

    def __init__(
        self,
        api: BudgetApiClient,
        store: LocalStore,
        settings: ClientSettings | None = None,
        budget_id: int | None = None,
        meta: MetaSync | None = None,
        on_status: Callable[[SyncStatus], None] | None = None,
    ) -> None:
        """Wire the engine to a server client and a local store."""
        self.api = api
        self.store = store
        self.settings = settings or ClientSettings()
        self.budget_id = budget_id
        self.meta = meta
        self.on_status = on_status
        self.mode = SyncMode.LOCAL
        self.status = SyncStatus.IDLE
        self.last_error: Exception | None = None
        self.live = False
        self._lock = asyncio.Lock()
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[asyncio.Task] = set()
        self._debounce: asyncio.Task | None = None

    # --- state ---

    def _set_status(self, status: SyncStatus) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _settled_status(self) -> SyncStatus:
        return SyncStatus.LIVE if self.live else SyncStatus.OK

    # --- pull ---

    async def pull(self) -> int:
        """Import the server's active records and recent tombstones; returns how many were imported."""
        budget_id = self.budget_id
        if budget_id is None:
            return 0
        generation = self._generation
        async with self._lock:
            self._set_status(SyncStatus.PULLING)
            try:
                active = await self.api.list_transactions(budget_id)
                tombstones = await self.api.list_tombstones(budget_id)
            except ApiError as exc:
                self.last_error = exc
                self._set_status(SyncStatus.ERROR)
                raise
            if not self._is_current(generation) or budget_id != self.budget_id:
                logger.info(f"Discarding pull for budget {budget_id}: sync was stopped or switched")
                return 0
            imported = self.store.import_batch([*active, *tombstones])
            self.last_error = None
            self._set_status(self._settled_status())
        logger.info(f"Pulled {len(active)} active and {len(tombstones)} deleted records for budget {budget_id}")
        return imported

    # --- push ---

    async def push(self) -> BulkResult:
        """Submit every unacknowledged record and pending deletion, then reconcile ids."""
        budget_id = self.budget_id
        if budget_id is None:
            return BulkResult()
        generation = self._generation
        async with self._lock:
            pending = [t for t in self.store.get_all(budget_id) if needs_push(t)]
            if not pending:
                return BulkResult()
            self._set_status(SyncStatus.PUSHING)
            items = [to_bulk_item(budget_id, t) for t in pending]
            try:
                result = await self._submit(budget_id, items)
            except ApiError as exc:
                self.last_error = exc
                self._set_status(SyncStatus.ERROR)
                raise
            if not self._is_current(generation) or budget_id != self.budget_id:
                logger.info(f"Discarding push result for budget {budget_id}: sync was stopped or switched")
                return result
            self._reconcile(pending, result)
            self.last_error = None
            self._set_status(self._settled_status())
        logger.info(
            f"Pushed {len(items)} records to budget {budget_id}: created={len(result.created)} "
            f"duplicates={len(result.duplicates)} updated={len(result.updated)}"
        )
        return result

    async def _submit(self, budget_id: int, items: list[BulkItem]) -> BulkResult:
        attempts = max(1, self.settings.push_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.api.bulk_upsert(budget_id, items)
            except TransientError as exc:
                if attempt == attempts:
                    logger.warning(f"Push to budget {budget_id} failed after {attempts} attempts: {exc}")
                    raise
                delay = self.settings.push_backoff_base * 2 ** (attempt - 1)
                logger.warning(f"Push attempt {attempt}/{attempts} failed ({exc}); retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
        msg = "push retry loop exited without a result"
        raise RuntimeError(msg)

    def _reconcile(self, pending: list[Transaction], result: BulkResult) -> None:
        pushed_local = {t.id for t in pending if t.origin != "server"}
        retired = [entry for entry in result.mapping if entry.client_id in pushed_local]
        # Deletions made while the request was in flight live only on the local rows.
        tombstones: dict[int, int] = {}
        for entry in retired:
            current = self.store.get(entry.client_id, origin="local")
            if current is not None and current.deleted_at:
                tombstones[entry.server_id] = current.deleted_at
        self.store.import_batch([*result.created, *result.duplicates, *result.updated])
        for server_id, deleted_at in tombstones.items():
            self.store.soft_delete(server_id, origin="server", deleted_at=deleted_at)
        removed = sum(self.store.hard_remove(entry.client_id, origin="local") for entry in retired)
        logger.info(f"Retired {removed} local records now held under server ids")
        if tombstones:
            logger.info(f"Kept {len(tombstones)} deletions made during the push; they go out with the next push")
            self.schedule_push()

    # --- local mutations ---

    def add_transaction(self, item: Transaction | dict) -> Transaction | None:
        """Record a new local transaction in the active budget and schedule a push."""
        record = item.model_copy() if isinstance(item, Transaction) else Transaction.model_validate(item)
        record.budget_id = record.budget_id or self.budget_id
        stored = self.store.add(record)
        self.schedule_push()
        return stored

    async def delete_transaction(self, tx_id: int, origin: Origin = "local") -> int | None:
        """Tombstone a record locally; server records are also deleted on the server right away."""
        deleted_at = self.store.soft_delete(tx_id, origin=origin)
        if deleted_at is None:
            return None
        if origin == "server" and self.mode is SyncMode.SERVER:
            try:
                await self.api.delete_transaction(tx_id)
            except (UnauthorizedError, AccessDeniedError):
                raise
            except ApiError as exc:
                logger.warning(f"Server delete of {tx_id} failed ({exc}); the tombstone will be pushed")
        self.schedule_push()
        return deleted_at

    def schedule_push(self) -> None:
        """Coalesce rapid edits into one push after a quiet period."""
        if self.mode is not SyncMode.SERVER:
            return
        if self._debounce is not None and not self._debounce.done():
            self._debounce.cancel()
        self._debounce = self._spawn(self._debounced_push(self._generation))

    async def _debounced_push(self, generation: int) -> None:
        await asyncio.sleep(self.settings.push_debounce)
        if self._is_current(generation):
            await self._shielded(self._background(self.push))

    # --- lifecycle ---

    async def start(self, budget_id: int | None = None, realtime: bool = True) -> None:
        """Enter server mode for a budget: push pending work, pull, then poll and listen for changes."""
        await self.stop()
        if budget_id is not None:
            self.budget_id = budget_id
        self.mode = SyncMode.SERVER
        self._generation += 1
        generation = self._generation
        logger.info(f"Sync started for budget {self.budget_id}")
        await self._background(self.push)
        await self._background(self.pull)
        if self.meta is not None and self.budget_id is not None:
            await self._background(self.pull_meta)
        self._spawn(self._poll(generation))
        if realtime:
            self._spawn(self._listen(generation, self.budget_id))

    async def switch_budget(self, budget_id: int) -> None:
        """Restart sync for another budget."""
        await self.start(budget_id)

    async def stop(self) -> None:
        """Leave server mode; pending timers and the subscription are cancelled."""
        if self.mode is SyncMode.SERVER:
            logger.info(f"Sync stopped for budget {self.budget_id}")
        self.mode = SyncMode.LOCAL
        self._generation += 1
        self.live = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._set_status(SyncStatus.IDLE)

    async def drain(self) -> None:
        """Wait for requests already in flight to settle."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def pull_meta(self) -> None:
        """Refresh the metadata bundle of the active budget."""
        if self.meta is not None and self.budget_id is not None:
            await self.meta.pull(self.budget_id)

    # --- background tasks ---

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _shielded(self, coro: Coroutine[Any, Any, object]) -> object:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _background(self, operation: Callable[[], Coroutine[Any, Any, object]]) -> bool:
        """Run a sync operation, logging failures instead of raising. Returns False on auth failures."""
        try:
            await operation()
        except (UnauthorizedError, AccessDeniedError) as exc:
            logger.warning(f"Background {operation.__name__} rejected: {exc}")
            return False
        except ApiError as exc:
            logger.warning(f"Background {operation.__name__} failed: {exc}")
        return True

    async def _poll(self, generation: int) -> None:
        while self._is_current(generation):
            await asyncio.sleep(self.settings.pull_interval)
            if not self._is_current(generation):
                break
            if not await self._shielded(self._background(self.pull)):
                break

    async def _listen(self, generation: int, budget_id: int | None) -> None:
        if budget_id is None:
            return
        try:
            async with aclosing(self.api.events(budget_id)) as events:
                async for event in events:
                    if not self._is_current(generation):
                        break
                    if event.event == "hello":
                        self.live = True
                        self._set_status(SyncStatus.LIVE)
                    elif event.event == "update":
                        await self._handle_update(event.data)
        except ApiError as exc:
            logger.warning(f"Real-time channel for budget {budget_id} closed ({exc}); relying on polling")
        finally:
            if generation == self._generation:
                self.live = False

    async def _handle_update(self, payload: dict) -> None:
        if payload.get("op") == "meta":
            await self._shielded(self._background(self.pull_meta))
        else:
            await self._shielded(self._background(self.pull))
