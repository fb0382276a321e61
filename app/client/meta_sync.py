"""Metadata bundle sync: categories, members and sources per budget."""

from typing import Literal

from app.client.api_client import BudgetApiClient
from app.client.local_store import LocalStore
from app.core.models import MetaBundle
from app.core.utils import get_logger, now_ms

logger = get_logger("budget-sync.meta")

MetaKind = Literal["categories", "members", "sources"]
META_KINDS: tuple[MetaKind, ...] = ("categories", "members", "sources")


def merge_bundles(local: MetaBundle, remote: MetaBundle) -> MetaBundle:
    """Take each remote list unless it is empty; an empty server list never wipes local labels."""
    merged = {kind: list(getattr(remote, kind) or getattr(local, kind)) for kind in META_KINDS}
    return MetaBundle(**merged, updated_at=max(local.updated_at, remote.updated_at))


class MetaSync:
    """Pull and push of a budget's metadata bundle, with label editing helpers."""

    def __init__(self, api: BudgetApiClient, store: LocalStore) -> None:
        """Wire to the server client and the local store."""
        self.api = api
        self.store = store

    async def pull(self, budget_id: int) -> MetaBundle:
        """Fetch the server bundle and merge it non-destructively into the local copy."""
        remote = await self.api.get_meta(budget_id)
        merged = merge_bundles(self.store.get_meta(budget_id), remote)
        self.store.save_meta(budget_id, merged)
        logger.info(
            f"Pulled metadata for budget {budget_id}: {len(merged.categories)} categories, "
            f"{len(merged.members)} members, {len(merged.sources)} sources"
        )
        return merged

    async def push(self, budget_id: int, bundle: MetaBundle | None = None) -> MetaBundle:
        """Store the bundle locally, then replace the server copy with it."""
        local = (bundle or self.store.get_meta(budget_id)).model_copy(update={"updated_at": now_ms()})
        self.store.save_meta(budget_id, local)
        saved = await self.api.put_meta(budget_id, local)
        self.store.save_meta(budget_id, saved)
        return saved

    async def add_label(self, budget_id: int, kind: MetaKind, value: str) -> MetaBundle:
        """Append a label; adding one that is already present is a no-op."""
        bundle = self.store.get_meta(budget_id)
        labels = list(getattr(bundle, kind))
        value = value.strip()
        if not value or value in labels:
            return bundle
        labels.append(value)
        return await self.push(budget_id, bundle.model_copy(update={kind: labels}))

    async def rename_label(self, budget_id: int, kind: MetaKind, old: str, new: str) -> MetaBundle:
        """Rename a label in place, keeping its position."""
        bundle = self.store.get_meta(budget_id)
        labels = list(getattr(bundle, kind))
        new = new.strip()
        if old not in labels or not new or new == old:
            return bundle
        labels = [new if label == old else label for label in labels if label != new or label == old]
        return await self.push(budget_id, bundle.model_copy(update={kind: labels}))

    async def remove_label(self, budget_id: int, kind: MetaKind, value: str) -> MetaBundle:
        """Drop a label."""
        bundle = self.store.get_meta(budget_id)
        labels = [label for label in getattr(bundle, kind) if label != value]
        if len(labels) == len(getattr(bundle, kind)):
            return bundle
        return await self.push(budget_id, bundle.model_copy(update={kind: labels}))
