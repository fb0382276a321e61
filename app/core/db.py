"""JSON file persistence for the budget sync server.

Every collection lives in its own JSON file under the configured data directory. Mutations go through
``JsonStore.mutate``, which holds a per-collection lock around the whole load-mutate-save sequence so two
concurrent requests cannot each load a stale snapshot and overwrite each other's writes.
"""

import json
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from app.core.utils import ensure_dir, get_logger

logger = get_logger("budget-sync.db")

TRANSACTIONS = "transactions"
USERS = "users"
SESSIONS = "sessions"
BUDGETS = "budgets"
INVITATIONS = "invitations"
SETTINGS = "settings"
BUDGET_META = "budget_meta"

COLLECTION_DEFAULTS: dict[str, Any] = {
    TRANSACTIONS: [],
    USERS: [],
    SESSIONS: [],
    BUDGETS: [],
    INVITATIONS: [],
    SETTINGS: [],
    BUDGET_META: {},
}


class JsonStore:
    """Whole-file JSON collections with per-collection locking."""

    def __init__(self, data_dir: str | Path) -> None:
        """Create the data directory and seed missing collection files."""
        self.data_dir = Path(data_dir)
        self._locks = {name: threading.RLock() for name in COLLECTION_DEFAULTS}
        self.ensure_files()

    def path(self, name: str) -> Path:
        """Return the file backing a collection."""
        return self.data_dir / f"{name}.json"

    def ensure_files(self) -> None:
        """Create empty collection files that do not exist yet."""
        ensure_dir(self.data_dir)
        for name, default in COLLECTION_DEFAULTS.items():
            path = self.path(name)
            if not path.exists():
                self._write(path, default)

    def read(self, name: str) -> Any:
        """Load a collection, falling back to its empty default on a missing or corrupt file."""
        with self._locks[name]:
            return self._read(name)

    def write(self, name: str, data: Any) -> None:
        """Replace a collection."""
        with self._locks[name]:
            self._write(self.path(name), data)

    @contextmanager
    def mutate(self, name: str) -> Iterator[Any]:
        """Yield a collection for in-place mutation and save it when the block exits cleanly."""
        with self._locks[name]:
            data = self._read(name)
            yield data
            self._write(self.path(name), data)

    def _read(self, name: str) -> Any:
        path = self.path(name)
        try:
            with path.open(encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return _fresh(name)
        except json.JSONDecodeError:
            logger.warning(f"Corrupt collection file {path}, treating as empty")
            return _fresh(name)

    @staticmethod
    def _write(path: Path, data: Any) -> None:
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
        os.replace(tmp, path)


def _fresh(name: str) -> Any:
    default = COLLECTION_DEFAULTS[name]
    return type(default)()


def next_id(records: list[dict]) -> int:
    """Next sequential integer id for a collection of records."""
    return max((int(r.get("id") or 0) for r in records), default=0) + 1
