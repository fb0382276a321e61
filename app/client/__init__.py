"""Client package: device-side replica, HTTP client and sync orchestration."""

from .api_client import BudgetApiClient  # noqa: F401
from .local_store import LocalStore  # noqa: F401
from .meta_sync import MetaSync  # noqa: F401
from .sync_engine import SyncEngine, SyncMode, SyncStatus  # noqa: F401
