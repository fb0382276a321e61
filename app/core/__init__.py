"""Core package: provides models, JSON persistence, settings, fingerprinting and shared utilities."""

from .db import JsonStore  # noqa: F401
from .fingerprint import content_hash, idempotency_key  # noqa: F401
from .models import BulkResult, MetaBundle, Transaction  # noqa: F401
from .settings import ClientSettings, Settings  # noqa: F401
from .utils import get_logger  # noqa: F401
