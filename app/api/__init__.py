"""API package: provides FastAPI dependencies and route definitions for the application."""

from .dependencies import get_auth, get_budgets, get_current_user, get_transactions  # noqa: F401
from .routes import router  # noqa: F401
