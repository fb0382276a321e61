"""FastAPI dependencies for DI (services, notifier, authenticated user).

The application factory stores one instance of each service on ``app.state``; these helpers hand them to the
endpoints so tests can build isolated apps with their own data directory.
"""

from fastapi import Depends, Header, Request

from app.core.models import UserPublic
from app.services.auth_service import AuthService
from app.services.budget_service import BudgetService
from app.services.transaction_store import TransactionStore
from app.workers.notifier import ChangeNotifier

BEARER_PREFIX = "Bearer "


def get_auth(request: Request) -> AuthService:
    """Provide the AuthService instance for dependency injection."""
    return request.app.state.auth


def get_budgets(request: Request) -> BudgetService:
    """Provide the BudgetService instance for dependency injection."""
    return request.app.state.budgets


def get_transactions(request: Request) -> TransactionStore:
    """Provide the TransactionStore instance for dependency injection."""
    return request.app.state.transactions


def get_notifier(request: Request) -> ChangeNotifier:
    """Provide the ChangeNotifier registry for dependency injection."""
    return request.app.state.notifier


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    """Extract the token from an ``Authorization: Bearer`` header."""
    if authorization and authorization.startswith(BEARER_PREFIX):
        return authorization[len(BEARER_PREFIX) :]
    return None


def get_current_user(
    token: str | None = Depends(bearer_token), auth: AuthService = Depends(get_auth)
) -> UserPublic:
    """Resolve the bearer token to a user; AuthError becomes 401."""
    return auth.authenticate(token)
