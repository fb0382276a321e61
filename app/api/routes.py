"""FastAPI endpoints for the budget sync API.

This module defines the routes for authentication, budgets and invitations, per-budget metadata, the
transaction sync endpoints (active listing, tombstone feed, single create, bulk upsert, soft delete) and the
server-sent events channel. Domain errors raised by the services are turned into JSON errors by the handler
registered in the application factory.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import StreamingResponse

from app.api.dependencies import (
    bearer_token,
    get_auth,
    get_budgets,
    get_current_user,
    get_notifier,
    get_transactions,
)
from app.core.errors import NotFoundError
from app.core.models import (
    Budget,
    BudgetCreate,
    BudgetUpdate,
    BulkRequest,
    BulkResult,
    LoginRequest,
    LoginResponse,
    MemberInvite,
    MetaBundle,
    MetaUpdate,
    RegisterRequest,
    SoftDeleteResult,
    Transaction,
    TransactionCreate,
    UserPublic,
)
from app.core.utils import get_logger
from app.services.auth_service import AuthService
from app.services.budget_service import BudgetService
from app.services.transaction_store import TransactionStore
from app.workers.notifier import ChangeNotifier

router = APIRouter()
logger = get_logger("budget-sync.api")


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


# --- Auth ---


@router.post("/api/register", status_code=201, response_model=UserPublic, summary="Create a user account")
async def register(req: RegisterRequest, auth: AuthService = Depends(get_auth)) -> UserPublic:
    """Register a new user; 409 when the email is taken."""
    return auth.register(req)


@router.post("/api/login", response_model=LoginResponse, summary="Open a session and obtain a bearer token")
async def login(req: LoginRequest, auth: AuthService = Depends(get_auth)) -> LoginResponse:
    """Exchange credentials for a bearer token."""
    return auth.login(req)


@router.get("/api/me", summary="Current user")
async def me(user: UserPublic = Depends(get_current_user)) -> dict:
    """Return the authenticated user."""
    return {"user": user.to_json()}


@router.get("/api/settings", summary="Per-user settings")
async def get_user_settings(
    user: UserPublic = Depends(get_current_user), auth: AuthService = Depends(get_auth)
) -> dict:
    """Return the user's opaque settings object."""
    return auth.get_user_settings(user.id)


@router.put("/api/settings", summary="Replace per-user settings")
async def put_user_settings(
    payload: dict[str, Any] | None = Body(default=None),
    user: UserPublic = Depends(get_current_user),
    auth: AuthService = Depends(get_auth),
) -> dict:
    """Replace the user's opaque settings object."""
    return auth.put_user_settings(user.id, payload or {})


@router.get("/api/meta", summary="Global default members and sources")
async def default_meta(budgets: BudgetService = Depends(get_budgets)) -> dict:
    """Defaults offered to budgets that have no metadata yet."""
    return budgets.default_meta()


# --- Budgets ---


@router.get("/api/budgets", response_model=list[Budget], summary="Budgets visible to the user")
async def list_budgets(
    user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> list[Budget]:
    """Budgets the user owns or belongs to."""
    return budgets.list_for_user(user.id)


@router.post("/api/budgets", status_code=201, response_model=Budget, summary="Create a budget")
async def create_budget(
    req: BudgetCreate, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> Budget:
    """Create a budget owned by the caller."""
    return budgets.create(user.id, req.name)


@router.get("/api/budgets/{budget_id}", response_model=Budget, summary="Get a budget")
async def get_budget(
    budget_id: int, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> Budget:
    """Return a budget the caller belongs to; 404 otherwise."""
    budget = budgets.get_if_member(budget_id, user.id)
    if budget is None:
        raise NotFoundError("not_found")
    return budget


@router.put("/api/budgets/{budget_id}", response_model=Budget, summary="Rename a budget (owner only)")
async def update_budget(
    budget_id: int,
    req: BudgetUpdate,
    user: UserPublic = Depends(get_current_user),
    budgets: BudgetService = Depends(get_budgets),
) -> Budget:
    """Rename a budget."""
    return budgets.rename(budget_id, user.id, req.name)


@router.delete("/api/budgets/{budget_id}", summary="Delete a budget and everything in it (owner only)")
async def delete_budget(
    budget_id: int, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> dict:
    """Delete a budget, hard-deleting its transactions, invitations and metadata."""
    budgets.delete(budget_id, user.id)
    return {"status": "deleted"}


@router.post("/api/budgets/{budget_id}/members", summary="Add a member or invite by email (owner only)")
async def add_member(
    budget_id: int,
    req: MemberInvite,
    user: UserPublic = Depends(get_current_user),
    budgets: BudgetService = Depends(get_budgets),
) -> dict:
    """Add a registered user directly or issue an invitation token."""
    return budgets.add_member(budget_id, user.id, req.email, req.role)


@router.post("/api/invitations/{token}/accept", summary="Accept an invitation")
async def accept_invitation(
    token: str, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> dict:
    """Join the invited budget."""
    return budgets.accept_invitation(token, user.id)


@router.post("/api/invitations/{token}/decline", summary="Decline an invitation")
async def decline_invitation(
    token: str, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> dict:
    """Decline the invitation."""
    _ = user
    return budgets.decline_invitation(token)


@router.get("/api/budgets/{budget_id}/meta", response_model=MetaBundle, summary="Get budget metadata")
async def get_budget_meta(
    budget_id: int, user: UserPublic = Depends(get_current_user), budgets: BudgetService = Depends(get_budgets)
) -> MetaBundle:
    """Categories, members and sources of a budget."""
    budgets.require_member(budget_id, user.id)
    return budgets.get_meta(budget_id)


@router.put("/api/budgets/{budget_id}/meta", response_model=MetaBundle, summary="Replace budget metadata")
async def put_budget_meta(
    budget_id: int,
    req: MetaUpdate,
    user: UserPublic = Depends(get_current_user),
    budgets: BudgetService = Depends(get_budgets),
) -> MetaBundle:
    """Replace the whole bundle; subscribers receive a ``meta`` update."""
    budgets.require_member(budget_id, user.id)
    return budgets.put_meta(budget_id, req)


# --- Transactions ---


@router.get(
    "/api/transactions",
    response_model=list[Transaction],
    summary="List active transactions",
    description="Transactions of the budget that are not soft-deleted. Tombstones are only exposed by the feed.",
)
async def list_transactions(
    budget_id: int = Query(alias="budgetId"),
    user: UserPublic = Depends(get_current_user),
    budgets: BudgetService = Depends(get_budgets),
    store: TransactionStore = Depends(get_transactions),
) -> list[Transaction]:
    """Active transactions of a budget."""
    budgets.require_member(budget_id, user.id)
    return store.list_active(budget_id)


@router.get(
    "/api/transactions/tombstones",
    response_model=list[Transaction],
    summary="Recent soft deletions",
    description="Soft-deleted transactions with `deletedAt >= since`, limited to the configured horizon.",
)
async def list_tombstones(
    budget_id: int = Query(alias="budgetId"),
    since: int | None = Query(default=None),
    user: UserPublic = Depends(get_current_user),
    budgets: BudgetService = Depends(get_budgets),
    store: TransactionStore = Depends(get_transactions),
) -> list[Transaction]:
    """Tombstones a replica may have missed while offline."""
    budgets.require_member(budget_id, user.id)
    return store.list_tombstones(budget_id, since)


@router.post("/api/transactions", status_code=201, response_model=Transaction, summary="Create one transaction")
async def create_transaction(
    req: TransactionCreate,
    user: UserPublic = Depends(get_current_user),
    store: TransactionStore = Depends(get_transactions),
) -> Transaction:
    """Insert a transaction; subscribers receive a ``create`` update."""
    return store.create(req, user.id)


@router.post(
    "/api/transactions/bulk",
    response_model=BulkResult,
    summary="Bulk upsert with deduplication",
    description=(
        "Reconcile a batch of client records against the budget's transactions.\n\n"
        "**Response:** `{created, duplicates, updated, mapping}` where `mapping` resolves every submitted "
        "`clientId` to its `serverId`. Re-submitting the same batch creates nothing new."
    ),
)
async def bulk_upsert(
    req: BulkRequest,
    user: UserPublic = Depends(get_current_user),
    store: TransactionStore = Depends(get_transactions),
) -> BulkResult:
    """Idempotent batch insert with tombstone propagation."""
    try:
        return store.bulk_upsert(req.budget_id, req.items, user.id)
    except Exception:
        logger.exception(f"Bulk upsert failed for budget {req.budget_id}")
        raise


@router.delete("/api/transactions/{tx_id}", response_model=SoftDeleteResult, summary="Soft delete a transaction")
async def delete_transaction(
    tx_id: int,
    user: UserPublic = Depends(get_current_user),
    store: TransactionStore = Depends(get_transactions),
) -> SoftDeleteResult:
    """Stamp ``deletedAt``; repeating the call returns the original stamp."""
    return store.soft_delete(tx_id, user.id)


# --- Real-time ---


@router.get(
    "/api/events",
    summary="Subscribe to budget changes",
    description=(
        "Server-sent events stream. Emits `hello` on connect, `ping` every keepalive interval and `update` "
        "with `{budgetId, op, id?, count?}` after each mutation. The token may be passed as `?token=` since "
        "EventSource cannot set headers."
    ),
    response_class=StreamingResponse,
)
async def events(
    budget_id: int = Query(alias="budgetId"),
    token: str | None = Query(default=None),
    header_token: str | None = Depends(bearer_token),
    auth: AuthService = Depends(get_auth),
    budgets: BudgetService = Depends(get_budgets),
    notifier: ChangeNotifier = Depends(get_notifier),
) -> StreamingResponse:
    """Open an event stream on one budget."""
    user = auth.authenticate(header_token or token)
    budgets.require_member(budget_id, user.id)
    sub = notifier.subscribe(budget_id)
    return StreamingResponse(
        notifier.stream(sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
