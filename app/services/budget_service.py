"""Budgets, membership, invitations and per-budget metadata bundles."""

from app.core.db import BUDGET_META, BUDGETS, INVITATIONS, TRANSACTIONS, JsonStore, next_id
from app.core.errors import ConflictError, ForbiddenError, InvalidPayloadError, NotFoundError
from app.core.models import Budget, BudgetMember, ChangeEvent, Invitation, MetaBundle, MetaUpdate
from app.core.settings import Settings
from app.core.utils import get_logger, now_ms
from app.services.auth_service import AuthService, make_token
from app.workers.notifier import ChangeNotifier

logger = get_logger("budget-sync.budgets")


def _is_member(budget: dict, user_id: int) -> bool:
    if budget["ownerId"] == user_id:
        return True
    return any(m["userId"] == user_id for m in budget.get("members") or [])


def _as_list(value: object) -> list[str]:
    return list(value) if isinstance(value, list) else []


class BudgetService:
    """Budget records and everything scoped to a single budget except transactions."""

    def __init__(self, store: JsonStore, settings: Settings, auth: AuthService, notifier: ChangeNotifier) -> None:
        """Wire the service to persistence, accounts and the change notifier."""
        self.store = store
        self.settings = settings
        self.auth = auth
        self.notifier = notifier

    def list_for_user(self, user_id: int) -> list[Budget]:
        """Budgets the user owns or is a member of."""
        return [Budget.model_validate(b) for b in self.store.read(BUDGETS) if _is_member(b, user_id)]

    def create(self, user_id: int, name: str) -> Budget:
        """Create a budget owned by the user."""
        with self.store.mutate(BUDGETS) as budgets:
            budget = Budget(id=next_id(budgets), name=name.strip(), owner_id=user_id, created_at=now_ms())
            budgets.append(budget.to_json())
        logger.info(f"User {user_id} created budget {budget.id}")
        return budget

    def get_if_member(self, budget_id: int, user_id: int) -> Budget | None:
        """The budget when the user may see it, otherwise None."""
        raw = next((b for b in self.store.read(BUDGETS) if b["id"] == int(budget_id)), None)
        if raw is None or not _is_member(raw, user_id):
            return None
        return Budget.model_validate(raw)

    def require_member(self, budget_id: int | None, user_id: int) -> Budget:
        """Membership gate; raises ForbiddenError."""
        budget = self.get_if_member(budget_id, user_id) if budget_id is not None else None
        if budget is None:
            raise ForbiddenError("forbidden")
        return budget

    def _owned(self, budgets: list[dict], budget_id: int, user_id: int) -> dict:
        budget = next((b for b in budgets if b["id"] == budget_id), None)
        if budget is None:
            raise NotFoundError("not_found")
        if budget["ownerId"] != user_id:
            raise ForbiddenError("forbidden")
        return budget

    def rename(self, budget_id: int, user_id: int, name: str | None) -> Budget:
        """Owner-only rename; blank names are ignored."""
        with self.store.mutate(BUDGETS) as budgets:
            budget = self._owned(budgets, budget_id, user_id)
            if name and name.strip():
                budget["name"] = name.strip()
        return Budget.model_validate(budget)

    def delete(self, budget_id: int, user_id: int) -> None:
        """Owner-only delete, cascading to transactions, invitations and metadata."""
        with self.store.mutate(BUDGETS) as budgets:
            self._owned(budgets, budget_id, user_id)
            with self.store.mutate(TRANSACTIONS) as txs:
                txs[:] = [t for t in txs if int(t.get("budgetId") or 0) != budget_id]
            with self.store.mutate(INVITATIONS) as invites:
                invites[:] = [i for i in invites if int(i.get("budgetId") or 0) != budget_id]
            with self.store.mutate(BUDGET_META) as meta:
                meta.pop(str(budget_id), None)
            budgets[:] = [b for b in budgets if b["id"] != budget_id]
        logger.info(f"User {user_id} deleted budget {budget_id}")

    def add_member(self, budget_id: int, user_id: int, email: str, role: str) -> dict:
        """Add an existing user directly, or issue a pending invitation."""
        invitee = self.auth.find_user_by_email(email)
        with self.store.mutate(BUDGETS) as budgets:
            budget = self._owned(budgets, budget_id, user_id)
            if invitee:
                members = budget.setdefault("members", [])
                if not any(m["userId"] == invitee["id"] for m in members):
                    members.append(BudgetMember(user_id=invitee["id"], role=role or "editor").to_json())
                return {"status": "added", "userId": invitee["id"]}
        created = now_ms()
        with self.store.mutate(INVITATIONS) as invites:
            invite = Invitation(
                id=next_id(invites),
                token=make_token(),
                budget_id=budget_id,
                email=email,
                role=role or "editor",
                invited_by=user_id,
                created_at=created,
                expires_at=created + self.settings.invitation_ttl_seconds * 1000,
            )
            invites.append(invite.to_json())
        logger.info(f"Invitation {invite.id} issued for budget {budget_id}")
        return {"status": "invited", "token": invite.token}

    def _pending_invite(self, invites: list[dict], token: str) -> dict:
        invite = next((i for i in invites if i["token"] == token), None)
        if invite is None:
            raise NotFoundError("not_found")
        if invite.get("status", "pending") != "pending":
            raise ConflictError("already_consumed")
        return invite

    def accept_invitation(self, token: str, user_id: int) -> dict:
        """Join the invitation's budget; the invitation is consumed."""
        with self.store.mutate(INVITATIONS) as invites:
            invite = self._pending_invite(invites, token)
            if invite.get("expiresAt") and now_ms() > invite["expiresAt"]:
                raise InvalidPayloadError("expired")
            with self.store.mutate(BUDGETS) as budgets:
                budget = next((b for b in budgets if b["id"] == invite["budgetId"]), None)
                if budget is None:
                    raise NotFoundError("budget_not_found")
                members = budget.setdefault("members", [])
                if not any(m["userId"] == user_id for m in members):
                    members.append(BudgetMember(user_id=user_id, role=invite.get("role") or "editor").to_json())
            invite["status"] = "accepted"
        return {"status": "accepted", "budgetId": budget["id"]}

    def decline_invitation(self, token: str) -> dict:
        """Reject an invitation; the invitation is consumed."""
        with self.store.mutate(INVITATIONS) as invites:
            invite = self._pending_invite(invites, token)
            invite["status"] = "declined"
        return {"status": "declined"}

    def default_meta(self) -> dict:
        """Global default members and sources offered to new budgets."""
        return {"members": list(self.settings.default_members), "sources": list(self.settings.default_sources)}

    def get_meta(self, budget_id: int) -> MetaBundle:
        """The budget's metadata bundle; missing lists are empty."""
        bundle = self.store.read(BUDGET_META).get(str(budget_id)) or {}
        return MetaBundle(
            categories=_as_list(bundle.get("categories")),
            members=_as_list(bundle.get("members")),
            sources=_as_list(bundle.get("sources")),
            updated_at=bundle.get("updatedAt") or 0,
        )

    def put_meta(self, budget_id: int, update: MetaUpdate) -> MetaBundle:
        """Replace the whole bundle and notify the budget's subscribers."""
        bundle = MetaBundle(
            categories=update.categories, members=update.members, sources=update.sources, updated_at=now_ms()
        )
        with self.store.mutate(BUDGET_META) as meta:
            meta[str(budget_id)] = bundle.to_json()
        self.notifier.publish(ChangeEvent(budget_id=budget_id, op="meta"))
        return bundle
