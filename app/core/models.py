"""Pydantic models for the budget sync API.

This module defines the wire schemas shared by the server and the sync client: transactions and their
tombstones, bulk upsert requests and results, budgets, invitations, metadata bundles and change events.
Fields are snake_case in Python and camelCase on the wire.
"""

from datetime import date as calendar_date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TransactionType = Literal["income", "expense"]
Origin = Literal["local", "server"]
ChangeOp = Literal["create", "bulk", "soft_delete", "meta"]
InvitationStatus = Literal["pending", "accepted", "declined"]


class ApiModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self, **kwargs: object) -> dict:
        """Dump as a camelCase JSON-compatible dict."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class TransactionFields(ApiModel):
    """Semantic fields of a transaction, the input of the content fingerprint."""

    type: TransactionType = "expense"
    amount: float = Field(default=0, ge=0)
    category: str = ""
    member: str | None = None
    source: str | None = None
    note: str | None = None
    date: str | None = None
    time: str | None = None
    created_at: int | str | None = None

    @field_validator("date")
    @classmethod
    def _iso_date(cls, value: str | None) -> str | None:
        if value in (None, ""):
            return None
        calendar_date.fromisoformat(value)
        return value


class Transaction(TransactionFields):
    """A transaction as stored on the server or in a device replica."""

    id: int | None = None
    budget_id: int | None = None
    content_hash: str | None = None
    idempotency_key: str | None = None
    origin: Origin | None = None
    deleted_at: int | None = None
    created_by: int | None = None


class TransactionCreate(TransactionFields):
    """Body of a single create request; type and amount are required."""

    budget_id: int
    type: TransactionType
    amount: float = Field(ge=0)


class BulkItem(TransactionFields):
    """One client-submitted record inside a bulk upsert."""

    type: TransactionType
    amount: float = Field(ge=0)
    client_id: int | None = None
    budget_id: int | None = None
    content_hash: str | None = None
    idempotency_key: str | None = None
    deleted_at: int | None = None


class BulkRequest(ApiModel):
    """Body of ``POST /api/transactions/bulk``."""

    budget_id: int
    items: list[BulkItem] = Field(default_factory=list)


class IdMapping(ApiModel):
    """Resolution of one submitted client id to its authoritative server id."""

    client_id: int | None = None
    server_id: int


class BulkResult(ApiModel):
    """Classification of a bulk upsert."""

    created: list[Transaction] = Field(default_factory=list)
    duplicates: list[Transaction] = Field(default_factory=list)
    updated: list[Transaction] = Field(default_factory=list)
    mapping: list[IdMapping] = Field(default_factory=list)


class SoftDeleteResult(ApiModel):
    """Result of ``DELETE /api/transactions/{id}``."""

    id: int
    deleted_at: int


class MetaBundle(ApiModel):
    """Per-budget reference lists."""

    categories: list[str] = Field(default_factory=list)
    members: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    updated_at: int = 0


class MetaUpdate(ApiModel):
    """Body of ``PUT /api/budgets/{id}/meta``; replaces the whole bundle."""

    categories: list[str] = Field(default_factory=list)
    members: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class ChangeEvent(ApiModel):
    """Payload of an ``update`` server-sent event."""

    budget_id: int
    op: ChangeOp
    id: int | None = None
    count: int | None = None


class UserPublic(ApiModel):
    """User as exposed to clients."""

    id: int
    email: str
    name: str = ""


class RegisterRequest(ApiModel):
    """Body of ``POST /api/register``."""

    email: str = Field(min_length=3)
    password: str = Field(min_length=1)
    name: str = ""


class LoginRequest(ApiModel):
    """Body of ``POST /api/login``."""

    email: str
    password: str


class LoginResponse(ApiModel):
    """Bearer token plus the authenticated user."""

    token: str
    user: UserPublic


class BudgetMember(ApiModel):
    """Explicit budget member."""

    user_id: int
    role: str = "editor"


class Budget(ApiModel):
    """A budget; the owner has implicit full rights."""

    id: int
    name: str
    owner_id: int
    members: list[BudgetMember] = Field(default_factory=list)
    created_at: int = 0


class BudgetCreate(ApiModel):
    """Body of ``POST /api/budgets``."""

    name: str = Field(min_length=1)


class BudgetUpdate(ApiModel):
    """Body of ``PUT /api/budgets/{id}``."""

    name: str | None = None


class MemberInvite(ApiModel):
    """Body of ``POST /api/budgets/{id}/members``."""

    email: str
    role: str = "editor"


class Invitation(ApiModel):
    """A pending or consumed invitation to a budget."""

    id: int
    token: str
    budget_id: int
    email: str
    role: str = "editor"
    invited_by: int
    status: InvitationStatus = "pending"
    created_at: int
    expires_at: int
