"""User accounts, bearer sessions and per-user settings.

Authentication is deliberately thin: salted SHA-256 password digests and random hex bearer tokens stored in
the JSON store. The sync core only depends on ``authenticate`` turning a token into a user.
"""

import hashlib
import secrets

from app.core.db import SESSIONS, SETTINGS, USERS, JsonStore, next_id
from app.core.errors import AuthError, ConflictError
from app.core.models import LoginRequest, LoginResponse, RegisterRequest, UserPublic
from app.core.settings import Settings
from app.core.utils import get_logger, now_ms

logger = get_logger("budget-sync.auth")


def make_salt() -> str:
    """Random per-user salt."""
    return secrets.token_hex(16)


def make_token() -> str:
    """Random opaque bearer token."""
    return secrets.token_hex(24)


def hash_password(password: str, salt: str) -> str:
    """Salted SHA-256 digest of a password."""
    return hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()


def _public(user: dict) -> UserPublic:
    return UserPublic(id=user["id"], email=user["email"], name=user.get("name") or "")


class AuthService:
    """Registration, login and token resolution."""

    def __init__(self, store: JsonStore, settings: Settings) -> None:
        """Bind the service to a store and its session lifetime."""
        self.store = store
        self.settings = settings

    def find_user_by_email(self, email: str) -> dict | None:
        """Case-insensitive user lookup."""
        wanted = email.strip().lower()
        return next((u for u in self.store.read(USERS) if u["email"].lower() == wanted), None)

    def get_user(self, user_id: int) -> dict | None:
        """User record by id."""
        return next((u for u in self.store.read(USERS) if u["id"] == user_id), None)

    def register(self, req: RegisterRequest) -> UserPublic:
        """Create a user account."""
        with self.store.mutate(USERS) as users:
            if any(u["email"].lower() == req.email.strip().lower() for u in users):
                raise ConflictError("email_exists")
            salt = make_salt()
            user = {
                "id": next_id(users),
                "email": req.email.strip(),
                "name": req.name,
                "password": {"salt": salt, "hash": hash_password(req.password, salt)},
                "createdAt": now_ms(),
            }
            users.append(user)
        logger.info(f"Registered user {user['id']}")
        return _public(user)

    def login(self, req: LoginRequest) -> LoginResponse:
        """Check credentials and open a session."""
        user = self.find_user_by_email(req.email)
        if not user:
            raise AuthError("invalid_credentials")
        password = user.get("password") or {}
        if password.get("hash") != hash_password(req.password, password.get("salt", "")):
            raise AuthError("invalid_credentials")
        token = make_token()
        created = now_ms()
        with self.store.mutate(SESSIONS) as sessions:
            sessions.append(
                {
                    "token": token,
                    "userId": user["id"],
                    "createdAt": created,
                    "expiresAt": created + self.settings.session_ttl_seconds * 1000,
                }
            )
        logger.info(f"User {user['id']} logged in")
        return LoginResponse(token=token, user=_public(user))

    def authenticate(self, token: str | None) -> UserPublic:
        """Resolve a bearer token to an active, non-expired session's user."""
        if not token:
            raise AuthError("no_token")
        session = next((s for s in self.store.read(SESSIONS) if s["token"] == token), None)
        if not session:
            raise AuthError("invalid_token")
        if session.get("expiresAt") and now_ms() > session["expiresAt"]:
            raise AuthError("expired_token")
        user = self.get_user(session["userId"])
        if not user:
            raise AuthError("user_not_found")
        return _public(user)

    def get_user_settings(self, user_id: int) -> dict:
        """Opaque per-user settings object."""
        row = next((s for s in self.store.read(SETTINGS) if s["userId"] == user_id), None)
        return (row or {}).get("data") or {}

    def put_user_settings(self, user_id: int, data: dict) -> dict:
        """Replace a user's settings object."""
        row = {"userId": user_id, "data": data, "updatedAt": now_ms()}
        with self.store.mutate(SETTINGS) as rows:
            idx = next((i for i, s in enumerate(rows) if s["userId"] == user_id), None)
            if idx is None:
                rows.append(row)
            else:
                rows[idx] = row
        return data
