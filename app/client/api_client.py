"""HTTP client for the budget sync API.

Wraps an ``httpx.AsyncClient`` and classifies every failure into the client error taxonomy: 401 and 403 are
never worth retrying, other 4xx need a corrected payload, and network errors, timeouts and 5xx are
transient.
"""

from collections.abc import AsyncIterator

import httpx

from app.client.events import SseEvent, parse_sse
from app.core.errors import (
    AccessDeniedError,
    RequestRejectedError,
    TransientError,
    UnauthorizedError,
)
from app.core.models import BulkItem, BulkResult, LoginResponse, MetaBundle, SoftDeleteResult, Transaction
from app.core.utils import get_logger

logger = get_logger("budget-sync.client")

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_SERVER_ERROR = 500


def _error_code(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        return detail if isinstance(detail, str) else None
    return None


def raise_for_status(resp: httpx.Response) -> None:
    """Translate an unsuccessful response into the matching ApiError."""
    if resp.is_success:
        return
    code = _error_code(resp)
    msg = f"{resp.request.method} {resp.request.url.path} failed: {resp.status_code} {code or ''}".strip()
    if resp.status_code == HTTP_UNAUTHORIZED:
        raise UnauthorizedError(msg, resp.status_code, code)
    if resp.status_code == HTTP_FORBIDDEN:
        raise AccessDeniedError(msg, resp.status_code, code)
    if resp.status_code >= HTTP_SERVER_ERROR:
        raise TransientError(msg, resp.status_code, code)
    raise RequestRejectedError(msg, resp.status_code, code)


class BudgetApiClient:
    """Typed access to the sync endpoints with bearer authentication."""

    def __init__(self, http: httpx.AsyncClient, token: str | None = None) -> None:
        """Use an existing httpx client; the caller owns its lifecycle."""
        self.http = http
        self.token = token

    @classmethod
    def for_url(cls, base_url: str, token: str | None = None, timeout: float = 10.0) -> "BudgetApiClient":
        """Build a client with its own connection pool."""
        return cls(httpx.AsyncClient(base_url=base_url, timeout=timeout), token)

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self.http.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        try:
            resp = await self.http.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{method} {path} timed out"
            raise TransientError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise TransientError(msg) from exc
        raise_for_status(resp)
        return resp

    async def register(self, email: str, password: str, name: str = "") -> dict:
        """Create an account."""
        resp = await self._request("POST", "/api/register", json={"email": email, "password": password, "name": name})
        return resp.json()

    async def login(self, email: str, password: str) -> LoginResponse:
        """Open a session and remember its token."""
        resp = await self._request("POST", "/api/login", json={"email": email, "password": password})
        session = LoginResponse.model_validate(resp.json())
        self.token = session.token
        return session

    async def create_budget(self, name: str) -> dict:
        """Create a budget owned by the current user."""
        resp = await self._request("POST", "/api/budgets", json={"name": name})
        return resp.json()

    async def list_transactions(self, budget_id: int) -> list[Transaction]:
        """Active server transactions of a budget."""
        resp = await self._request("GET", "/api/transactions", params={"budgetId": budget_id})
        return [Transaction.model_validate(t) for t in resp.json()]

    async def list_tombstones(self, budget_id: int, since: int | None = None) -> list[Transaction]:
        """Server tombstones of a budget deleted at or after ``since``."""
        params: dict[str, int] = {"budgetId": budget_id}
        if since is not None:
            params["since"] = since
        resp = await self._request("GET", "/api/transactions/tombstones", params=params)
        return [Transaction.model_validate(t) for t in resp.json()]

    async def bulk_upsert(self, budget_id: int, items: list[BulkItem]) -> BulkResult:
        """Submit a batch for idempotent upsert."""
        body = {"budgetId": budget_id, "items": [item.to_json() for item in items]}
        resp = await self._request("POST", "/api/transactions/bulk", json=body)
        return BulkResult.model_validate(resp.json())

    async def delete_transaction(self, tx_id: int) -> SoftDeleteResult:
        """Soft delete one server transaction."""
        resp = await self._request("DELETE", f"/api/transactions/{tx_id}")
        return SoftDeleteResult.model_validate(resp.json())

    async def get_meta(self, budget_id: int) -> MetaBundle:
        """Fetch a budget's metadata bundle."""
        resp = await self._request("GET", f"/api/budgets/{budget_id}/meta")
        return MetaBundle.model_validate(resp.json())

    async def put_meta(self, budget_id: int, bundle: MetaBundle) -> MetaBundle:
        """Replace a budget's metadata bundle."""
        body = bundle.to_json(include={"categories", "members", "sources"})
        resp = await self._request("PUT", f"/api/budgets/{budget_id}/meta", json=body)
        return MetaBundle.model_validate(resp.json())

    async def events(self, budget_id: int) -> AsyncIterator[SseEvent]:
        """Stream change events for a budget until the connection closes."""
        params = {"budgetId": budget_id}
        try:
            async with self.http.stream(
                "GET", "/api/events", params=params, headers=self._headers(), timeout=None
            ) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise_for_status(resp)
                logger.info(f"Event stream opened for budget {budget_id}")
                async for event in parse_sse(resp.aiter_lines()):
                    yield event
        except httpx.TransportError as exc:
            logger.warning(f"Event stream for budget {budget_id} dropped: {exc}")
            msg = f"event stream for budget {budget_id} dropped: {exc}"
            raise TransientError(msg) from exc

