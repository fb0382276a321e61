"""Application factory for the budget sync API.

``create_app`` builds the JSON store, the services and the change notifier for one data directory and keeps
them on ``app.state``; the lifespan starts and stops the notifier. The factory also installs the
path-prefix rewrite used for subdirectory deployments and the handler that turns domain errors into JSON.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from scalar_fastapi import get_scalar_api_reference
from starlette.types import ASGIApp, Receive, Scope, Send

from app.api.routes import router
from app.core.db import JsonStore
from app.core.errors import BudgetSyncError
from app.core.settings import Settings, get_settings
from app.core.utils import ensure_dir, get_logger
from app.services.auth_service import AuthService
from app.services.budget_service import BudgetService
from app.services.transaction_store import TransactionStore
from app.workers.notifier import ChangeNotifier

LOGGER_ROOT = "budget-sync"
logger = get_logger(f"{LOGGER_ROOT}.app")


# --- Logging Setup ---
def setup_logging(settings: Settings) -> None:
    """Attach a persistent file handler to the project logger tree."""
    ensure_dir(settings.data_dir)
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger(LOGGER_ROOT)
    root.setLevel(level)
    log_path = Path(settings.data_dir) / "server.log"
    for name in list(logging.root.manager.loggerDict):
        if not (name == LOGGER_ROOT or name.startswith(f"{LOGGER_ROOT}.")):
            continue
        named = logging.getLogger(name)
        named.setLevel(level)
        if not any(isinstance(h, logging.FileHandler) for h in named.handlers):
            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
            named.addHandler(file_handler)


class PrefixRewriteMiddleware:
    """Rewrite ``/{prefix}/api/...`` to ``/api/...`` for the configured prefixes."""

    def __init__(self, app: ASGIApp, prefixes: list[str]) -> None:
        """Wrap an ASGI app."""
        self.app = app
        self.prefixes = tuple(f"/{p.strip('/')}/api" for p in prefixes if p.strip("/"))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Strip a known namespace before routing."""
        if scope["type"] in ("http", "websocket"):
            path = scope.get("path", "")
            for prefix in self.prefixes:
                if path == prefix or path.startswith(f"{prefix}/"):
                    scope = dict(scope)
                    scope["path"] = "/api" + path[len(prefix) :]
                    scope["raw_path"] = scope["path"].encode()
                    break
        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the change notifier for the lifetime of the server."""
    app.state.notifier.start()
    yield
    app.state.notifier.stop()


async def handle_domain_error(request: Request, exc: BudgetSyncError) -> JSONResponse:
    """Render a domain error with its status and machine code."""
    _ = request
    if exc.status_code >= 500:
        logger.error(f"Unhandled domain error: {exc}")
    return JSONResponse({"detail": exc.code}, status_code=exc.status_code)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build an application bound to one data directory."""
    settings = settings or get_settings()
    setup_logging(settings)
    app = FastAPI(
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        title="Budget Sync API",
        description="""
    The Budget Sync API is the shared store behind the offline-first budget app. Devices keep their own
    replica and reconcile through it.

    **Sync endpoints:**
    - `GET /api/transactions?budgetId=`: Active transactions of a budget.
    - `GET /api/transactions/tombstones?budgetId=&since=`: Recent soft deletions.
    - `POST /api/transactions/bulk`: Idempotent bulk upsert with deduplication.
    - `DELETE /api/transactions/{id}`: Idempotent soft delete.
    - `GET/PUT /api/budgets/{id}/meta`: Categories, members and sources.
    - `GET /api/events?budgetId=&token=`: Server-sent change notifications.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
        version="1.0.0",
    )
    store = JsonStore(settings.data_dir)
    notifier = ChangeNotifier(queue_size=settings.subscriber_queue_size, ping_interval=settings.sse_ping_interval)
    auth = AuthService(store, settings)
    budgets = BudgetService(store, settings, auth, notifier)
    app.state.settings = settings
    app.state.store = store
    app.state.notifier = notifier
    app.state.auth = auth
    app.state.budgets = budgets
    app.state.transactions = TransactionStore(store, settings, budgets, notifier)
    app.add_exception_handler(BudgetSyncError, handle_domain_error)
    app.add_middleware(PrefixRewriteMiddleware, prefixes=settings.api_prefixes)
    app.include_router(router)

    @app.get("/scalar", include_in_schema=False)
    async def scalar_docs() -> JSONResponse:
        """Return Scalar API reference."""
        return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)

    logger.info(f"Budget sync API configured with data dir {settings.data_dir}")
    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:create_app", factory=True, host=settings.server_host, port=settings.server_port)
