"""Main entrypoint for the Budget Sync API.

Exposes a module-level ``app`` built from the environment settings so ``uvicorn main:app`` works, and runs
the server with Uvicorn when executed directly.
"""

from app.core.settings import get_settings
from app.main import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
