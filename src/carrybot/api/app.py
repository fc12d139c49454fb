"""FastAPI control application factory."""

from typing import Any

from fastapi import FastAPI

from carrybot.api.routes import control


def create_api_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the control API application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to wire the orchestrator into app.state.

    Returns:
        Configured FastAPI application with the JSON control routes under /api.
    """
    app = FastAPI(
        title="Carry Bot Control API",
        lifespan=lifespan,
    )

    # Wired by main.py lifespan
    app.state.orchestrator = None
    app.state.paper_mode = False

    app.include_router(control.router, prefix="/api")

    return app
