"""
FastAPI application entrypoint for the shim server.
"""

from __future__ import annotations

from fastapi import FastAPI

from shim_server.api.errors import register_exception_handlers
from shim_server.api.routes import router as api_router
from shim_server.core.config import get_settings
from shim_server.core.logging import configure_logging


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Shim Server",
        version="0.1.0",
        description="Delegated authorization and data access for third-party health data shims.",
    )
    app.include_router(api_router, prefix="/api")
    register_exception_handlers(app)
    return app


app = create_app()

__all__ = ["app", "create_app"]
