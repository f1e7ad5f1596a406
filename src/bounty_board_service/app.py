"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from bounty_board_service.config import get_settings
from bounty_board_service.core.exceptions import register_exception_handlers
from bounty_board_service.core.lifespan import lifespan
from bounty_board_service.routers import health


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with the operations router registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])

    return app
