"""fulfillq admin API.

FastAPI application providing:
- Queue status aggregates per customer, email or payment
- A "run one pass now" operation for operators

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from fulfillq.api.routers import queue_router

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from fulfillq.core.config import Settings
    from fulfillq.worker.runner import Runner

logger = logging.getLogger(__name__)

API_TITLE = "fulfillq admin API"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the payment client and runner for the app's lifetime.

    Skipped when a runner was injected or no settings are available.
    """
    settings: Settings | None = app.state.settings
    if app.state.runner is not None or settings is None:
        yield
        return

    from fulfillq.db import close_engine, get_session_factory
    from fulfillq.services.payments import PaymentAPIConfig, PaymentClient
    from fulfillq.worker.runner import Runner, RunnerConfig

    async with PaymentClient(PaymentAPIConfig.from_settings(settings.payments)) as payments:
        app.state.runner = Runner(
            get_session_factory(),
            payments,
            RunnerConfig.from_settings(settings.queue),
        )
        logger.info("Queue runner initialized for admin API")
        try:
            yield
        finally:
            app.state.runner = None
            await close_engine()


def create_app(settings: Settings | None = None, runner: Runner | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings instance; the admin endpoints answer 503 without
            one since no admin token can be checked.
        runner: Optional pre-built Runner (tests); otherwise one is created
            at startup from settings.

    Returns:
        Configured FastAPI application.
    """
    version = settings.app_version if settings else "0.1.0"

    app = FastAPI(
        title=API_TITLE,
        version=version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.runner = runner

    app.include_router(queue_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("fulfillq API application created (version=%s)", version)

    return app


__all__ = ["create_app"]
