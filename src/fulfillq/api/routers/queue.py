"""Admin API router for the fulfillment queue.

Endpoints:
- GET /admin/queue/status: item counts per status, optionally filtered
- POST /admin/queue/run: run one queue pass now

Both require the X-Admin-Token header to match the configured admin token.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillq.api.schemas.queue import QueueStatusResponse, RunPassResponse
from fulfillq.services.fulfillment import FulfillmentQueue
from fulfillq.worker.runner import Runner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/queue",
    tags=["admin"],
    responses={
        401: {"description": "Missing or invalid admin token"},
        503: {"description": "Admin API not configured"},
    },
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session from the application's session factory."""
    from fulfillq.db import get_async_session

    async with get_async_session() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def require_admin_token(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests without the configured admin token."""
    settings = request.app.state.settings
    expected = settings.api.admin_token if settings is not None else None
    if expected is None or not expected.get_secret_value():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin token not configured",
        )
    if x_admin_token is None or not secrets.compare_digest(
        x_admin_token.encode(), expected.get_secret_value().encode()
    ):
        logger.warning("Rejected admin request: path=%s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


def get_runner(request: Request) -> Runner:
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue runner not available",
        )
    return runner


# -----------------------------------------------------------------------------
# Endpoints
# -----------------------------------------------------------------------------


@router.get(
    "/status",
    response_model=QueueStatusResponse,
    dependencies=[Depends(require_admin_token)],
)
async def get_queue_status(
    db: DbSession,
    filter_key: Annotated[str | None, Query(max_length=255)] = None,
) -> QueueStatusResponse:
    """Queue item counts per status.

    Args:
        db: Database session.
        filter_key: customer_id, user_email or payment_intent_id; omitted
            for the whole queue.
    """
    summary = await FulfillmentQueue(db).get_queue_status(filter_key)
    return QueueStatusResponse(
        filter_key=filter_key,
        total=summary.total,
        pending=summary.pending,
        processing=summary.processing,
        completed=summary.completed,
        failed=summary.failed,
    )


@router.post(
    "/run",
    response_model=RunPassResponse,
    dependencies=[Depends(require_admin_token)],
)
async def run_queue_pass(
    runner: Annotated[Runner, Depends(get_runner)],
) -> RunPassResponse:
    """Run one queue pass immediately and report what it did."""
    logger.info("Manual queue pass requested")
    result = await runner.run_pass()
    compensation = result.compensation
    return RunPassResponse(
        idle=result.idle,
        claimed=result.claimed,
        outcomes=dict(result.outcomes),
        refunded=compensation.refunded if compensation else 0,
        refund_failures=compensation.failed if compensation else 0,
    )
