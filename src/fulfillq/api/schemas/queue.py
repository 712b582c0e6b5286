"""Pydantic schemas for the queue admin endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class QueueStatusResponse(BaseModel):
    """Queue item counts per status."""

    filter_key: str | None = Field(
        None, description="customer_id, user_email or payment_intent_id the counts cover"
    )
    total: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    processing: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)

    model_config = ConfigDict(frozen=True)


class RunPassResponse(BaseModel):
    """Summary of a queue pass triggered through the API."""

    idle: bool = Field(..., description="True when nothing was due and the pass did no work")
    claimed: int = Field(0, description="Items claimed across purchase kinds")
    outcomes: dict[str, int] = Field(default_factory=dict, description="Job outcome counts")
    refunded: int = Field(0, description="Refunds issued by the compensator")
    refund_failures: int = Field(0, description="Refunds that failed and will be retried")
