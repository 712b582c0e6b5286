"""Pydantic schemas for the admin API."""

from fulfillq.api.schemas.queue import QueueStatusResponse, RunPassResponse

__all__ = ["QueueStatusResponse", "RunPassResponse"]
