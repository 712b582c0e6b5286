"""SQLAlchemy ORM models for fulfillq.

This package contains all database models:
- base: Common metadata, column annotations and enums
- queue: The fulfillment queue (subscription_queue)
- billing: Subscriptions, licenses, payment audit records and refunds
"""

from fulfillq.db.models.base import Base, PurchaseKind, QueueStatus, metadata
from fulfillq.db.models.billing import License, PaymentRecord, Refund, Subscription
from fulfillq.db.models.queue import QueueItem

__all__ = [
    "Base",
    "License",
    "PaymentRecord",
    "PurchaseKind",
    "QueueItem",
    "QueueStatus",
    "Refund",
    "Subscription",
    "metadata",
]
