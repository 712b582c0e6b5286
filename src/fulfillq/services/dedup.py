"""Duplicate detection for fulfillment jobs.

Checks run against persistent storage only:
- at enqueue time, an active queue item for the same
  (payment_intent_id, license_key) short-circuits the insert
- at process time, a License already linked to a subscription for the job
  means the work was done and only the queue row needs completing
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fulfillq.services.billing_store import BillingStore
from fulfillq.services.queue_store import QueueStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from fulfillq.db.models import QueueItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExistingFulfillment:
    """A subscription that already fulfills a queue item."""

    subscription_id: str
    item_id: str | None
    license_key: str


class Deduplicator:
    """Enqueue-time and process-time existence checks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._queue = QueueStore(session)
        self._billing = BillingStore(session)

    async def check_enqueue(self, payment_intent_id: str, license_key: str) -> QueueItem | None:
        """Return the active item that makes a new enqueue redundant, if any."""
        existing = await self._queue.find_active_duplicate(payment_intent_id, license_key)
        if existing is not None:
            logger.info(
                "Duplicate enqueue skipped: payment_intent_id=%s, license_key=%s, "
                "existing_queue_id=%s, status=%s",
                payment_intent_id,
                license_key,
                existing.queue_id,
                existing.status.value,
            )
        return existing

    async def find_existing_fulfillment(self, item: QueueItem) -> ExistingFulfillment | None:
        """Look for a license already created for this job."""
        license_row = await self._billing.find_fulfilled_license(item.license_key, item.queue_id)
        if license_row is None or license_row.subscription_id is None:
            return None

        logger.info(
            "Existing fulfillment found: queue_id=%s, subscription_id=%s, license_key=%s",
            item.queue_id,
            license_row.subscription_id,
            license_row.license_key,
        )
        return ExistingFulfillment(
            subscription_id=license_row.subscription_id,
            item_id=license_row.item_id,
            license_key=license_row.license_key,
        )
