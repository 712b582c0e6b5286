"""Enqueue API for the fulfillment queue.

The payment-event handler calls this once per payment. Every unit of work
(one license of a quantity purchase, one site of a site purchase) becomes
its own queue item so that each is claimed, retried and refunded
independently.

Like the other services, methods flush but do not commit.

Usage:
    queue = FulfillmentQueue(session)
    results = await queue.enqueue_quantity_purchase(
        customer_id="cus_123",
        user_email="buyer@example.com",
        payment_intent_id="pi_123",
        price_id="price_123",
        quantity=3,
    )
    await session.commit()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fulfillq.db.models import PurchaseKind, QueueItem, QueueStatus
from fulfillq.db.models.base import epoch_now
from fulfillq.services.dedup import Deduplicator
from fulfillq.services.license_keys import provisional_keys
from fulfillq.services.queue_store import QueueStore

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class EnqueueResult:
    """Outcome of an enqueue call.

    Attributes:
        queue_id: The new item, or the existing one when skipped.
        skipped: True if an equivalent item already existed.
        reason: Why the enqueue was skipped ("duplicate"), else None.
    """

    queue_id: str
    skipped: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class QueueStatusSummary:
    """Queue item counts per status."""

    total: int
    pending: int
    processing: int
    completed: int
    failed: int


def new_queue_id() -> str:
    return f"q_{uuid.uuid4().hex}"


class FulfillmentQueue:
    """Entry point used by the payment-event handler."""

    def __init__(self, session: AsyncSession, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self.session = session
        self.max_attempts = max_attempts
        self._store = QueueStore(session)
        self._dedup = Deduplicator(session)

    async def enqueue(
        self,
        customer_id: str,
        user_email: str,
        payment_intent_id: str,
        price_id: str,
        license_key: str,
        quantity: int = 1,
        trial_end: int | None = None,
        site_domain: str | None = None,
        now: int | None = None,
    ) -> EnqueueResult:
        """Enqueue one unit of fulfillment work.

        A site_domain makes the item a site purchase; otherwise it is a
        quantity purchase.

        Returns:
            EnqueueResult; skipped=True with the existing queue_id when a
            pending, processing or completed item for the same
            (payment_intent_id, license_key) already exists.

        Raises:
            ValueError: If quantity is not positive.
            QueueStoreError: If the insert fails.
        """
        if quantity < 1:
            msg = f"quantity must be positive, got {quantity}"
            raise ValueError(msg)

        existing = await self._dedup.check_enqueue(payment_intent_id, license_key)
        if existing is not None:
            return EnqueueResult(queue_id=existing.queue_id, skipped=True, reason="duplicate")

        now = now if now is not None else epoch_now()
        item = QueueItem(
            queue_id=new_queue_id(),
            customer_id=customer_id,
            user_email=user_email,
            payment_intent_id=payment_intent_id,
            kind=PurchaseKind.SITE if site_domain else PurchaseKind.QUANTITY,
            price_id=price_id,
            license_key=license_key,
            quantity=quantity,
            trial_end=trial_end,
            site_domain=site_domain,
            status=QueueStatus.PENDING,
            attempts=0,
            max_attempts=self.max_attempts,
            created_at=now,
            updated_at=now,
        )
        queue_id = await self._store.insert(item)
        return EnqueueResult(queue_id=queue_id)

    async def enqueue_quantity_purchase(
        self,
        customer_id: str,
        user_email: str,
        payment_intent_id: str,
        price_id: str,
        quantity: int,
        trial_end: int | None = None,
    ) -> list[EnqueueResult]:
        """One item per license, each with a provisional key L1..Ln."""
        results = []
        for key in provisional_keys(quantity):
            results.append(
                await self.enqueue(
                    customer_id=customer_id,
                    user_email=user_email,
                    payment_intent_id=payment_intent_id,
                    price_id=price_id,
                    license_key=key,
                    quantity=1,
                    trial_end=trial_end,
                )
            )
        return results

    async def enqueue_site_purchase(
        self,
        customer_id: str,
        user_email: str,
        payment_intent_id: str,
        price_id: str,
        sites: Sequence[str],
        trial_end: int | None = None,
    ) -> list[EnqueueResult]:
        """One item per site domain."""
        if not sites:
            msg = "sites must not be empty"
            raise ValueError(msg)

        results = []
        for key, site in zip(provisional_keys(len(sites)), sites, strict=True):
            results.append(
                await self.enqueue(
                    customer_id=customer_id,
                    user_email=user_email,
                    payment_intent_id=payment_intent_id,
                    price_id=price_id,
                    license_key=key,
                    quantity=1,
                    trial_end=trial_end,
                    site_domain=site,
                )
            )
        return results

    async def get_queue_status(self, filter_key: str | None = None) -> QueueStatusSummary:
        """Counts per status for a customer_id, user_email or payment_intent_id.

        With no filter_key the counts cover the whole queue.
        """
        counts = await self._store.count_by_status(filter_key)
        return QueueStatusSummary(
            total=sum(counts.values()),
            pending=counts[QueueStatus.PENDING],
            processing=counts[QueueStatus.PROCESSING],
            completed=counts[QueueStatus.COMPLETED],
            failed=counts[QueueStatus.FAILED],
        )
