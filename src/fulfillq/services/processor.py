"""Execution of a single claimed fulfillment job.

State machine of a queue item:

    pending -> processing -> completed
                          -> pending (retry, future next_retry_at)
                          -> failed  (attempts exhausted)

A job that reaches the processor is already 'processing'. The processor:
1. Looks for an existing fulfillment (License linked to a subscription).
2. Allocates a final license key if the item carries a provisional one.
3. Re-checks for an existing fulfillment right before the external call.
4. Creates the subscription with idempotency key fulfill-<queue_id>-<attempts>.
5. Writes Subscription and License rows, commits, and re-reads them in a
   separate session.
6. Marks the item completed (with the final key) and schedules a
   best-effort PaymentRecord write in the background.

Any exception in steps 1-6 goes through the RetryPolicy.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from fulfillq.db.models.base import epoch_now
from fulfillq.services.billing_store import BillingStore
from fulfillq.services.dedup import Deduplicator
from fulfillq.services.license_keys import is_provisional_key
from fulfillq.services.payloads import payload_from_item
from fulfillq.services.payments import PaymentAPIError
from fulfillq.services.queue_store import QueueStore, QueueStoreError
from fulfillq.services.retry import RetryPolicy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from fulfillq.db.models import QueueItem
    from fulfillq.services.dedup import ExistingFulfillment
    from fulfillq.services.payments import CreatedSubscription, PaymentClient

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class JobOutcome(str, Enum):
    """Result of processing one claimed job."""

    COMPLETED = "completed"
    DEDUPLICATED = "deduplicated"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    LOST = "lost"
    ERROR = "error"


def idempotency_key(queue_id: str, attempts: int) -> str:
    """Provider idempotency key for one attempt of a job.

    Reaping does not increment attempts, so a reclaimed job replays the key
    of the attempt that crashed.
    """
    return f"fulfill-{queue_id}-{attempts}"


class JobProcessor:
    """Processes claimed queue items one at a time.

    Each step uses its own short-lived session from the factory so that the
    verification read happens outside the transaction that wrote the rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentClient,
        retry_policy: RetryPolicy | None = None,
        key_attempts: int = 5,
        stale_after_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self._payments = payments
        self._retry_policy = retry_policy or RetryPolicy()
        self._key_attempts = key_attempts
        self._stale_after_seconds = stale_after_seconds
        self._audit_tasks: set[asyncio.Task[None]] = set()

    async def process(self, item: QueueItem, now: int | None = None) -> JobOutcome:
        """Process one claimed item and move it out of 'processing'.

        Never raises for job-level failures; they become row transitions.
        """
        now = now if now is not None else epoch_now()
        try:
            return await self._fulfill(item, now)
        except Exception as e:
            logger.exception(
                "Job failed: queue_id=%s, kind=%s, attempt=%d/%d",
                item.queue_id,
                item.kind.value,
                item.attempts + 1,
                item.max_attempts,
            )
            return await self._handle_failure(item, e, now)

    async def _find_existing(self, item: QueueItem) -> ExistingFulfillment | None:
        async with self._session_factory() as session:
            return await Deduplicator(session).find_existing_fulfillment(item)

    async def _fulfill(self, item: QueueItem, now: int) -> JobOutcome:
        payload = payload_from_item(item)

        existing = await self._find_existing(item)
        if existing is not None:
            return await self._complete_existing(item, existing, now)

        license_key = item.final_key or item.license_key
        if is_provisional_key(license_key):
            async with self._session_factory() as session:
                license_key = await BillingStore(session).allocate_license_key(self._key_attempts)

        existing = await self._find_existing(item)
        if existing is not None:
            return await self._complete_existing(item, existing, now)

        subscription = await self._payments.create_subscription(
            customer=item.customer_id,
            price=payload.price_id,
            quantity=payload.quantity,
            trial_end=payload.trial_end,
            metadata=payload.subscription_metadata(item.queue_id, license_key),
            idempotency_key=idempotency_key(item.queue_id, item.attempts),
        )
        # An idempotent replay returns the key sent by the earlier attempt
        license_key = subscription.metadata.get("license_key") or license_key

        async with self._session_factory() as session:
            await BillingStore(session).save_fulfillment(
                item, subscription, license_key, payload, now
            )
            await session.commit()

        async with self._session_factory() as session:
            await BillingStore(session).verify_fulfillment(subscription.id, license_key)

        final_key = license_key if license_key != item.license_key else None
        applied = await self._mark_completed(
            item, subscription.id, subscription.item_id, now, final_key
        )
        if not applied:
            return JobOutcome.LOST

        self._schedule_audit(item, subscription, now)
        return JobOutcome.COMPLETED

    async def _complete_existing(
        self, item: QueueItem, existing: ExistingFulfillment, now: int
    ) -> JobOutcome:
        final_key = existing.license_key if existing.license_key != item.license_key else None
        applied = await self._mark_completed(
            item, existing.subscription_id, existing.item_id, now, final_key
        )
        if not applied:
            return JobOutcome.LOST
        logger.info(
            "Job deduplicated: queue_id=%s, subscription_id=%s",
            item.queue_id,
            existing.subscription_id,
        )
        return JobOutcome.DEDUPLICATED

    async def _mark_completed(
        self,
        item: QueueItem,
        subscription_id: str,
        item_id: str | None,
        now: int,
        final_key: str | None,
    ) -> bool:
        async with self._session_factory() as session:
            store = QueueStore(session, self._stale_after_seconds)
            applied = await store.mark_completed(
                item.queue_id, subscription_id, item_id, now, final_key=final_key
            )
            await session.commit()
        return applied

    async def _handle_failure(self, item: QueueItem, error: Exception, now: int) -> JobOutcome:
        decision = self._retry_policy.decide(item.attempts, item.max_attempts, now, error)
        message = (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH]

        try:
            async with self._session_factory() as session:
                store = QueueStore(session, self._stale_after_seconds)
                if decision.terminal:
                    applied = await store.mark_failed(
                        item.queue_id, message, now, attempts=decision.attempts
                    )
                else:
                    applied = await store.reschedule(
                        item.queue_id,
                        decision.attempts,
                        message,
                        decision.next_retry_at,
                        now,
                    )
                await session.commit()
        except (QueueStoreError, SQLAlchemyError):
            logger.exception("Failed to record job failure: queue_id=%s", item.queue_id)
            return JobOutcome.ERROR

        if not applied:
            logger.warning("Failure not recorded, item no longer processing: %s", item.queue_id)
            return JobOutcome.LOST
        if decision.terminal:
            return JobOutcome.FAILED
        return JobOutcome.RETRY_SCHEDULED

    def _schedule_audit(self, item: QueueItem, subscription: CreatedSubscription, now: int) -> None:
        task = asyncio.create_task(self._record_payment(item, subscription.id, now))
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)

    async def _record_payment(self, item: QueueItem, subscription_id: str, now: int) -> None:
        """Best-effort PaymentRecord write; failures are only logged."""
        try:
            amount, currency = 0, "usd"
            try:
                price = await self._payments.fetch_price(item.price_id)
                amount = (price.unit_amount or 0) * item.quantity
                currency = price.currency
            except PaymentAPIError as e:
                logger.warning("Price lookup failed for payment record: %s: %s", item.queue_id, e)

            async with self._session_factory() as session:
                await BillingStore(session).record_payment(
                    item, subscription_id, amount, currency, now
                )
                await session.commit()
        except Exception:
            logger.exception("Payment record write failed: queue_id=%s", item.queue_id)

    async def drain(self) -> None:
        """Wait for outstanding background audit writes."""
        if self._audit_tasks:
            await asyncio.gather(*list(self._audit_tasks), return_exceptions=True)
