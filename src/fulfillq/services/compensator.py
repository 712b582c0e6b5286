"""Compensating refunds for jobs that never converged.

A failed queue item means the customer paid and received nothing. After a
grace window (default 12 hours, leaving room for manual repair) the
compensator refunds that job's share of the payment, exactly once:

- the provider refund uses idempotency key refund-<queue_id>
- the Refund table has a unique queue_id
- the Refund record and the REFUNDED marker on the queue item are
  written in one commit; a Refund without a marker is repaired by
  writing only the marker
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fulfillq.db.models.base import epoch_now
from fulfillq.services.billing_store import BillingStore
from fulfillq.services.payments import PaymentAPIError
from fulfillq.services.queue_store import QueueStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from fulfillq.db.models import QueueItem
    from fulfillq.services.payments import PaymentClient

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 12 * 60 * 60
REFUND_REASON = "subscription_creation_failed_after_retries"


class RefundError(Exception):
    """A refund could not be issued for a failed job."""

    pass


@dataclass
class CompensationResult:
    """Counts from one compensator run."""

    scanned: int = 0
    refunded: int = 0
    repaired: int = 0
    failed: int = 0
    refund_ids: list[str] = field(default_factory=list)


class Compensator:
    """Refunds terminally failed jobs older than the grace window."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentClient,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        batch_size: int = 50,
    ) -> None:
        self._session_factory = session_factory
        self._payments = payments
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size

    async def run(self, now: int | None = None) -> CompensationResult:
        """Refund every eligible failed job; per-job errors are logged and counted."""
        now = now if now is not None else epoch_now()
        cutoff = now - self.grace_seconds

        async with self._session_factory() as session:
            items = await QueueStore(session).scan_failed_older_than(cutoff, self.batch_size)

        result = CompensationResult(scanned=len(items))
        for item in items:
            try:
                refund_id = await self._compensate(item, now)
            except Exception:
                logger.exception(
                    "Refund failed: queue_id=%s, payment_intent_id=%s",
                    item.queue_id,
                    item.payment_intent_id,
                )
                result.failed += 1
                await self._defer(item, now)
                continue

            if refund_id is None:
                result.repaired += 1
            else:
                result.refunded += 1
                result.refund_ids.append(refund_id)

        if items:
            logger.info(
                "Compensation run: scanned=%d, refunded=%d, repaired=%d, failed=%d",
                result.scanned,
                result.refunded,
                result.repaired,
                result.failed,
            )
        return result

    async def _defer(self, item: QueueItem, now: int) -> None:
        """Send a failed refund to the back of the scan."""
        try:
            async with self._session_factory() as session:
                await QueueStore(session).defer_refund(item.queue_id, now)
                await session.commit()
        except Exception:
            logger.exception("Could not defer refund: queue_id=%s", item.queue_id)

    async def _compensate(self, item: QueueItem, now: int) -> str | None:
        """Refund one item. Returns the new refund id, or None for a marker repair."""
        async with self._session_factory() as session:
            existing = await BillingStore(session).get_refund_for_queue(item.queue_id)
            if existing is not None:
                await QueueStore(session).annotate_refund(
                    item.queue_id, existing.refund_id, existing.amount, existing.currency, now
                )
                await session.commit()
                logger.warning(
                    "Refund marker repaired: queue_id=%s, refund_id=%s",
                    item.queue_id,
                    existing.refund_id,
                )
                return None

        intent = await self._payments.fetch_payment_intent(item.payment_intent_id)
        if not intent.latest_charge:
            raise RefundError(f"Payment intent {intent.id} has no charge to refund")

        amount = await self._refund_amount(item, intent.amount)
        if amount <= 0:
            raise RefundError(f"Computed refund amount {amount} for {item.queue_id}")

        refund = await self._payments.create_refund(
            charge=intent.latest_charge,
            amount=amount,
            metadata={
                "queue_id": item.queue_id,
                "license_key": item.effective_license_key,
                "reason": REFUND_REASON,
            },
            idempotency_key=f"refund-{item.queue_id}",
        )

        async with self._session_factory() as session:
            await BillingStore(session).record_refund(
                item, refund, intent.latest_charge, REFUND_REASON, now
            )
            await QueueStore(session).annotate_refund(
                item.queue_id, refund.id, refund.amount, refund.currency, now
            )
            await session.commit()

        logger.info(
            "Job refunded: queue_id=%s, refund_id=%s, amount=%d %s",
            item.queue_id,
            refund.id,
            refund.amount,
            refund.currency,
        )
        return refund.id

    async def _refund_amount(self, item: QueueItem, intent_amount: int) -> int:
        """This job's share of the payment, capped at the payment amount.

        Prefers the price's unit amount; falls back to a proportional share
        of the payment intent across every item it funded.
        """
        amount = None
        try:
            price = await self._payments.fetch_price(item.price_id)
            if price.unit_amount is not None:
                amount = price.unit_amount * item.quantity
        except PaymentAPIError as e:
            logger.warning("Price lookup failed, using proportional refund: %s: %s", item.queue_id, e)

        if amount is None:
            async with self._session_factory() as session:
                total = await QueueStore(session).total_quantity_for_payment(item.payment_intent_id)
            amount = intent_amount * item.quantity // max(total, 1)

        return min(amount, intent_amount)
