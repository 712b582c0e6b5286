"""Persistence for fulfillment queue items.

Concurrency control is a single conditional UPDATE per row:

    UPDATE subscription_queue
       SET status = 'processing', updated_at = :now
     WHERE queue_id = :id AND status = 'pending'

committed on its own. A zero rowcount means another worker won the row.
There is no SELECT ... FOR UPDATE and no external lock, so the same protocol
works on every SQL backend.

Rows stuck in 'processing' (worker crashed mid-job) are reaped back to
'pending' once their updated_at is older than the staleness threshold.

Every transition out of 'processing' is itself conditional on the row still
being 'processing' and reports whether it applied. Except for reap_stale and
claim_batch, which commit each step, methods leave the commit to the caller.

Usage:
    from fulfillq.services.queue_store import QueueStore

    async with session_factory() as session:
        store = QueueStore(session)
        for item in await store.claim_batch(limit=10, now=epoch_now()):
            ...
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, not_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from fulfillq.db.models import QueueItem, QueueStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from fulfillq.db.models import PurchaseKind

logger = logging.getLogger(__name__)

# Appended to error_message once a failed item has been refunded
REFUND_MARKER = "REFUNDED"

DEFAULT_STALE_AFTER_SECONDS = 300

ACTIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.COMPLETED)


class QueueStoreError(Exception):
    """Base exception for queue store operations."""

    pass


def refund_marker(refund_id: str, amount: int, currency: str) -> str:
    """Text appended to error_message when a refund is recorded."""
    return f" | {REFUND_MARKER} {refund_id} amount={amount} {currency}"


def _is_due(now: int) -> ColumnElement[bool]:
    return or_(QueueItem.next_retry_at.is_(None), QueueItem.next_retry_at <= now)


def _not_refunded() -> ColumnElement[bool]:
    return or_(
        QueueItem.error_message.is_(None),
        not_(QueueItem.error_message.contains(REFUND_MARKER)),
    )


class QueueStore:
    """Queue item persistence with a conditional-update claim protocol.

    Attributes:
        session: SQLAlchemy async session for database operations.
        stale_after_seconds: Age after which a 'processing' row is reaped.
    """

    def __init__(
        self,
        session: AsyncSession,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
    ) -> None:
        self.session = session
        self.stale_after_seconds = stale_after_seconds

    async def insert(self, item: QueueItem) -> str:
        """Add a new queue item. Does not check for duplicates.

        Returns:
            The item's queue_id.

        Raises:
            QueueStoreError: If the insert fails.
        """
        try:
            self.session.add(item)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to insert queue item: %s", str(e))
            raise QueueStoreError(f"Failed to insert queue item: {e}") from e

        logger.info(
            "Queue item enqueued: queue_id=%s, kind=%s, payment_intent_id=%s, license_key=%s",
            item.queue_id,
            item.kind.value,
            item.payment_intent_id,
            item.license_key,
        )
        return item.queue_id

    async def get(self, queue_id: str) -> QueueItem | None:
        """Fetch one item by queue_id, refreshed from the database."""
        try:
            result = await self.session.execute(
                select(QueueItem)
                .where(QueueItem.queue_id == queue_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to get queue item: {e}") from e

    async def find_active_duplicate(
        self, payment_intent_id: str, license_key: str
    ) -> QueueItem | None:
        """Find a pending, processing or completed item for the same unit of work.

        A failed item never counts as a duplicate.
        """
        stmt = (
            select(QueueItem)
            .where(
                QueueItem.payment_intent_id == payment_intent_id,
                QueueItem.license_key == license_key,
                QueueItem.status.in_(ACTIVE_STATUSES),
            )
            .order_by(QueueItem.created_at)
            .limit(1)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to look up duplicate: {e}") from e

    async def reap_stale(self, now: int) -> int:
        """Return stuck 'processing' rows to 'pending' and commit.

        Attempts are not incremented: a reaped job retries with the same
        idempotency key, so a call that reached the provider is replayed.

        Returns:
            Number of rows reaped.
        """
        cutoff = now - self.stale_after_seconds
        stmt = (
            update(QueueItem)
            .where(QueueItem.status == QueueStatus.PROCESSING, QueueItem.updated_at < cutoff)
            .values(status=QueueStatus.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to reap stale items: %s", str(e))
            raise QueueStoreError(f"Failed to reap stale items: {e}") from e

        if result.rowcount:
            logger.warning(
                "Reaped stale queue items: count=%d, stale_after=%ds",
                result.rowcount,
                self.stale_after_seconds,
            )
        return result.rowcount

    async def claim_batch(
        self,
        limit: int,
        now: int,
        kind: PurchaseKind | None = None,
    ) -> list[QueueItem]:
        """Reap stale rows, then claim up to `limit` due pending rows.

        Each claim is its own committed conditional UPDATE; rows whose claim
        affected zero rows belong to another worker and are skipped.

        Args:
            limit: Maximum number of rows to claim.
            now: Current epoch seconds.
            kind: Only claim rows of this payload variant.

        Returns:
            The claimed rows, re-read after the claim, oldest first.

        Raises:
            QueueStoreError: If a database operation fails.
        """
        await self.reap_stale(now)

        stmt = (
            select(QueueItem.queue_id)
            .where(QueueItem.status == QueueStatus.PENDING, _is_due(now))
            .order_by(QueueItem.created_at, QueueItem.queue_id)
            .limit(limit)
        )
        if kind is not None:
            stmt = stmt.where(QueueItem.kind == kind)

        claimed: list[str] = []
        try:
            candidates = list((await self.session.execute(stmt)).scalars())

            for queue_id in candidates:
                result = await self.session.execute(
                    update(QueueItem)
                    .where(
                        QueueItem.queue_id == queue_id,
                        QueueItem.status == QueueStatus.PENDING,
                        _is_due(now),
                    )
                    .values(status=QueueStatus.PROCESSING, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.session.commit()

                if result.rowcount == 1:
                    claimed.append(queue_id)
                else:
                    logger.debug("Claim lost to another worker: queue_id=%s", queue_id)

            if not claimed:
                return []

            rows = await self.session.execute(
                select(QueueItem)
                .where(QueueItem.queue_id.in_(claimed))
                .order_by(QueueItem.created_at, QueueItem.queue_id)
                .execution_options(populate_existing=True)
            )
            items = list(rows.scalars())

        except SQLAlchemyError as e:
            logger.error("Failed to claim queue items: %s", str(e))
            raise QueueStoreError(f"Failed to claim queue items: {e}") from e

        for item in items:
            logger.info(
                "Queue item claimed: queue_id=%s, kind=%s, attempt=%d/%d",
                item.queue_id,
                item.kind.value,
                item.attempts + 1,
                item.max_attempts,
            )
        return items

    async def _transition(self, queue_id: str, values: dict[str, Any], *extra: Any) -> bool:
        """UPDATE a 'processing' row; returns whether it applied."""
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.queue_id == queue_id,
                QueueItem.status == QueueStatus.PROCESSING,
                *extra,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to update queue item %s: %s", queue_id, str(e))
            raise QueueStoreError(f"Failed to update queue item: {e}") from e
        return result.rowcount == 1

    async def mark_completed(
        self,
        queue_id: str,
        subscription_id: str,
        item_id: str | None,
        now: int,
        final_key: str | None = None,
    ) -> bool:
        """processing -> completed, recording the subscription (and final key)."""
        values: dict[str, Any] = {
            "status": QueueStatus.COMPLETED,
            "subscription_id": subscription_id,
            "item_id": item_id,
            "error_message": None,
            "next_retry_at": None,
            "processed_at": now,
            "updated_at": now,
        }
        if final_key is not None:
            values["final_key"] = final_key

        applied = await self._transition(queue_id, values)
        if applied:
            logger.info(
                "Queue item completed: queue_id=%s, subscription_id=%s, final_key=%s",
                queue_id,
                subscription_id,
                final_key,
            )
        else:
            logger.warning("Completion not applied, item no longer processing: %s", queue_id)
        return applied

    async def mark_failed(
        self,
        queue_id: str,
        error: str,
        now: int,
        attempts: int | None = None,
    ) -> bool:
        """processing -> failed (terminal)."""
        values: dict[str, Any] = {
            "status": QueueStatus.FAILED,
            "error_message": error,
            "next_retry_at": None,
            "processed_at": now,
            "updated_at": now,
        }
        if attempts is not None:
            values["attempts"] = attempts

        applied = await self._transition(queue_id, values)
        if applied:
            logger.warning(
                "Queue item failed: queue_id=%s, attempts=%s, error=%s",
                queue_id,
                attempts,
                error,
            )
        return applied

    async def reschedule(
        self,
        queue_id: str,
        attempts: int,
        error: str,
        next_retry_at: int,
        now: int,
    ) -> bool:
        """processing -> pending with a future next_retry_at."""
        applied = await self._transition(
            queue_id,
            {
                "status": QueueStatus.PENDING,
                "attempts": attempts,
                "error_message": error,
                "next_retry_at": next_retry_at,
                "updated_at": now,
            },
            QueueItem.attempts <= attempts,
        )
        if applied:
            logger.info(
                "Queue item scheduled for retry: queue_id=%s, attempts=%d, next_retry_at=%d",
                queue_id,
                attempts,
                next_retry_at,
            )
        return applied

    async def scan_failed_older_than(self, cutoff: int, limit: int) -> list[QueueItem]:
        """Failed items created before `cutoff` that have not been refunded.

        Least recently touched first, so rows moved back by defer_refund
        give way to the rest.
        """
        stmt = (
            select(QueueItem)
            .where(
                QueueItem.status == QueueStatus.FAILED,
                QueueItem.created_at < cutoff,
                _not_refunded(),
            )
            .order_by(QueueItem.updated_at, QueueItem.created_at, QueueItem.queue_id)
            .limit(limit)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars())
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to scan failed items: {e}") from e

    async def defer_refund(self, queue_id: str, now: int) -> bool:
        """Move an unrefunded failed item to the back of the refund scan."""
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.queue_id == queue_id,
                QueueItem.status == QueueStatus.FAILED,
                _not_refunded(),
            )
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to defer refund: {e}") from e
        return result.rowcount == 1

    async def annotate_refund(
        self,
        queue_id: str,
        refund_id: str,
        amount: int,
        currency: str,
        now: int,
    ) -> bool:
        """Append the refund marker to a failed item's error_message.

        Returns:
            False if the item is not failed or already carries the marker.
        """
        item = await self.get(queue_id)
        if item is None or item.status != QueueStatus.FAILED:
            return False
        current = item.error_message or ""
        if REFUND_MARKER in current:
            return False

        stmt = (
            update(QueueItem)
            .where(QueueItem.queue_id == queue_id, QueueItem.status == QueueStatus.FAILED)
            .values(
                error_message=current + refund_marker(refund_id, amount, currency),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to annotate refund: {e}") from e
        return result.rowcount == 1

    async def count_by_status(self, filter_key: str | None = None) -> dict[QueueStatus, int]:
        """Row counts per status, optionally for one customer/email/payment."""
        stmt = select(QueueItem.status, func.count()).group_by(QueueItem.status)
        if filter_key:
            stmt = stmt.where(
                or_(
                    QueueItem.customer_id == filter_key,
                    QueueItem.user_email == filter_key,
                    QueueItem.payment_intent_id == filter_key,
                )
            )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to count queue items: {e}") from e

        counts = {status: 0 for status in QueueStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def has_runnable_work(self, now: int, refund_cutoff: int) -> bool:
        """Whether a pass would find anything to claim, reap or refund."""
        stale_cutoff = now - self.stale_after_seconds
        stmt = (
            select(QueueItem.queue_id)
            .where(
                or_(
                    (QueueItem.status == QueueStatus.PENDING) & _is_due(now),
                    (QueueItem.status == QueueStatus.PROCESSING)
                    & (QueueItem.updated_at < stale_cutoff),
                    (QueueItem.status == QueueStatus.FAILED)
                    & (QueueItem.created_at < refund_cutoff)
                    & _not_refunded(),
                )
            )
            .limit(1)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to check for runnable work: {e}") from e

    async def total_quantity_for_payment(self, payment_intent_id: str) -> int:
        """Sum of quantities over every item funded by one payment intent."""
        stmt = select(func.coalesce(func.sum(QueueItem.quantity), 0)).where(
            QueueItem.payment_intent_id == payment_intent_id
        )
        try:
            result = await self.session.execute(stmt)
            return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise QueueStoreError(f"Failed to sum quantities: {e}") from e
