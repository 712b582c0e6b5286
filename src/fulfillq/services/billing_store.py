"""Persistence for the durable outputs of fulfillment jobs.

Writes Subscription and License rows for completed jobs, reads them back for
verification, and records the PaymentRecord audit trail and Refund records.
Methods flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from fulfillq.db.models import License, PaymentRecord, Refund, Subscription
from fulfillq.services.license_keys import generate_license_key, is_provisional_key

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from fulfillq.db.models import QueueItem
    from fulfillq.services.payloads import Payload
    from fulfillq.services.payments import CreatedRefund, CreatedSubscription

logger = logging.getLogger(__name__)


class BillingStoreError(Exception):
    """Base exception for billing store operations."""

    pass


class LicenseKeyCollisionError(BillingStoreError):
    """No unused license key could be generated within the attempt budget."""

    pass


class FulfillmentVerificationError(BillingStoreError):
    """Subscription or License row missing or inconsistent after write."""

    pass


class BillingStore:
    """Subscription, License, PaymentRecord and Refund persistence.

    Attributes:
        session: SQLAlchemy async session for database operations.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_fulfilled_license(self, license_key: str, queue_id: str) -> License | None:
        """Find a license already linked to a subscription for this job.

        Matches on the queue_id link, and on the key itself unless the key is
        a provisional placeholder (those are only unique within one payment).
        """
        conditions = [License.queue_id == queue_id]
        if not is_provisional_key(license_key):
            conditions.append(License.license_key == license_key)

        stmt = (
            select(License)
            .where(or_(*conditions), License.subscription_id.is_not(None))
            .order_by(License.created_at)
            .limit(1)
        )
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to look up license for queue_id=%s: %s", queue_id, str(e))
            raise BillingStoreError(f"Failed to look up license: {e}") from e

    async def license_key_exists(self, license_key: str) -> bool:
        """Whether a license row already uses this key."""
        try:
            result = await self.session.execute(
                select(License.license_key).where(License.license_key == license_key)
            )
            return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise BillingStoreError(f"Failed to check license key: {e}") from e

    async def allocate_license_key(self, max_tries: int = 5) -> str:
        """Generate a license key not present in the licenses table.

        Raises:
            LicenseKeyCollisionError: If every candidate collided.
        """
        for attempt in range(1, max_tries + 1):
            candidate = generate_license_key()
            if not await self.license_key_exists(candidate):
                return candidate
            logger.warning("License key collision: attempt=%d/%d", attempt, max_tries)

        raise LicenseKeyCollisionError(
            f"Could not allocate a unique license key after {max_tries} attempts"
        )

    async def save_fulfillment(
        self,
        item: QueueItem,
        subscription: CreatedSubscription,
        license_key: str,
        payload: Payload,
        now: int,
    ) -> License:
        """Upsert the Subscription and License rows for a fulfilled job.

        Args:
            item: The queue item being fulfilled.
            subscription: Subscription returned by the payment API.
            license_key: Final license key for the job.
            payload: Typed payload of the item.
            now: Current epoch seconds.

        Returns:
            The License row.
        """
        try:
            sub_row = await self.session.get(Subscription, subscription.id)
            if sub_row is None:
                sub_row = Subscription(
                    subscription_id=subscription.id,
                    customer_id=item.customer_id,
                    user_email=item.user_email,
                    created_at=now,
                )
                self.session.add(sub_row)
            sub_row.status = subscription.status
            sub_row.billing_period = subscription.billing_period
            sub_row.current_period_start = subscription.current_period_start
            sub_row.current_period_end = subscription.current_period_end
            sub_row.cancel_at_period_end = False
            sub_row.updated_at = now

            fields: dict[str, Any] = payload.license_fields()
            license_row = await self.session.get(License, license_key)
            if license_row is None:
                license_row = License(license_key=license_key, created_at=now)
                self.session.add(license_row)
            license_row.customer_id = item.customer_id
            license_row.user_email = item.user_email
            license_row.subscription_id = subscription.id
            license_row.item_id = subscription.item_id
            license_row.queue_id = item.queue_id
            license_row.site_domain = fields["site_domain"]
            license_row.purchase_type = fields["purchase_type"]
            license_row.status = "active"
            license_row.billing_period = subscription.billing_period
            license_row.renewal_date = subscription.current_period_end
            license_row.updated_at = now

            await self.session.flush()

            logger.info(
                "Fulfillment saved: queue_id=%s, subscription_id=%s, license_key=%s",
                item.queue_id,
                subscription.id,
                license_key,
            )
            return license_row

        except SQLAlchemyError as e:
            logger.error("Failed to save fulfillment for %s: %s", item.queue_id, str(e))
            raise BillingStoreError(f"Failed to save fulfillment: {e}") from e

    async def verify_fulfillment(self, subscription_id: str, license_key: str) -> None:
        """Re-read the rows written by save_fulfillment.

        Raises:
            FulfillmentVerificationError: If either row is missing or the
                license is not linked to the subscription.
        """
        try:
            sub_row = await self.session.get(Subscription, subscription_id)
            license_row = await self.session.get(License, license_key)
        except SQLAlchemyError as e:
            raise BillingStoreError(f"Failed to verify fulfillment: {e}") from e

        if sub_row is None:
            raise FulfillmentVerificationError(f"Subscription {subscription_id} not found")
        if license_row is None:
            raise FulfillmentVerificationError(f"License {license_key} not found")
        if license_row.subscription_id != subscription_id:
            raise FulfillmentVerificationError(
                f"License {license_key} linked to {license_row.subscription_id}, "
                f"expected {subscription_id}"
            )

    async def record_payment(
        self,
        item: QueueItem,
        subscription_id: str,
        amount: int,
        currency: str,
        now: int,
    ) -> PaymentRecord:
        """Add an audit record for a fulfilled payment."""
        record = PaymentRecord(
            customer_id=item.customer_id,
            subscription_id=subscription_id,
            email=item.user_email,
            amount=amount,
            currency=currency,
            status="succeeded",
            site_domain=item.site_domain,
            queue_id=item.queue_id,
            created_at=now,
        )
        try:
            self.session.add(record)
            await self.session.flush()
            return record
        except SQLAlchemyError as e:
            raise BillingStoreError(f"Failed to record payment: {e}") from e

    async def get_refund_for_queue(self, queue_id: str) -> Refund | None:
        """The Refund recorded for a queue item, if any."""
        try:
            result = await self.session.execute(select(Refund).where(Refund.queue_id == queue_id))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise BillingStoreError(f"Failed to look up refund: {e}") from e

    async def record_refund(
        self,
        item: QueueItem,
        refund: CreatedRefund,
        charge_id: str,
        reason: str,
        now: int,
    ) -> Refund:
        """Add the Refund record for a compensated job."""
        row = Refund(
            refund_id=refund.id,
            payment_intent_id=item.payment_intent_id,
            charge_id=charge_id,
            customer_id=item.customer_id,
            user_email=item.user_email,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
            reason=reason,
            queue_id=item.queue_id,
            license_key=item.effective_license_key,
            subscription_id=item.subscription_id,
            attempts=item.attempts,
            metadata_json={"error_message": item.error_message, "kind": item.kind.value},
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(row)
            await self.session.flush()
            return row
        except SQLAlchemyError as e:
            logger.error("Failed to record refund for %s: %s", item.queue_id, str(e))
            raise BillingStoreError(f"Failed to record refund: {e}") from e
