"""Test data builders for queue items and billing rows."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from fulfillq.db.models import License, PurchaseKind, QueueItem, QueueStatus, Subscription
from tests.fakes import T0

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_NOW = T0


def make_queue_item(**overrides: Any) -> QueueItem:
    """Build an unsaved QueueItem with sensible defaults."""
    now = overrides.pop("now", DEFAULT_NOW)
    site_domain = overrides.get("site_domain")
    fields: dict[str, Any] = {
        "queue_id": f"q_{uuid.uuid4().hex}",
        "customer_id": "cus_test",
        "user_email": "buyer@example.com",
        "payment_intent_id": "pi_test",
        "kind": PurchaseKind.SITE if site_domain else PurchaseKind.QUANTITY,
        "price_id": "price_test",
        "license_key": "L1",
        "quantity": 1,
        "trial_end": None,
        "status": QueueStatus.PENDING,
        "attempts": 0,
        "max_attempts": 3,
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return QueueItem(**fields)


async def insert_queue_item(session: AsyncSession, **overrides: Any) -> QueueItem:
    """Build, insert and commit a QueueItem."""
    item = make_queue_item(**overrides)
    session.add(item)
    await session.commit()
    return item


async def insert_license(
    session: AsyncSession,
    license_key: str,
    subscription_id: str | None = "sub_existing",
    queue_id: str | None = None,
    now: int = DEFAULT_NOW,
    **overrides: Any,
) -> License:
    """Insert a License (and its Subscription when linked)."""
    if subscription_id is not None and await session.get(Subscription, subscription_id) is None:
        session.add(
            Subscription(
                subscription_id=subscription_id,
                customer_id="cus_test",
                user_email="buyer@example.com",
                status="active",
                created_at=now,
                updated_at=now,
            )
        )
    license_row = License(
        license_key=license_key,
        customer_id=overrides.pop("customer_id", "cus_test"),
        user_email=overrides.pop("user_email", "buyer@example.com"),
        subscription_id=subscription_id,
        item_id=overrides.pop("item_id", "si_existing"),
        queue_id=queue_id,
        purchase_type=overrides.pop("purchase_type", "quantity"),
        status="active",
        created_at=now,
        updated_at=now,
        **overrides,
    )
    session.add(license_row)
    await session.commit()
    return license_row
