"""Fulfillment queue model.

One row per unit of fulfillment work (one license, or one site). Rows are
claimed with a conditional UPDATE on the status column; there is no row
locking and no external lock manager.
"""

from __future__ import annotations

from sqlalchemy import Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fulfillq.db.models.base import (
    Base,
    EpochSeconds,
    MediumString,
    OptionalEpochSeconds,
    PurchaseKind,
    QueueStatus,
    ShortString,
    enum_values,
)


class QueueItem(Base):
    """A single subscription-creation job funded by a payment intent."""

    __tablename__ = "subscription_queue"

    queue_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    customer_id: Mapped[MediumString]
    user_email: Mapped[MediumString]
    payment_intent_id: Mapped[MediumString]

    kind: Mapped[PurchaseKind] = mapped_column(
        Enum(
            PurchaseKind,
            name="purchase_kind",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=PurchaseKind.QUANTITY,
    )

    # Payload
    price_id: Mapped[MediumString]
    license_key: Mapped[ShortString]
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    trial_end: Mapped[OptionalEpochSeconds]
    site_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Unique key allocated during processing when license_key is provisional
    final_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[QueueStatus] = mapped_column(
        Enum(
            QueueStatus,
            name="queue_status",
            values_callable=enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=QueueStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[OptionalEpochSeconds]

    # Filled in once the downstream subscription exists
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[EpochSeconds]
    updated_at: Mapped[EpochSeconds]
    processed_at: Mapped[OptionalEpochSeconds]

    __table_args__ = (
        # Claim query: pending rows that are due, oldest first
        Index("ix_subscription_queue_claim", "kind", "status", "next_retry_at", "created_at"),
        Index("ix_subscription_queue_status", "status"),
        Index("ix_subscription_queue_customer_id", "customer_id"),
        Index("ix_subscription_queue_payment_intent_id", "payment_intent_id"),
        Index("ix_subscription_queue_license_key", "license_key"),
    )

    @property
    def effective_license_key(self) -> str:
        """The key the customer ends up with."""
        return self.final_key or self.license_key

    def __repr__(self) -> str:
        return (
            f"<QueueItem queue_id={self.queue_id} kind={self.kind.value} "
            f"status={self.status.value} attempts={self.attempts}/{self.max_attempts}>"
        )
