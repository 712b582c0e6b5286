"""Account/billing records written by the fulfillment queue.

Covers the durable outputs of a completed job:
- subscriptions: one row per provider subscription
- licenses: license keys linked to their subscription item
- payments: best-effort audit trail of fulfilled payments
- refunds: compensating refunds for jobs that never converged
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fulfillq.db.models.base import (
    Base,
    EpochSeconds,
    JSONType,
    MediumString,
    OptionalEpochSeconds,
)


class Subscription(Base):
    """A subscription created at the payment provider."""

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[MediumString]
    user_email: Mapped[MediumString]
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")

    # monthly / yearly / weekly / daily, derived from the price's recurring interval
    billing_period: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_period_start: Mapped[OptionalEpochSeconds]
    current_period_end: Mapped[OptionalEpochSeconds]
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[EpochSeconds]
    updated_at: Mapped[EpochSeconds]

    __table_args__ = (
        Index("ix_subscriptions_customer_id", "customer_id"),
        Index("ix_subscriptions_user_email", "user_email"),
    )


class License(Base):
    """A license key; the key itself is the primary identifier."""

    __tablename__ = "licenses"

    license_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    customer_id: Mapped[MediumString]
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Queue item that produced this license (links provisional-key jobs)
    queue_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    site_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchase_type: Mapped[str] = mapped_column(String(20), nullable=False, default="quantity")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    billing_period: Mapped[str | None] = mapped_column(String(20), nullable=True)
    renewal_date: Mapped[OptionalEpochSeconds]

    created_at: Mapped[EpochSeconds]
    updated_at: Mapped[EpochSeconds]

    __table_args__ = (
        Index("ix_licenses_customer_id", "customer_id"),
        Index("ix_licenses_subscription_id", "subscription_id"),
        Index("ix_licenses_queue_id", "queue_id"),
        Index("ix_licenses_status", "status"),
    )


class PaymentRecord(Base):
    """Audit record of a fulfilled payment (best-effort write)."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[MediumString]
    subscription_id: Mapped[MediumString]
    email: Mapped[MediumString]
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="succeeded")
    site_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queue_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[EpochSeconds]

    __table_args__ = (
        Index("ix_payments_customer_id", "customer_id"),
        Index("ix_payments_subscription_id", "subscription_id"),
    )


class Refund(Base):
    """A refund issued for a terminally failed queue item.

    queue_id is unique: at most one refund can ever be recorded per job.
    """

    __tablename__ = "refunds"

    refund_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payment_intent_id: Mapped[MediumString]
    charge_id: Mapped[MediumString]
    customer_id: Mapped[MediumString]
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="succeeded")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    queue_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    license_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[EpochSeconds]
    updated_at: Mapped[EpochSeconds]

    __table_args__ = (
        Index("ix_refunds_payment_intent_id", "payment_intent_id"),
        Index("ix_refunds_customer_id", "customer_id"),
    )
