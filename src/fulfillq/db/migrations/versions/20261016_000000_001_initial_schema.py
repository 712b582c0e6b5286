"""Initial schema: fulfillment queue and billing tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-16 00:00:00.000000+00:00

Creates:
- subscription_queue (fulfillment jobs, both purchase flavors)
- subscriptions, licenses (durable outputs of a completed job)
- payments (audit trail)
- refunds (compensating refunds, unique per queue_id)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: initial schema."""
    queue_status = postgresql.ENUM(
        "pending", "processing", "completed", "failed", name="queue_status", create_type=False
    )
    queue_status.create(op.get_bind(), checkfirst=True)

    purchase_kind = postgresql.ENUM("quantity", "site", name="purchase_kind", create_type=False)
    purchase_kind.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "subscription_queue",
        sa.Column("queue_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("payment_intent_id", sa.String(255), nullable=False),
        sa.Column("kind", purchase_kind, nullable=False),
        sa.Column("price_id", sa.String(255), nullable=False),
        sa.Column("license_key", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("trial_end", sa.BigInteger(), nullable=True),
        sa.Column("site_domain", sa.String(255), nullable=True),
        sa.Column("final_key", sa.String(100), nullable=True),
        sa.Column("status", queue_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.BigInteger(), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("item_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.Column("processed_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("queue_id", name=op.f("pk_subscription_queue")),
    )
    op.create_index(
        "ix_subscription_queue_claim",
        "subscription_queue",
        ["kind", "status", "next_retry_at", "created_at"],
    )
    op.create_index("ix_subscription_queue_status", "subscription_queue", ["status"])
    op.create_index("ix_subscription_queue_customer_id", "subscription_queue", ["customer_id"])
    op.create_index(
        "ix_subscription_queue_payment_intent_id", "subscription_queue", ["payment_intent_id"]
    )
    op.create_index("ix_subscription_queue_license_key", "subscription_queue", ["license_key"])

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(255), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("billing_period", sa.String(20), nullable=True),
        sa.Column("current_period_start", sa.BigInteger(), nullable=True),
        sa.Column("current_period_end", sa.BigInteger(), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("subscription_id", name=op.f("pk_subscriptions")),
    )
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_index("ix_subscriptions_user_email", "subscriptions", ["user_email"])

    op.create_table(
        "licenses",
        sa.Column("license_key", sa.String(100), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("item_id", sa.String(255), nullable=True),
        sa.Column("queue_id", sa.String(64), nullable=True),
        sa.Column("site_domain", sa.String(255), nullable=True),
        sa.Column("purchase_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("billing_period", sa.String(20), nullable=True),
        sa.Column("renewal_date", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("license_key", name=op.f("pk_licenses")),
    )
    op.create_index("ix_licenses_customer_id", "licenses", ["customer_id"])
    op.create_index("ix_licenses_subscription_id", "licenses", ["subscription_id"])
    op.create_index("ix_licenses_queue_id", "licenses", ["queue_id"])
    op.create_index("ix_licenses_status", "licenses", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("subscription_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("site_domain", sa.String(255), nullable=True),
        sa.Column("queue_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_payments")),
    )
    op.create_index("ix_payments_customer_id", "payments", ["customer_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])

    op.create_table(
        "refunds",
        sa.Column("refund_id", sa.String(255), nullable=False),
        sa.Column("payment_intent_id", sa.String(255), nullable=False),
        sa.Column("charge_id", sa.String(255), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(10), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("queue_id", sa.String(64), nullable=False),
        sa.Column("license_key", sa.String(100), nullable=True),
        sa.Column("subscription_id", sa.String(255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("refund_id", name=op.f("pk_refunds")),
        sa.UniqueConstraint("queue_id", name=op.f("uq_refunds_queue_id")),
    )
    op.create_index("ix_refunds_payment_intent_id", "refunds", ["payment_intent_id"])
    op.create_index("ix_refunds_customer_id", "refunds", ["customer_id"])


def downgrade() -> None:
    """Revert migration: drop all tables and enum types."""
    op.drop_table("refunds")
    op.drop_table("payments")
    op.drop_table("licenses")
    op.drop_table("subscriptions")
    op.drop_table("subscription_queue")
    sa.Enum(name="purchase_kind").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="queue_status").drop(op.get_bind(), checkfirst=True)
