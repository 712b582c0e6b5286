"""Base model definitions, shared column types and enums.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Epoch-second timestamp annotations used by every table
- Enum types shared between the queue and billing models
"""

import enum
import time
from typing import Annotated

from sqlalchemy import JSON, BigInteger, MetaData, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# All timestamps are stored as integer epoch seconds, matching the
# payment provider's own representation (current_period_end, trial_end, ...).
EpochSeconds = Annotated[int, mapped_column(BigInteger, nullable=False)]
OptionalEpochSeconds = Annotated[int | None, mapped_column(BigInteger, nullable=True)]

ShortString = Annotated[str, mapped_column(String(100))]
MediumString = Annotated[str, mapped_column(String(255))]

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def epoch_now() -> int:
    """Return the current time as integer epoch seconds."""
    return int(time.time())


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values (not member names) in the database."""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for all fulfillq models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class QueueStatus(enum.Enum):
    """Lifecycle state of a fulfillment queue item.

    Values:
        PENDING: Waiting to be claimed (possibly with a future next_retry_at)
        PROCESSING: Claimed by exactly one worker
        COMPLETED: Subscription and license exist and were verified
        FAILED: Attempts exhausted; eligible for compensation after the grace window
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PurchaseKind(enum.Enum):
    """Payload variant of a queue item.

    Values:
        QUANTITY: One license out of a quantity purchase
        SITE: One license bound to a specific site domain
    """

    QUANTITY = "quantity"
    SITE = "site"
