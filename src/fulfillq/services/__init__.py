"""fulfillq service layer.

- FulfillmentQueue: enqueue API and status aggregates
- QueueStore: queue persistence and the conditional-update claim
- Deduplicator: enqueue-time and process-time existence checks
- JobProcessor: executes one claimed job
- RetryPolicy: attempt counting and exponential backoff
- Compensator: refunds jobs that failed terminally
- BillingStore: Subscription/License/PaymentRecord/Refund persistence
- PaymentClient: external payment API client
"""

from fulfillq.services.billing_store import (
    BillingStore,
    BillingStoreError,
    FulfillmentVerificationError,
    LicenseKeyCollisionError,
)
from fulfillq.services.compensator import CompensationResult, Compensator, RefundError
from fulfillq.services.dedup import Deduplicator, ExistingFulfillment
from fulfillq.services.fulfillment import EnqueueResult, FulfillmentQueue, QueueStatusSummary
from fulfillq.services.payments import (
    PaymentAPIConfig,
    PaymentAPIConnectionError,
    PaymentAPIError,
    PaymentAPIResponseError,
    PaymentClient,
)
from fulfillq.services.processor import JobOutcome, JobProcessor
from fulfillq.services.queue_store import QueueStore, QueueStoreError
from fulfillq.services.retry import RetryDecision, RetryPolicy

__all__ = [
    "BillingStore",
    "BillingStoreError",
    "CompensationResult",
    "Compensator",
    "Deduplicator",
    "EnqueueResult",
    "ExistingFulfillment",
    "FulfillmentQueue",
    "FulfillmentVerificationError",
    "JobOutcome",
    "JobProcessor",
    "LicenseKeyCollisionError",
    "PaymentAPIConfig",
    "PaymentAPIConnectionError",
    "PaymentAPIError",
    "PaymentAPIResponseError",
    "PaymentClient",
    "QueueStatusSummary",
    "QueueStore",
    "QueueStoreError",
    "RefundError",
    "RetryDecision",
    "RetryPolicy",
]
