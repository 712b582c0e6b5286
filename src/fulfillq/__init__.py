"""fulfillq - asynchronous subscription fulfillment queue.

Turns successful payments into durable subscriptions and license keys
through a persisted job queue with conditional-update claims, bounded
retries and compensating refunds.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
