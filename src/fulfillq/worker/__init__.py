"""Fulfillment queue worker.

Runs queue passes on a fixed interval:
- Reap stale 'processing' rows
- Claim and process pending jobs per purchase kind
- Refund jobs that failed terminally

Usage:
    # Run as module
    python -m fulfillq.worker

    # Or via the console script
    fulfillq-worker
"""

from fulfillq.worker.main import Worker, WorkerConfig, run
from fulfillq.worker.runner import PassResult, Runner, RunnerConfig

__all__ = ["PassResult", "Runner", "RunnerConfig", "Worker", "WorkerConfig", "run"]
