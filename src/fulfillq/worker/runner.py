"""One processing pass over the fulfillment queue.

A pass:
1. Returns immediately (no reap, no claim) when nothing is due, stale or
   refundable.
2. For each purchase kind, claims a batch and processes it sequentially
   with a short delay between jobs to stay under provider rate limits.
3. Waits for the background audit writes.
4. Runs the compensator.

Passes from several processes may overlap; the claim protocol keeps each
row with a single owner. Within one process passes are serialized.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fulfillq.db.models import PurchaseKind
from fulfillq.db.models.base import epoch_now
from fulfillq.services.compensator import CompensationResult, Compensator
from fulfillq.services.processor import JobOutcome, JobProcessor
from fulfillq.services.queue_store import QueueStore
from fulfillq.services.retry import RetryPolicy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from fulfillq.core.config import QueueSettings
    from fulfillq.services.payments import PaymentClient

logger = logging.getLogger(__name__)

KIND_ORDER = (PurchaseKind.QUANTITY, PurchaseKind.SITE)


@dataclass
class RunnerConfig:
    """Tunables for a processing pass.

    Attributes:
        batch_size: Maximum items claimed per purchase kind per pass.
        stale_after_seconds: Age after which a 'processing' row is reaped.
        inter_job_delay: Seconds slept between two jobs of a batch.
        base_backoff_seconds: Retry backoff base.
        retry_permanent_errors: Retry permanent provider errors like transient ones.
        refund_grace_seconds: Age a failed item must reach before refund.
        refund_batch_size: Maximum refunds per pass.
        license_key_attempts: Tries to allocate a unique license key.
        compensation_enabled: Run the compensator at the end of each pass.
    """

    batch_size: int = 10
    stale_after_seconds: int = 300
    inter_job_delay: float = 0.5
    base_backoff_seconds: int = 60
    retry_permanent_errors: bool = True
    refund_grace_seconds: int = 43200
    refund_batch_size: int = 50
    license_key_attempts: int = 5
    compensation_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> RunnerConfig:
        return cls(
            batch_size=settings.batch_size,
            stale_after_seconds=settings.stale_after_seconds,
            inter_job_delay=settings.inter_job_delay,
            base_backoff_seconds=settings.base_backoff_seconds,
            retry_permanent_errors=settings.retry_permanent_errors,
            refund_grace_seconds=settings.refund_grace_seconds,
            refund_batch_size=settings.refund_batch_size,
            license_key_attempts=settings.license_key_attempts,
            compensation_enabled=settings.compensation_enabled,
        )


@dataclass
class PassResult:
    """Summary of one pass."""

    idle: bool = False
    claimed: int = 0
    outcomes: Counter[str] = field(default_factory=Counter)
    compensation: CompensationResult | None = None

    def record(self, outcome: JobOutcome) -> None:
        self.outcomes[outcome.value] += 1


class Runner:
    """Runs processing passes against one database and payment API.

    Example:
        async with PaymentClient(config) as payments:
            runner = Runner(session_factory, payments, RunnerConfig())
            result = await runner.run_pass()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentClient,
        config: RunnerConfig | None = None,
    ) -> None:
        self.config = config or RunnerConfig()
        self._session_factory = session_factory
        self._processor = JobProcessor(
            session_factory,
            payments,
            RetryPolicy(
                base_backoff_seconds=self.config.base_backoff_seconds,
                retry_permanent_errors=self.config.retry_permanent_errors,
            ),
            key_attempts=self.config.license_key_attempts,
            stale_after_seconds=self.config.stale_after_seconds,
        )
        self._compensator = Compensator(
            session_factory,
            payments,
            grace_seconds=self.config.refund_grace_seconds,
            batch_size=self.config.refund_batch_size,
        )
        self._lock = asyncio.Lock()

    @property
    def processor(self) -> JobProcessor:
        return self._processor

    async def run_pass(self, now: int | None = None) -> PassResult:
        """Run one pass. Per-job errors are logged, never raised.

        The clock is read again before every claim, job and compensation
        run, so rows claimed late in a long pass carry the claim time.
        Passing `now` pins the clock for the whole pass.
        """
        clock: Callable[[], int] = epoch_now if now is None else (lambda: now)
        async with self._lock:
            return await self._run_pass(clock)

    async def _run_pass(self, clock: Callable[[], int]) -> PassResult:
        now = clock()
        refund_cutoff = now - self.config.refund_grace_seconds
        async with self._session_factory() as session:
            store = QueueStore(session, self.config.stale_after_seconds)
            has_work = await store.has_runnable_work(now, refund_cutoff)

        if not has_work:
            logger.debug("Queue pass skipped: nothing due")
            return PassResult(idle=True)

        result = PassResult()
        for kind in KIND_ORDER:
            try:
                async with self._session_factory() as session:
                    store = QueueStore(session, self.config.stale_after_seconds)
                    items = await store.claim_batch(self.config.batch_size, clock(), kind=kind)
            except Exception:
                logger.exception("Claim failed: kind=%s", kind.value)
                continue

            result.claimed += len(items)
            for index, item in enumerate(items):
                if index and self.config.inter_job_delay > 0:
                    await asyncio.sleep(self.config.inter_job_delay)
                try:
                    outcome = await self._processor.process(item, clock())
                except Exception:
                    logger.exception("Unhandled error processing queue_id=%s", item.queue_id)
                    outcome = JobOutcome.ERROR
                result.record(outcome)

        await self._processor.drain()

        if self.config.compensation_enabled:
            try:
                result.compensation = await self._compensator.run(clock())
            except Exception:
                logger.exception("Compensation run failed")

        logger.info(
            "Queue pass finished: claimed=%d, outcomes=%s",
            result.claimed,
            dict(result.outcomes),
        )
        return result
