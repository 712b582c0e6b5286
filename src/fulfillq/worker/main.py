"""Fulfillment worker entry point.

This module provides the Worker that:
- Runs a queue pass every pass_interval seconds
- Keeps one payment API client and one connection pool for its lifetime
- Handles graceful shutdown via SIGTERM/SIGINT

Several workers can run against the same database; the claim protocol
keeps each queue item with a single owner.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from fulfillq.db import create_session_factory
from fulfillq.services.payments import PaymentAPIConfig, PaymentClient
from fulfillq.worker.runner import Runner, RunnerConfig

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from fulfillq.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        database_url: PostgreSQL connection URL.
        payments: Payment API client configuration.
        runner: Per-pass tunables.
        worker_id: Unique identifier for this worker instance.
        pass_interval: Seconds between the start of two passes.
        shutdown_timeout: Seconds to wait for graceful shutdown.
        pool_size: Database connection pool size.
    """

    database_url: str
    payments: PaymentAPIConfig
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    pass_interval: float = 60.0
    shutdown_timeout: float = 30.0
    pool_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        """Build WorkerConfig from application settings."""
        return cls(
            database_url=str(settings.database.url),
            payments=PaymentAPIConfig.from_settings(settings.payments),
            runner=RunnerConfig.from_settings(settings.queue),
            pass_interval=settings.queue.pass_interval,
            pool_size=settings.database.pool_size,
        )


class Worker:
    """Periodic driver for queue passes.

    Example:
        worker = Worker(WorkerConfig.from_settings(get_settings()))
        await worker.start()
    """

    def __init__(self, config: WorkerConfig) -> None:
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._engine: AsyncEngine | None = None
        self._started_at: datetime | None = None
        self._passes = 0
        self._jobs_processed = 0

    async def start(self) -> None:
        """Run passes until shutdown is requested via signal or stop()."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, pass_interval=%.1fs, batch_size=%d",
            self.config.worker_id,
            self.config.pass_interval,
            self.config.runner.batch_size,
        )

        self._engine, session_factory = create_session_factory(
            self.config.database_url,
            pool_size=self.config.pool_size,
        )

        try:
            async with PaymentClient(self.config.payments) as payments:
                runner = Runner(session_factory, payments, self.config.runner)
                await self._run_loop(runner)
        finally:
            if self._engine:
                await self._engine.dispose()

            logger.info(
                "Worker stopped: worker_id=%s, passes=%d, processed=%d, uptime=%s",
                self.config.worker_id,
                self._passes,
                self._jobs_processed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self, runner: Runner) -> None:
        while not self._shutdown_event.is_set():
            try:
                result = await runner.run_pass()
                self._passes += 1
                self._jobs_processed += result.claimed
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)

            # wait_for lets a shutdown request interrupt the sleep
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.pass_interval,
                )

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(config: WorkerConfig, shutdown_event: asyncio.Event) -> None:
    """Run the worker until shutdown_event is set."""
    worker = Worker(config)
    worker_task = asyncio.create_task(worker.start())

    await shutdown_event.wait()
    await worker.stop()

    try:
        await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
    except TimeoutError:
        logger.warning("Worker did not stop within timeout, forcing shutdown")
        worker_task.cancel()


def run() -> NoReturn:
    """Run the worker process.

    Loads settings (exits on invalid configuration), sets up logging,
    registers signal handlers and runs the pass loop.
    """
    from fulfillq.core.settings import configure_logging, get_settings

    settings = get_settings()
    configure_logging(settings)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("Fulfillment worker starting...")
    config = WorkerConfig.from_settings(settings)

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(config, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Fulfillment worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
