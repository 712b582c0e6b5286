"""Retry policy for fulfillment jobs.

A failed attempt increments the attempt counter. While the counter is below
max_attempts the job goes back to pending with

    next_retry_at = now + base_backoff_seconds * 2^attempts

(2, 4, 8 minutes with the default one-minute base). Once the counter reaches
max_attempts the job is terminally failed and handed to the compensator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fulfillq.services.payments import PaymentAPIResponseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt.

    Attributes:
        attempts: Attempt counter after this failure.
        terminal: True if the job must move to FAILED.
        next_retry_at: Epoch seconds of the next eligible claim (None if terminal).
        delay_seconds: Backoff applied (0 if terminal).
    """

    attempts: int
    terminal: bool
    next_retry_at: int | None
    delay_seconds: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a bounded number of attempts."""

    base_backoff_seconds: int = 60
    retry_permanent_errors: bool = True

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next attempt, given the attempts made so far."""
        return self.base_backoff_seconds * (2**attempts)

    def decide(
        self,
        attempts: int,
        max_attempts: int,
        now: int,
        error: BaseException | None = None,
    ) -> RetryDecision:
        """Decide what happens to a job whose attempt just failed.

        Args:
            attempts: Attempt counter before this failure.
            max_attempts: Attempt budget of the job.
            now: Current epoch seconds.
            error: The failure, used to detect permanent payment API errors.

        Returns:
            RetryDecision for the queue store.
        """
        new_attempts = attempts + 1

        if self._is_fail_fast(error):
            logger.info(
                "Permanent payment API error, not retrying: attempts=%d, error=%s",
                new_attempts,
                error,
            )
            return RetryDecision(attempts=new_attempts, terminal=True, next_retry_at=None)

        if new_attempts >= max_attempts:
            return RetryDecision(attempts=new_attempts, terminal=True, next_retry_at=None)

        delay = self.backoff_seconds(new_attempts)
        return RetryDecision(
            attempts=new_attempts,
            terminal=False,
            next_retry_at=now + delay,
            delay_seconds=delay,
        )

    def _is_fail_fast(self, error: BaseException | None) -> bool:
        if self.retry_permanent_errors or error is None:
            return False
        return isinstance(error, PaymentAPIResponseError) and error.permanent
