"""Tests for the retry policy."""

import pytest

from fulfillq.services.payments import PaymentAPIConnectionError, PaymentAPIResponseError
from fulfillq.services.retry import RetryPolicy
from tests.fakes import T0


class TestBackoff:
    """Tests for exponential backoff."""

    @pytest.mark.parametrize(("attempts", "delay"), [(1, 120), (2, 240), (3, 480)])
    def test_default_schedule(self, attempts, delay):
        assert RetryPolicy().backoff_seconds(attempts) == delay

    def test_custom_base(self):
        assert RetryPolicy(base_backoff_seconds=5).backoff_seconds(2) == 20

    def test_delays_increase(self):
        policy = RetryPolicy()
        delays = [policy.decide(n, 10, T0).delay_seconds for n in range(5)]

        assert delays == sorted(delays)
        assert len(set(delays)) == len(delays)


class TestDecide:
    """Tests for RetryPolicy.decide."""

    def test_first_failure_rescheduled(self):
        decision = RetryPolicy().decide(0, 3, T0, PaymentAPIConnectionError("timeout"))

        assert decision.terminal is False
        assert decision.attempts == 1
        assert decision.next_retry_at == T0 + 120

    def test_second_failure_rescheduled(self):
        decision = RetryPolicy().decide(1, 3, T0)

        assert decision.attempts == 2
        assert decision.next_retry_at == T0 + 240

    def test_last_attempt_terminal(self):
        decision = RetryPolicy().decide(2, 3, T0)

        assert decision.terminal is True
        assert decision.attempts == 3
        assert decision.next_retry_at is None

    def test_single_attempt_budget(self):
        assert RetryPolicy().decide(0, 1, T0).terminal is True

    def test_permanent_error_retried_by_default(self):
        error = PaymentAPIResponseError(400, "invalid price")

        assert RetryPolicy().decide(0, 3, T0, error).terminal is False


class TestFailFast:
    """Tests for fail-fast on permanent provider errors."""

    @pytest.fixture
    def policy(self) -> RetryPolicy:
        return RetryPolicy(retry_permanent_errors=False)

    def test_permanent_error_terminal(self, policy):
        decision = policy.decide(0, 3, T0, PaymentAPIResponseError(402, "card declined"))

        assert decision.terminal is True
        assert decision.attempts == 1

    @pytest.mark.parametrize(
        "error",
        [
            PaymentAPIResponseError(429, "rate limited"),
            PaymentAPIResponseError(503, "unavailable"),
            PaymentAPIConnectionError("timeout"),
            ValueError("bad payload"),
        ],
    )
    def test_transient_errors_still_retried(self, policy, error):
        assert policy.decide(0, 3, T0, error).terminal is False
