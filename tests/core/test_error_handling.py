"""
Tests for retry handling and the rolling-window circuit breaker
"""

import pytest

from regulatory_truth.core.error_handling import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
    NonRetryableError,
    RetryableError,
    RetryHandler,
    RetryPolicy,
)


def _fail():
    raise RuntimeError("boom")


class TestRetryHandler:
    """Exponential backoff retries"""

    def test_retries_until_success(self):
        sleeps = []
        attempts = {"n": 0}

        def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise RetryableError("try again")
            return "ok"

        handler = RetryHandler(RetryPolicy(max_attempts=3, jitter=False), sleep=sleeps.append)

        assert handler.execute(flaky) == "ok"
        assert attempts["n"] == 3
        assert sleeps == [1.0, 2.0]

    def test_raises_last_error_when_exhausted(self):
        sleeps = []
        handler = RetryHandler(RetryPolicy(max_attempts=2, jitter=False), sleep=sleeps.append)

        def always_fails():
            raise RetryableError("still down")

        with pytest.raises(RetryableError, match="still down"):
            handler.execute(always_fails)
        assert len(sleeps) == 1

    def test_non_retryable_error_is_not_retried(self):
        sleeps = []
        calls = []
        handler = RetryHandler(RetryPolicy(max_attempts=5), sleep=sleeps.append)

        def rejected():
            calls.append(1)
            raise NonRetryableError("400")

        with pytest.raises(NonRetryableError):
            handler.execute(rejected)
        assert len(calls) == 1
        assert sleeps == []

    def test_delay_is_capped(self):
        handler = RetryHandler(RetryPolicy(initial_delay_ms=1000, max_delay_ms=3000, jitter=False))
        assert handler._calculate_delay(1) == 1000
        assert handler._calculate_delay(2) == 2000
        assert handler._calculate_delay(5) == 3000

    def test_jitter_stays_within_quarter(self):
        handler = RetryHandler(RetryPolicy(initial_delay_ms=1000, jitter=True))
        for _ in range(20):
            assert 1000 <= handler._calculate_delay(1) <= 1250


class TestCircuitBreaker:
    """State transitions with an injected clock"""

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(
            "drainer-test",
            error_threshold_percentage=30.0,
            rolling_window_seconds=600.0,
            volume_threshold=3,
            reset_timeout_seconds=300.0,
            clock=clock,
        )

    def _trip(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                breaker.call(_fail)

    def test_initial_state_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: 42) == 42

    def test_below_volume_threshold_stays_closed(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(_fail)
        assert breaker.state == CircuitState.CLOSED

    def test_trips_when_error_rate_exceeds_threshold(self, breaker):
        self._trip(breaker)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(lambda: 1)
        assert breaker.stats.rejected_calls == 1

    def test_error_rate_at_or_below_threshold_stays_closed(self, breaker):
        for _ in range(3):
            breaker.call(lambda: 1)
        with pytest.raises(RuntimeError):
            breaker.call(_fail)

        assert breaker.error_rate == 25.0
        assert breaker.state == CircuitState.CLOSED

    def test_old_failures_leave_the_window(self, breaker, clock):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                breaker.call(_fail)
        clock.advance(601)
        with pytest.raises(RuntimeError):
            breaker.call(_fail)

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_trial_success_closes(self, breaker, clock):
        self._trip(breaker)
        clock.advance(300)

        assert breaker.call(lambda: "trial") == "trial"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.error_rate == 0.0

    def test_half_open_trial_failure_reopens(self, breaker, clock):
        self._trip(breaker)
        clock.advance(300)

        with pytest.raises(RuntimeError):
            breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(lambda: 1)

    def test_half_open_admits_single_trial_call(self, breaker, clock):
        self._trip(breaker)
        clock.advance(300)

        def trial():
            with pytest.raises(CircuitBreakerOpenError):
                breaker.call(lambda: "second")
            return "first"

        assert breaker.call(trial) == "first"
        assert breaker.state == CircuitState.CLOSED

    def test_cooldown_not_elapsed_keeps_rejecting(self, breaker, clock):
        self._trip(breaker)
        clock.advance(299)

        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(lambda: 1)
        assert breaker.state == CircuitState.OPEN

    def test_reset(self, breaker):
        self._trip(breaker)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: 1) == 1
