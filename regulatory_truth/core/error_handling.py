"""
Error Handling Utilities

Provides the exception hierarchy, retry logic with exponential backoff and
the rolling-window circuit breaker used to isolate pipeline stages.
"""

import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Type

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class RegulatoryTruthError(Exception):
    """Base exception for regulatory truth errors"""
    pass


class RetryableError(RegulatoryTruthError):
    """Error that should be retried"""
    pass


class NonRetryableError(RegulatoryTruthError):
    """Error that should not be retried"""
    pass


class CircuitBreakerOpenError(RegulatoryTruthError):
    """Circuit breaker is open, rejecting calls"""
    pass


class StageTimeoutError(RegulatoryTruthError):
    """A guarded call exceeded its execution budget"""
    pass


class StageBusyError(StageTimeoutError):
    """A timed-out run of the stage is still in progress"""
    pass


class BackendUnavailableError(RegulatoryTruthError):
    """Queue backend or database could not be reached"""
    pass


class ConfigurationError(RegulatoryTruthError):
    """Configuration is invalid"""
    pass


# ============================================================================
# RETRY LOGIC
# ============================================================================

@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[Type[Exception], ...] = (RetryableError, ConnectionError, TimeoutError)


class RetryHandler:
    """Handles retry logic with exponential backoff and jitter"""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize retry handler

        Args:
            policy: Retry policy (uses defaults if not provided)
            sleep: Sleep function, injectable for tests
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute function with retry logic

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: Last exception if all retries fail
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except NonRetryableError:
                raise
            except self.policy.retryable_exceptions as e:
                last_exception = e

                if attempt == self.policy.max_attempts:
                    break

                delay_ms = self._calculate_delay(attempt)
                logger.info(
                    f"Retry {attempt}/{self.policy.max_attempts - 1} after {delay_ms}ms "
                    f"({type(e).__name__}: {e})"
                )
                self._sleep(delay_ms / 1000.0)

        raise last_exception

    def _calculate_delay(self, attempt: int) -> int:
        """
        Calculate delay for retry attempt

        Uses exponential backoff with optional jitter

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in milliseconds
        """
        delay = self.policy.initial_delay_ms * (self.policy.exponential_base ** (attempt - 1))
        delay = min(delay, self.policy.max_delay_ms)

        if self.policy.jitter:
            # Random jitter between 0% and 25% of delay
            delay = delay + random.uniform(0, delay * 0.25)

        return int(delay)


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if dependency recovered


@dataclass
class CircuitBreakerStats:
    """Circuit breaker statistics"""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None


class CircuitBreaker:
    """
    Circuit breaker guarding one pipeline stage

    State transitions:
        CLOSED -> (error rate over rolling window > threshold) -> OPEN
        OPEN -> (reset timeout elapsed) -> HALF_OPEN
        HALF_OPEN -> (trial call succeeds) -> CLOSED
        HALF_OPEN -> (trial call fails) -> OPEN

    Only one trial call is admitted while HALF_OPEN.
    """

    def __init__(
        self,
        name: str,
        error_threshold_percentage: float = 30.0,
        rolling_window_seconds: float = 600.0,
        volume_threshold: int = 3,
        reset_timeout_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker

        Args:
            name: Circuit breaker name
            error_threshold_percentage: Error rate (percent) that trips the circuit
            rolling_window_seconds: Window over which the error rate is computed
            volume_threshold: Minimum calls in the window before the rate is trusted
            reset_timeout_seconds: Cool-down before a half-open trial call
            clock: Monotonic clock, injectable for tests
        """
        self.name = name
        self.error_threshold_percentage = error_threshold_percentage
        self.rolling_window_seconds = rolling_window_seconds
        self.volume_threshold = volume_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._window: deque[tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state"""
        with self._lock:
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        """Get circuit statistics"""
        with self._lock:
            return CircuitBreakerStats(
                total_calls=self._stats.total_calls,
                successful_calls=self._stats.successful_calls,
                failed_calls=self._stats.failed_calls,
                rejected_calls=self._stats.rejected_calls,
                last_failure_time=self._stats.last_failure_time,
                last_success_time=self._stats.last_success_time
            )

    @property
    def error_rate(self) -> float:
        """Error percentage over the current rolling window"""
        with self._lock:
            self._prune_window()
            return self._error_rate()

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute function through circuit breaker

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            CircuitBreakerOpenError: Circuit is open
            Exception: Exception from function
        """
        with self._lock:
            if not self._should_allow_call():
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpenError(
                    f"Circuit breaker '{self.name}' is open"
                )
            self._stats.total_calls += 1

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_allow_call(self) -> bool:
        """
        Check if call should be allowed

        Returns:
            True if call should proceed
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None:
                elapsed = self._clock() - self._opened_at
                if elapsed >= self.reset_timeout_seconds:
                    logger.info(f"Circuit breaker '{self.name}' half-open, admitting a trial call")
                    self._state = CircuitState.HALF_OPEN
                    self._trial_in_flight = True
                    return True
            return False

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

        return False

    def _on_success(self) -> None:
        """Handle successful call"""
        with self._lock:
            self._stats.successful_calls += 1
            self._stats.last_success_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' closed after successful trial call")
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._trial_in_flight = False
                self._window.clear()
                return

            self._record(True)

    def _on_failure(self) -> None:
        """Handle failed call"""
        with self._lock:
            self._stats.failed_calls += 1
            self._stats.last_failure_time = datetime.now(timezone.utc)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker '{self.name}' trial call failed, reopening")
                self._trip()
                return

            self._record(False)
            if self._state == CircuitState.CLOSED and self._should_trip():
                logger.warning(
                    f"Circuit breaker '{self.name}' opened "
                    f"(error rate {self._error_rate():.0f}% over {len(self._window)} calls)"
                )
                self._trip()

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

    def _record(self, success: bool) -> None:
        self._window.append((self._clock(), success))
        self._prune_window()

    def _prune_window(self) -> None:
        cutoff = self._clock() - self.rolling_window_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _error_rate(self) -> float:
        if not self._window:
            return 0.0
        failures = sum(1 for _, ok in self._window if not ok)
        return failures * 100.0 / len(self._window)

    def _should_trip(self) -> bool:
        if len(self._window) < self.volume_threshold:
            return False
        return self._error_rate() > self.error_threshold_percentage

    def reset(self) -> None:
        """Reset circuit breaker to closed state"""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._window.clear()
            self._opened_at = None
            self._trial_in_flight = False
