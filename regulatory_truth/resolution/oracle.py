"""
Arbitration Oracle

The oracle is an external reasoning service asked to arbitrate conflicts the
deterministic strategies cannot settle. It is treated as unreliable: every
implementation returns ``OracleResolved`` or ``OracleUnavailable`` and never
raises for timeouts, transport errors or malformed responses.

Calls are globally rate limited (bounded concurrency, minimum spacing between
calls and a per-window call budget).
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Protocol, Union

import requests
from pydantic import BaseModel, Field, ValidationError

from ..core.config import OracleConfig
from ..core.error_handling import (
    NonRetryableError,
    RetryableError,
    RetryHandler,
    RetryPolicy,
)
from ..schema import ConflictType, RegulatoryRule, ResolutionStrategy

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


# ============================================================================
# Request / response
# ============================================================================

class ConflictingClaim(BaseModel):
    item_id: str
    item_type: str = "rule"
    claim: str


class ArbitrationRequest(BaseModel):
    conflict_id: str
    conflict_type: ConflictType
    conflicting_items: list[ConflictingClaim] = Field(min_length=2)


class ArbitrationResponse(BaseModel):
    """Validated oracle verdict."""
    winning_item_id: Optional[str] = None
    strategy: ResolutionStrategy = ResolutionStrategy.CONSERVATIVE
    rationale_hr: str = ""
    rationale_en: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    requires_human_review: bool = False
    review_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ArbitrationResponse":
        """Accept either the flat shape or the nested ``arbitration`` envelope."""
        body = data.get("arbitration", data)
        resolution = body.get("resolution")
        if isinstance(resolution, dict):
            return cls(
                winning_item_id=resolution.get("winning_item_id"),
                strategy=resolution.get("resolution_strategy", ResolutionStrategy.CONSERVATIVE),
                rationale_hr=resolution.get("rationale_hr", ""),
                rationale_en=resolution.get("rationale_en", ""),
                confidence=body.get("confidence"),
                requires_human_review=body.get("requires_human_review", False),
                review_reason=body.get("human_review_reason"),
            )
        return cls.model_validate(body)


@dataclass(frozen=True)
class OracleResolved:
    response: ArbitrationResponse


@dataclass(frozen=True)
class OracleUnavailable:
    reason: str


OracleResult = Union[OracleResolved, OracleUnavailable]


class ArbitrationOracle(Protocol):
    def arbitrate(self, request: ArbitrationRequest) -> OracleResult:
        ...


def build_claim(rule: RegulatoryRule) -> ConflictingClaim:
    """Describe a rule for the oracle: value, authority, window, scope and quotes."""
    sources = "; ".join(
        f'"{s.exact_quote}" (from {s.source_name or "Unknown"}, confidence: {s.confidence})'
        for s in rule.sources
    )
    until = rule.effective_until.isoformat() if rule.effective_until else "indefinite"
    claim = "\n".join([
        f"Rule: {rule.title or rule.concept_slug}",
        f"Value: {rule.value} ({rule.value_type})",
        f"Authority Level: {rule.authority_level.value}",
        f"Effective: {rule.effective_from.isoformat()} to {until}",
        f"Applies When: {rule.applies_when or 'N/A'}",
        f"Explanation: {rule.explanation or 'N/A'}",
        f"Source Evidence: {sources or 'N/A'}",
    ])
    return ConflictingClaim(item_id=rule.id, item_type="rule", claim=claim)


# ============================================================================
# Rate limiting
# ============================================================================

class OracleRateLimiter:
    """
    Process-wide limiter for oracle calls.

    - at most ``max_concurrent`` calls in flight
    - at least ``min_interval_ms`` between call starts
    - at most ``max_calls_per_window`` call starts per fixed window
    """

    def __init__(
        self,
        max_concurrent: int = 1,
        min_interval_ms: int = 2000,
        max_calls_per_window: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_concurrent = max_concurrent
        self.min_interval_ms = min_interval_ms
        self.max_calls_per_window = max_calls_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep

        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._window_start: Optional[float] = None
        self._calls_in_window = 0
        self._last_call: Optional[float] = None

    @classmethod
    def from_config(cls, config: OracleConfig) -> "OracleRateLimiter":
        return cls(
            max_concurrent=config.max_concurrent_calls,
            min_interval_ms=config.min_interval_ms,
            max_calls_per_window=config.max_calls_per_window,
            window_seconds=config.window_seconds,
        )

    def acquire(self) -> float:
        """
        Block until a call may start.

        Returns:
            Seconds spent waiting on spacing or window budget
        """
        self._slots.acquire()
        try:
            with self._lock:
                now = self._clock()
                if self._window_start is None or now - self._window_start >= self.window_seconds:
                    self._window_start = now
                    self._calls_in_window = 0

                wait = 0.0
                if self._last_call is not None:
                    wait = max(wait, self._last_call + self.min_interval_ms / 1000.0 - now)
                if self._calls_in_window >= self.max_calls_per_window:
                    wait = max(wait, self._window_start + self.window_seconds - now)

                if wait > 0:
                    logger.debug(f"Oracle rate limit: waiting {wait:.2f}s")
                    self._sleep(wait)
                    now = max(self._clock(), now + wait)
                    if now - self._window_start >= self.window_seconds:
                        self._window_start = now
                        self._calls_in_window = 0

                self._calls_in_window += 1
                self._last_call = now
                return max(wait, 0.0)
        except BaseException:
            self._slots.release()
            raise

    def release(self) -> None:
        self._slots.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def calls_in_window(self) -> int:
        with self._lock:
            return self._calls_in_window


class RateLimitedOracle:
    """Wraps any oracle so every call passes through the shared limiter."""

    def __init__(self, oracle: ArbitrationOracle, limiter: OracleRateLimiter):
        self.oracle = oracle
        self.limiter = limiter

    def arbitrate(self, request: ArbitrationRequest) -> OracleResult:
        with self.limiter.slot():
            return self.oracle.arbitrate(request)


# ============================================================================
# Implementations
# ============================================================================

class HttpArbitrationOracle:
    """
    Oracle reached over HTTP.

    Posts the arbitration request as JSON and validates the verdict. Timeouts
    and retryable status codes are retried with exponential backoff; anything
    left over becomes ``OracleUnavailable``.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 120.0,
        max_attempts: int = 3,
        temperature: float = 0.1,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self._session = session or requests.Session()
        self._retry = RetryHandler(
            RetryPolicy(
                max_attempts=max_attempts,
                initial_delay_ms=1000,
                max_delay_ms=30000,
                retryable_exceptions=(RetryableError,),
            ),
            sleep=sleep,
        )

    @classmethod
    def from_config(cls, config: OracleConfig) -> "HttpArbitrationOracle":
        if not config.endpoint:
            raise ValueError("Oracle endpoint is not configured")
        return cls(
            endpoint=config.endpoint,
            api_key=os.getenv(config.api_key_env_var),
            timeout_seconds=config.timeout_seconds,
            max_attempts=config.max_attempts,
            temperature=config.temperature,
        )

    def arbitrate(self, request: ArbitrationRequest) -> OracleResult:
        try:
            data = self._retry.execute(self._post, request)
        except (RetryableError, NonRetryableError) as e:
            logger.warning(f"Oracle unavailable for conflict {request.conflict_id}: {e}")
            return OracleUnavailable(reason=str(e))

        try:
            response = ArbitrationResponse.from_payload(data)
        except (ValidationError, AttributeError, TypeError) as e:
            logger.warning(f"Oracle returned malformed verdict for {request.conflict_id}: {e}")
            return OracleUnavailable(reason=f"malformed response: {e}")

        return OracleResolved(response=response)

    def _post(self, request: ArbitrationRequest) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = request.model_dump(mode='json')
        payload["temperature"] = self.temperature

        try:
            response = self._session.post(
                self.endpoint,
                headers=headers,
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise RetryableError(f"Request timed out after {self.timeout_seconds}s") from e
        except requests.exceptions.RequestException as e:
            raise RetryableError(f"Request error: {e}") from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise RetryableError(f"API error {response.status_code}")
        if response.status_code != 200:
            raise NonRetryableError(f"API error {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise NonRetryableError(f"Response is not JSON: {e}") from e


class StaticOracle:
    """Returns a fixed result. Used offline and in tests."""

    def __init__(self, result: Optional[OracleResult] = None):
        self.result = result or OracleUnavailable(reason="no oracle configured")
        self.requests: list[ArbitrationRequest] = []

    def arbitrate(self, request: ArbitrationRequest) -> OracleResult:
        self.requests.append(request)
        return self.result
