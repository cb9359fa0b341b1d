"""
Stage execution.

Runs one stage's scan-and-dispatch function through that stage's circuit
breaker with a bounded execution time, then records metrics and publishes a
stage heartbeat. Failures are recorded and re-raised; the scheduler decides to
carry on with the next stage.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.error_handling import StageBusyError, StageTimeoutError
from .heartbeat import HeartbeatSink, StageHeartbeat
from .state import DrainerState

logger = logging.getLogger(__name__)


class StageExecutor:
    """Guarded runner for pipeline stages"""

    def __init__(
        self,
        state: DrainerState,
        heartbeat: Optional[HeartbeatSink] = None,
        timeout_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize stage executor

        Args:
            state: Scheduler-owned state holding metrics and breakers
            heartbeat: Sink for stage heartbeats
            timeout_seconds: Execution budget per stage call
            clock: Monotonic clock used for durations
        """
        self.state = state
        self.heartbeat = heartbeat
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def execute(self, stage_name: str, scan_and_dispatch: Callable[[], int]) -> int:
        """
        Execute one stage

        Args:
            stage_name: Stage identifier
            scan_and_dispatch: Returns the number of jobs newly dispatched

        Returns:
            Items processed by this call

        Raises:
            CircuitBreakerOpenError: the stage's breaker rejected the call
            StageTimeoutError: the stage exceeded its budget
            StageBusyError: an earlier timed-out run of the stage is still going
            Exception: whatever the stage raised
        """
        metrics = self.state.metrics_for(stage_name)
        breaker = self.state.breaker_for(stage_name)
        start = self._clock()
        metrics.runs += 1

        try:
            processed = breaker.call(self._run_with_timeout, stage_name, scan_and_dispatch)
        except Exception as e:
            metrics.failures += 1
            metrics.last_error = f"{type(e).__name__}: {e}"
            self._publish(stage_name, last_error=metrics.last_error)
            raise

        duration_ms = int((self._clock() - start) * 1000)
        metrics.items_processed += processed
        metrics.total_duration_ms += duration_ms
        metrics.last_error = None
        self._publish(stage_name)
        return processed

    def _run_with_timeout(self, stage_name: str, fn: Callable[[], int]) -> int:
        previous = self.state.in_flight.get(stage_name)
        if previous is not None:
            if not previous.done():
                raise StageBusyError(
                    f"Stage '{stage_name}' is still running from an earlier cycle"
                )
            del self.state.in_flight[stage_name]
            logger.info(f"Timed-out run of stage '{stage_name}' has finished")

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage_name}")
        try:
            future = pool.submit(fn)
            try:
                return future.result(timeout=self.timeout_seconds)
            except FutureTimeoutError as e:
                # Python threads cannot be killed; the run finishes in the
                # background and blocks new runs of the stage until it does.
                self.state.in_flight[stage_name] = future
                raise StageTimeoutError(
                    f"Stage '{stage_name}' exceeded {self.timeout_seconds}s"
                ) from e
        finally:
            pool.shutdown(wait=False)

    def _publish(self, stage_name: str, last_error: Optional[str] = None) -> None:
        if self.heartbeat is None:
            return

        metrics = self.state.metrics_for(stage_name)
        heartbeat = StageHeartbeat(
            stage=stage_name,
            last_activity=datetime.now(timezone.utc).isoformat(),
            items_processed=metrics.items_processed,
            avg_duration_ms=0 if last_error else metrics.avg_duration_ms,
            last_error=last_error,
        )
        try:
            self.heartbeat.update_stage(heartbeat)
        except Exception as e:
            logger.error(f"Failed to update stage heartbeat for {stage_name}: {e}")
