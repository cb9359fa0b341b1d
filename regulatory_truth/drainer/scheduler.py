"""
Drain Scheduler

Continuous control loop keeping the pipeline drained. Each cycle runs every
stage once, in a fixed order, so work produced by an early stage can be
picked up by a later stage in the same cycle. A stage failure is logged and
the cycle moves on.

The poll delay resets to its floor after an active cycle and doubles, up to a
ceiling, after an idle one. Shutdown is cooperative: ``stop()`` sets an event
that is checked at the top of every iteration and interrupts the sleep.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from ..core.config import DrainerConfig, RegulatoryTruthConfig
from ..core.error_handling import BackendUnavailableError, CircuitBreakerOpenError
from ..queue.dispatcher import JobDispatcher
from ..storage.gateway import StorageGateway
from .executor import StageExecutor
from .heartbeat import DrainerHeartbeat, HeartbeatSink
from .stages import Stage, build_stages
from .state import DrainerState

logger = logging.getLogger(__name__)


class Backoff:
    """Exponential poll delay between a floor and a ceiling (milliseconds)."""

    def __init__(self, min_delay_ms: int = 1000, max_delay_ms: int = 60000, multiplier: float = 2.0):
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self.current_ms = min_delay_ms

    @classmethod
    def from_config(cls, config: DrainerConfig) -> "Backoff":
        return cls(config.min_delay_ms, config.max_delay_ms, config.multiplier)

    def reset(self) -> int:
        self.current_ms = self.min_delay_ms
        return self.current_ms

    def increase(self) -> int:
        self.current_ms = int(min(self.current_ms * self.multiplier, self.max_delay_ms))
        return self.current_ms


class DrainScheduler:
    """Sequences the pipeline stages and adapts the polling interval."""

    def __init__(
        self,
        stages: list[Stage],
        executor: StageExecutor,
        state: Optional[DrainerState] = None,
        backoff: Optional[Backoff] = None,
        heartbeat: Optional[HeartbeatSink] = None,
        gateway: Optional[StorageGateway] = None,
        dispatcher: Optional[JobDispatcher] = None,
        log_every_n_cycles: int = 10,
    ):
        self.stages = stages
        self.executor = executor
        self.state = state or executor.state
        self.backoff = backoff or Backoff()
        self.heartbeat = heartbeat
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.log_every_n_cycles = log_every_n_cycles
        self.state.current_delay_ms = self.backoff.current_ms
        self._stop = threading.Event()

    @classmethod
    def from_config(
        cls,
        gateway: StorageGateway,
        dispatcher: JobDispatcher,
        config: Optional[RegulatoryTruthConfig] = None,
        heartbeat: Optional[HeartbeatSink] = None,
    ) -> "DrainScheduler":
        config = config or RegulatoryTruthConfig()
        state = DrainerState(breaker_config=config.circuit_breaker)
        executor = StageExecutor(state, heartbeat, timeout_seconds=config.stage.timeout_seconds)
        return cls(
            stages=build_stages(gateway, dispatcher, config.stage),
            executor=executor,
            state=state,
            backoff=Backoff.from_config(config.drainer),
            heartbeat=heartbeat,
            gateway=gateway,
            dispatcher=dispatcher,
            log_every_n_cycles=config.drainer.log_every_n_cycles,
        )

    def reconfigure(self, config: RegulatoryTruthConfig) -> None:
        """Apply reloaded backoff bounds, stage timeout and log cadence."""
        self.backoff.min_delay_ms = config.drainer.min_delay_ms
        self.backoff.max_delay_ms = config.drainer.max_delay_ms
        self.backoff.multiplier = config.drainer.multiplier
        self.backoff.current_ms = min(
            max(self.backoff.current_ms, self.backoff.min_delay_ms), self.backoff.max_delay_ms
        )
        self.state.current_delay_ms = self.backoff.current_ms
        self.executor.timeout_seconds = config.stage.timeout_seconds
        self.log_every_n_cycles = config.drainer.log_every_n_cycles
        logger.info(
            f"Drainer reconfigured: backoff {self.backoff.min_delay_ms}-"
            f"{self.backoff.max_delay_ms}ms, stage timeout {config.stage.timeout_seconds}s"
        )

    def preflight(self) -> None:
        """
        Check the database and queue backends are reachable.

        Raises:
            BackendUnavailableError: either backend is down
        """
        if self.gateway is not None and not self.gateway.ping():
            raise BackendUnavailableError("Database gateway unreachable")
        if self.dispatcher is not None and not self.dispatcher.ping():
            raise BackendUnavailableError("Job queue backend unreachable")

    def run_cycle(self) -> bool:
        """
        Run every stage once and update the backoff.

        Returns:
            True when any stage dispatched work
        """
        self.state.cycle_count += 1
        work_done = False

        for index, stage in enumerate(self.stages, 1):
            try:
                processed = self.executor.execute(stage.name, stage.scan_and_dispatch)
            except CircuitBreakerOpenError as e:
                logger.warning(f"Stage {index} ({stage.name}) skipped: {e}")
                continue
            except Exception as e:
                logger.error(f"Stage {index} ({stage.name}) error: {type(e).__name__}: {e}")
                continue

            if processed > 0:
                work_done = True
                logger.info(f"Stage {index} ({stage.name}): queued {processed} '{stage.queue_name}' jobs")

        if work_done:
            self.state.last_activity = datetime.now(timezone.utc)
            self.backoff.reset()
        else:
            self.backoff.increase()
        self.state.current_delay_ms = self.backoff.current_ms

        self._publish("active" if work_done else "idle")
        return work_done

    def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Loop until ``stop()`` is called (or ``max_cycles`` have run)."""
        logger.info("Starting continuous draining loop")
        self._stop.clear()
        self.state.is_running = True
        cycles = 0

        try:
            while not self._stop.is_set():
                work_done = self.run_cycle()
                cycles += 1

                if work_done:
                    if self.state.cycle_count % self.log_every_n_cycles == 0:
                        self.log_state()
                else:
                    logger.info(f"No work found, backing off for {self.backoff.current_ms}ms")

                if max_cycles is not None and cycles >= max_cycles:
                    break

                self._stop.wait(self.backoff.current_ms / 1000.0)
        finally:
            self.state.is_running = False
            self._publish("stopped")
            logger.info(f"Draining loop stopped after {self.state.cycle_count} cycles")

    def stop(self) -> None:
        """Request a cooperative shutdown."""
        logger.info("Stop requested")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def log_state(self) -> None:
        per_stage = {
            name: metrics.items_processed
            for name, metrics in self.state.stage_metrics.items()
        }
        logger.info(
            f"Stats after cycle {self.state.cycle_count}: {per_stage}, "
            f"backoff {self.backoff.current_ms}ms",
            extra={"cycle_count": self.state.cycle_count, "stage_items": per_stage},
        )

    def _publish(self, status: str) -> None:
        if self.heartbeat is None:
            return

        heartbeat = DrainerHeartbeat(
            last_activity=self.state.last_activity.isoformat(),
            status=status,
            items_processed=self.state.total_items_processed,
            cycle_count=self.state.cycle_count,
            backoff_delay_ms=self.state.current_delay_ms,
            is_running=self.state.is_running,
        )
        try:
            self.heartbeat.update_drainer(heartbeat)
        except Exception as e:
            logger.error(f"Failed to update heartbeat: {e}")
