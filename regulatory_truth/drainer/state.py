"""
Drainer state.

Everything the drain loop mutates lives on one ``DrainerState`` owned by a
scheduler instance, so several schedulers can run side by side in tests.
"""

from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..core.config import CircuitBreakerConfig
from ..core.error_handling import CircuitBreaker


@dataclass
class StageMetrics:
    """Per-stage counters"""
    items_processed: int = 0
    total_duration_ms: int = 0
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0

    @property
    def avg_duration_ms(self) -> int:
        if self.items_processed <= 0:
            return 0
        return round(self.total_duration_ms / self.items_processed)


@dataclass
class DrainerState:
    """Process-local drainer state, reset on restart"""
    is_running: bool = False
    current_delay_ms: int = 1000
    cycle_count: int = 0
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stage_metrics: dict[str, StageMetrics] = field(default_factory=dict)
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    breaker_config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    # Futures of stage runs that outlived their timeout, by stage name.
    in_flight: dict[str, Future] = field(default_factory=dict)

    def metrics_for(self, stage_name: str) -> StageMetrics:
        return self.stage_metrics.setdefault(stage_name, StageMetrics())

    def breaker_for(self, stage_name: str) -> CircuitBreaker:
        breaker = self.breakers.get(stage_name)
        if breaker is None:
            cfg = self.breaker_config
            breaker = CircuitBreaker(
                name=f"drainer-{stage_name}",
                error_threshold_percentage=cfg.error_threshold_percentage,
                rolling_window_seconds=cfg.rolling_window_seconds,
                volume_threshold=cfg.volume_threshold,
                reset_timeout_seconds=cfg.reset_timeout_seconds,
            )
            self.breakers[stage_name] = breaker
        return breaker

    @property
    def total_items_processed(self) -> int:
        return sum(m.items_processed for m in self.stage_metrics.values())
