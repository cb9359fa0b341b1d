"""
Tests for guarded stage execution
"""

import threading
from unittest.mock import MagicMock

import pytest

from regulatory_truth.core.config import CircuitBreakerConfig
from regulatory_truth.core.error_handling import (
    CircuitBreakerOpenError,
    CircuitState,
    StageBusyError,
    StageTimeoutError,
)
from regulatory_truth.drainer.executor import StageExecutor
from regulatory_truth.drainer.heartbeat import InMemoryHeartbeatStore
from regulatory_truth.drainer.state import DrainerState


@pytest.fixture
def state():
    return DrainerState()


@pytest.fixture
def heartbeats():
    return InMemoryHeartbeatStore()


@pytest.fixture
def executor(state, heartbeats):
    return StageExecutor(state, heartbeats, timeout_seconds=5)


def _boom():
    raise RuntimeError("scan failed")


class TestExecute:

    def test_success_records_metrics(self, executor, state, heartbeats):
        assert executor.execute("conflicts", lambda: 4) == 4
        executor.execute("conflicts", lambda: 2)

        metrics = state.metrics_for("conflicts")
        assert metrics.items_processed == 6
        assert metrics.runs == 2
        assert metrics.last_error is None
        assert heartbeats.stages["conflicts"].items_processed == 6
        assert heartbeats.stages["conflicts"].last_error is None

    def test_failure_records_error_and_reraises(self, executor, state, heartbeats):
        with pytest.raises(RuntimeError):
            executor.execute("pending-ocr", _boom)

        metrics = state.metrics_for("pending-ocr")
        assert metrics.failures == 1
        assert metrics.last_error == "RuntimeError: scan failed"
        assert heartbeats.stages["pending-ocr"].last_error == "RuntimeError: scan failed"

    def test_success_clears_previous_error(self, executor, state):
        with pytest.raises(RuntimeError):
            executor.execute("draft-rules", _boom)
        executor.execute("draft-rules", lambda: 0)

        assert state.metrics_for("draft-rules").last_error is None

    def test_heartbeat_failure_never_fails_stage(self, state):
        sink = MagicMock()
        sink.update_stage.side_effect = ConnectionError("heartbeat store down")
        executor = StageExecutor(state, sink)

        assert executor.execute("conflicts", lambda: 1) == 1
        assert sink.update_stage.call_count == 1

    def test_without_heartbeat_sink(self, state):
        assert StageExecutor(state).execute("conflicts", lambda: 3) == 3

    def test_timeout(self, state):
        release = threading.Event()
        executor = StageExecutor(state, timeout_seconds=0.05)

        try:
            with pytest.raises(StageTimeoutError):
                executor.execute("fetched-evidence", lambda: release.wait(5) and 0)
        finally:
            release.set()

        assert state.metrics_for("fetched-evidence").failures == 1

    def test_timed_out_stage_is_not_started_twice(self, state):
        release = threading.Event()
        started = []
        executor = StageExecutor(state, timeout_seconds=0.05)

        def slow():
            started.append(1)
            release.wait(5)
            return 0

        try:
            with pytest.raises(StageTimeoutError):
                executor.execute("pending-items", slow)
            with pytest.raises(StageBusyError):
                executor.execute("pending-items", slow)
        finally:
            release.set()

        assert started == [1]
        assert state.metrics_for("pending-items").failures == 2
        assert state.breaker_for("pending-items").stats.failed_calls == 2

    def test_stage_runs_again_once_timed_out_run_finishes(self, state):
        release = threading.Event()
        executor = StageExecutor(state, timeout_seconds=0.05)

        with pytest.raises(StageTimeoutError):
            executor.execute("pending-ocr", lambda: release.wait(5) and 0)
        release.set()
        state.in_flight["pending-ocr"].result(timeout=5)

        assert executor.execute("pending-ocr", lambda: 2) == 2
        assert "pending-ocr" not in state.in_flight


class TestBreakerIntegration:

    def test_repeated_failures_open_the_stage_breaker(self, executor, state):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                executor.execute("source-pointers", _boom)

        assert state.breaker_for("source-pointers").state == CircuitState.OPEN

        calls = []
        with pytest.raises(CircuitBreakerOpenError):
            executor.execute("source-pointers", lambda: calls.append(1) or 1)
        assert calls == []

    def test_breakers_are_per_stage(self, executor, state):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                executor.execute("pending-items", _boom)

        assert executor.execute("approved-rules", lambda: 1) == 1
        assert state.breaker_for("approved-rules").state == CircuitState.CLOSED

    def test_breaker_uses_state_config(self):
        state = DrainerState(breaker_config=CircuitBreakerConfig(volume_threshold=10))
        breaker = state.breaker_for("conflicts")

        assert breaker.name == "drainer-conflicts"
        assert breaker.volume_threshold == 10
        assert state.breaker_for("conflicts") is breaker
