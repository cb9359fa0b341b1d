"""
Heartbeats for stall detection.

The drainer mirrors per-stage and global liveness to an external store so a
watchdog can tell a stalled stage from an idle one. Heartbeats are for
observability only; the scheduler state stays the source of truth.
"""

import fcntl
import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class StageHeartbeat:
    stage: str
    last_activity: str
    items_processed: int
    avg_duration_ms: int
    last_error: Optional[str] = None


@dataclass
class DrainerHeartbeat:
    last_activity: str
    status: str  # active, idle or stopped
    items_processed: int
    cycle_count: int
    backoff_delay_ms: int
    is_running: bool


class HeartbeatSink(Protocol):
    def update_stage(self, heartbeat: StageHeartbeat) -> None: ...

    def update_drainer(self, heartbeat: DrainerHeartbeat) -> None: ...


class InMemoryHeartbeatStore:
    """Keeps the latest heartbeat per stage and the latest drainer heartbeat."""

    def __init__(self):
        self._lock = threading.Lock()
        self.stages: dict[str, StageHeartbeat] = {}
        self.drainer: Optional[DrainerHeartbeat] = None

    def update_stage(self, heartbeat: StageHeartbeat) -> None:
        with self._lock:
            self.stages[heartbeat.stage] = heartbeat

    def update_drainer(self, heartbeat: DrainerHeartbeat) -> None:
        with self._lock:
            self.drainer = heartbeat


class JsonHeartbeatStore:
    """
    Latest heartbeat per stage and for the drainer, kept as one JSON snapshot.

    Every update rewrites the snapshot through a temp file and an atomic
    rename, so readers in other processes never see a partial file.
    """

    def __init__(self, snapshot_file: Path = Path(".regulatory_truth/heartbeat.json")):
        self.snapshot_file = Path(snapshot_file)
        self._lock = threading.Lock()
        self.snapshot_file.parent.mkdir(parents=True, exist_ok=True)
        existing = self.latest()
        self._drainer: Optional[dict] = existing.pop("drainer", None)
        self._stages: dict[str, dict] = existing

    def update_stage(self, heartbeat: StageHeartbeat) -> None:
        with self._lock:
            self._stages[heartbeat.stage] = asdict(heartbeat)
            self._write()

    def update_drainer(self, heartbeat: DrainerHeartbeat) -> None:
        with self._lock:
            self._drainer = asdict(heartbeat)
            self._write()

    def _write(self) -> None:
        temp_file = self.snapshot_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump({"stages": self._stages, "drainer": self._drainer}, f, indent=2)
                f.flush()
                temp_file.replace(self.snapshot_file)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def latest(self) -> dict[str, dict]:
        """Latest heartbeat per stage plus the drainer entry under ``"drainer"``."""
        if not self.snapshot_file.exists():
            return {}

        try:
            with open(self.snapshot_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cannot read heartbeat snapshot {self.snapshot_file}: {e}")
            return {}

        latest = dict(data.get("stages") or {})
        if data.get("drainer"):
            latest["drainer"] = data["drainer"]
        return latest
