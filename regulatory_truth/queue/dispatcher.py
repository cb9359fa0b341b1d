"""
Job dispatch for the pipeline stages.

Stages hand work to stage-specific workers through a durable, at-least-once
job queue. Every job carries an idempotency key derived from the ids it
covers; a queue accepts a key once per retention window, so dispatching the
same backlog twice enqueues a single job.

Two backends are provided: an in-memory queue and a file-based queue that
works everywhere without external services.
"""

import hashlib
import json
import logging
import shutil
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


def idempotency_key(queue_name: str, ids: Iterable[str]) -> str:
    """Queue name plus SHA-256 of the sorted, de-duplicated id list."""
    canonical = ",".join(sorted(set(ids)))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{queue_name}:{digest}"


class JobStatus(str, Enum):
    """Status of a job in the queue."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A job message for a stage queue."""

    job_id: str
    queue_name: str
    payload: dict[str, Any]
    idempotency_key: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "payload": self.payload,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Deserialize from dictionary."""
        return cls(
            job_id=data["job_id"],
            queue_name=data["queue_name"],
            payload=data.get("payload", {}),
            idempotency_key=data["idempotency_key"],
            status=JobStatus(data.get("status", "pending")),
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
            result=data.get("result"),
            error=data.get("error"),
        )


def _new_job_id(now: float) -> str:
    # Sortable by creation time so file listings dequeue FIFO.
    return f"{int(now * 1_000_000):020d}-{uuid.uuid4().hex[:8]}"


class JobDispatcher(Protocol):
    """Protocol for job queue implementations."""

    def enqueue(self, queue_name: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        """Add a job. Returns False when the key was already accepted."""
        ...

    def dequeue(self, queue_name: str) -> Optional[Job]:
        """Get and claim the next pending job of a queue."""
        ...

    def complete(self, job_id: str, result: Optional[dict] = None) -> None:
        """Mark a job as completed."""
        ...

    def fail(self, job_id: str, error: str) -> None:
        """Mark a job as failed."""
        ...

    def ping(self) -> bool:
        """Check the backend is reachable."""
        ...

    def stats(self) -> dict[str, dict[str, int]]:
        """Job counts per queue and status."""
        ...


class InMemoryJobQueue:
    """Job queue held in process memory."""

    def __init__(
        self,
        dedupe_retention_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.dedupe_retention_seconds = dedupe_retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: dict[str, float] = {}
        self._pending: dict[str, deque[str]] = {}
        self._jobs: dict[str, Job] = {}
        self._finished_at: dict[str, float] = {}
        self.available = True

    def _prune(self, now: float) -> None:
        """Drop expired keys and jobs that finished outside the retention window."""
        cutoff = now - self.dedupe_retention_seconds
        self._keys = {k: t for k, t in self._keys.items() if t > cutoff}
        for job_id in [j for j, t in self._finished_at.items() if t <= cutoff]:
            del self._finished_at[job_id]
            del self._jobs[job_id]

    def enqueue(self, queue_name: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._prune(now)
            if idempotency_key in self._keys:
                logger.debug(f"Duplicate job {idempotency_key} ignored")
                return False
            self._keys[idempotency_key] = now
            job = Job(
                job_id=_new_job_id(now),
                queue_name=queue_name,
                payload=payload,
                idempotency_key=idempotency_key,
            )
            self._jobs[job.job_id] = job
            self._pending.setdefault(queue_name, deque()).append(job.job_id)

        logger.info(f"Enqueued job {job.job_id} on '{queue_name}'")
        return True

    def dequeue(self, queue_name: str) -> Optional[Job]:
        with self._lock:
            pending = self._pending.get(queue_name)
            if not pending:
                return None
            job = self._jobs[pending.popleft()]
            job.status = JobStatus.PROCESSING
            job.started_at = datetime.now(timezone.utc)
            return job

    def complete(self, job_id: str, result: Optional[dict] = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                logger.warning(f"Job {job_id} not found in processing")
                return
            job.status = JobStatus.COMPLETED
            job.completed_at = datetime.now(timezone.utc)
            job.result = result
            self._finished_at[job_id] = self._clock()

    def fail(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                logger.warning(f"Job {job_id} not found in processing")
                return
            job.status = JobStatus.FAILED
            job.completed_at = datetime.now(timezone.utc)
            job.error = error
            self._finished_at[job_id] = self._clock()
            # Failed jobs may be dispatched again.
            self._keys.pop(job.idempotency_key, None)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self, queue_name: Optional[str] = None) -> list[Job]:
        with self._lock:
            return [
                j for j in self._jobs.values()
                if queue_name is None or j.queue_name == queue_name
            ]

    def ping(self) -> bool:
        return self.available

    def stats(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        with self._lock:
            for job in self._jobs.values():
                per_queue = counts.setdefault(job.queue_name, {s.value: 0 for s in JobStatus})
                per_queue[job.status.value] += 1
        return counts


class FileJobQueue:
    """
    File-based job queue implementation.

    Uses a directory structure:
    - pending/    - Jobs waiting to be picked up
    - processing/ - Jobs currently being worked on
    - completed/  - Successfully completed jobs
    - failed/     - Failed jobs
    - keys.json   - Accepted idempotency keys with acceptance time
    """

    STATUSES = ["pending", "processing", "completed", "failed"]

    def __init__(
        self,
        queue_dir: Optional[Path] = None,
        dedupe_retention_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the file queue.

        Args:
            queue_dir: Directory for queue files. Defaults to .regulatory_truth/queue/
            dedupe_retention_seconds: How long an accepted key blocks duplicates
            clock: Wall clock, injectable for tests
        """
        self.queue_dir = Path(queue_dir or ".regulatory_truth/queue")
        self.dedupe_retention_seconds = dedupe_retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        """Create queue directories if they don't exist."""
        for subdir in self.STATUSES:
            (self.queue_dir / subdir).mkdir(parents=True, exist_ok=True)

    @property
    def _keys_file(self) -> Path:
        return self.queue_dir / "keys.json"

    def _job_path(self, job_id: str, status: str) -> Path:
        """Get the path for a job file."""
        return self.queue_dir / status / f"{job_id}.json"

    def _write_job(self, job: Job, status: str) -> None:
        """Write a job to disk."""
        path = self._job_path(job.job_id, status)
        with open(path, "w") as f:
            json.dump(job.to_dict(), f, indent=2, default=str)

    def _read_job(self, path: Path) -> Optional[Job]:
        """Read a job from disk."""
        try:
            with open(path) as f:
                return Job.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Failed to read job from {path}: {e}")
            return None

    def _move_job(self, job_id: str, from_status: str, to_status: str) -> Optional[Path]:
        """Move a job from one status directory to another."""
        from_path = self._job_path(job_id, from_status)
        to_path = self._job_path(job_id, to_status)

        if not from_path.exists():
            return None

        shutil.move(str(from_path), str(to_path))
        return to_path

    def _load_keys(self) -> dict[str, float]:
        if not self._keys_file.exists():
            return {}
        try:
            with open(self._keys_file) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read key registry {self._keys_file}: {e}")
            return {}

    def _save_keys(self, keys: dict[str, float]) -> None:
        temp_file = self._keys_file.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(keys, f)
        temp_file.replace(self._keys_file)

    def enqueue(self, queue_name: str, payload: dict[str, Any], idempotency_key: str) -> bool:
        """Add a job to the queue unless its key was accepted within the retention window."""
        now = self._clock()
        with self._lock:
            keys = {
                k: t for k, t in self._load_keys().items()
                if now - t < self.dedupe_retention_seconds
            }
            if idempotency_key in keys:
                logger.debug(f"Duplicate job {idempotency_key} ignored")
                return False

            job = Job(
                job_id=_new_job_id(now),
                queue_name=queue_name,
                payload=payload,
                idempotency_key=idempotency_key,
            )
            self._write_job(job, "pending")
            keys[idempotency_key] = now
            self._save_keys(keys)

        logger.info(f"Enqueued job {job.job_id} on '{queue_name}'")
        return True

    def dequeue(self, queue_name: str) -> Optional[Job]:
        """Get and claim the next pending job of a queue (FIFO)."""
        with self._lock:
            for path in sorted((self.queue_dir / "pending").glob("*.json")):
                job = self._read_job(path)
                if job is None or job.queue_name != queue_name:
                    continue

                job.status = JobStatus.PROCESSING
                job.started_at = datetime.now(timezone.utc)
                self._move_job(job.job_id, "pending", "processing")
                self._write_job(job, "processing")

                logger.info(f"Dequeued job {job.job_id}")
                return job
        return None

    def complete(self, job_id: str, result: Optional[dict] = None) -> None:
        """Mark a job as completed."""
        with self._lock:
            job = self._read_job(self._job_path(job_id, "processing"))
            if job is None:
                logger.warning(f"Job {job_id} not found in processing")
                return

            job.status = JobStatus.COMPLETED
            job.completed_at = datetime.now(timezone.utc)
            job.result = result

            self._move_job(job_id, "processing", "completed")
            self._write_job(job, "completed")

        logger.info(f"Completed job {job_id}")

    def fail(self, job_id: str, error: str) -> None:
        """Mark a job as failed and release its idempotency key."""
        with self._lock:
            job = self._read_job(self._job_path(job_id, "processing"))
            if job is None:
                logger.warning(f"Job {job_id} not found in processing")
                return

            job.status = JobStatus.FAILED
            job.completed_at = datetime.now(timezone.utc)
            job.error = error

            self._move_job(job_id, "processing", "failed")
            self._write_job(job, "failed")

            keys = self._load_keys()
            if keys.pop(job.idempotency_key, None) is not None:
                self._save_keys(keys)

        logger.info(f"Failed job {job_id}: {error}")

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID from any status."""
        for status in self.STATUSES:
            path = self._job_path(job_id, status)
            if path.exists():
                return self._read_job(path)
        return None

    def ping(self) -> bool:
        try:
            self._ensure_dirs()
        except OSError as e:
            logger.error(f"Queue directory {self.queue_dir} unavailable: {e}")
            return False
        return True

    def stats(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for status in self.STATUSES:
            for path in (self.queue_dir / status).glob("*.json"):
                job = self._read_job(path)
                if job is None:
                    continue
                per_queue = counts.setdefault(job.queue_name, {s: 0 for s in self.STATUSES})
                per_queue[status] += 1
        return counts
