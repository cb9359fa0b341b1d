"""
Arbiter worker.

Consumes ``arbiter`` jobs one at a time and runs each listed conflict through
the resolution workflow. One bad conflict never blocks the rest of a batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..core.error_handling import RegulatoryTruthError
from ..queue.dispatcher import JobDispatcher
from ..storage.gateway import StorageGateway
from .workflow import ConflictResolutionWorkflow

logger = logging.getLogger(__name__)

ARBITER_QUEUE = "arbiter"


@dataclass
class ArbiterBatchResult:
    processed: int = 0
    resolved: int = 0
    escalated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "ArbiterBatchResult") -> None:
        self.processed += other.processed
        self.resolved += other.resolved
        self.escalated += other.escalated
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)


class ArbiterWorker:
    """Runs queued or pending conflicts through the workflow, sequentially."""

    def __init__(
        self,
        workflow: ConflictResolutionWorkflow,
        dispatcher: Optional[JobDispatcher] = None,
        gateway: Optional[StorageGateway] = None,
    ):
        self.workflow = workflow
        self.dispatcher = dispatcher
        self.gateway = gateway

    def process_conflicts(self, conflict_ids: Iterable[str]) -> ArbiterBatchResult:
        results = ArbiterBatchResult()

        for conflict_id in conflict_ids:
            logger.info(f"Processing conflict: {conflict_id}")
            results.processed += 1
            try:
                outcome = self.workflow.resolve_conflict(conflict_id)
            except (RegulatoryTruthError, ValueError) as e:
                results.failed += 1
                results.errors.append(f"{conflict_id}: {e}")
                logger.error(f"Conflict {conflict_id} failed: {e}")
                continue

            if outcome.skipped:
                results.skipped += 1
            elif outcome.escalated:
                results.escalated += 1
            else:
                results.resolved += 1

        return results

    def run_queue(self, max_jobs: Optional[int] = None) -> ArbiterBatchResult:
        """Drain the arbiter queue, completing or failing each job."""
        if self.dispatcher is None:
            raise ValueError("ArbiterWorker has no dispatcher")

        totals = ArbiterBatchResult()
        handled = 0
        while max_jobs is None or handled < max_jobs:
            job = self.dispatcher.dequeue(ARBITER_QUEUE)
            if job is None:
                break
            handled += 1

            batch = self.process_conflicts(job.payload.get("conflict_ids", []))
            totals.merge(batch)

            if batch.failed:
                self.dispatcher.fail(job.job_id, "; ".join(batch.errors))
            else:
                self.dispatcher.complete(job.job_id, {
                    "resolved": batch.resolved,
                    "escalated": batch.escalated,
                    "skipped": batch.skipped,
                })

        self._log(totals)
        return totals

    def run_batch(self, limit: int = 10) -> ArbiterBatchResult:
        """Resolve up to ``limit`` OPEN conflicts straight from storage."""
        if self.gateway is None:
            raise ValueError("ArbiterWorker has no gateway")

        conflicts = self.gateway.scan_open_conflicts(limit)
        results = self.process_conflicts(c.id for c in conflicts)
        self._log(results)
        return results

    @staticmethod
    def _log(results: ArbiterBatchResult) -> None:
        logger.info(
            f"Batch complete: {results.processed} processed, {results.resolved} resolved, "
            f"{results.escalated} escalated, {results.failed} failed"
        )
