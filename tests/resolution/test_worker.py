"""
Tests for the arbiter worker
"""

import pytest

from regulatory_truth.queue.dispatcher import InMemoryJobQueue, JobStatus, idempotency_key
from regulatory_truth.resolution.worker import ARBITER_QUEUE, ArbiterWorker
from regulatory_truth.schema import AuthorityLevel, ConflictStatus


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def worker(workflow, queue, gateway):
    return ArbiterWorker(workflow, queue, gateway)


def _seed_many(gateway, make_rule, make_conflict):
    gateway.save_rule(make_rule("law", AuthorityLevel.LAW))
    gateway.save_rule(make_rule("guide"))
    gateway.save_rule(make_rule("guide-2"))
    gateway.save_conflict(make_conflict("c-resolve", "law", "guide"))
    gateway.save_conflict(make_conflict("c-escalate", "guide", "guide-2"))
    gateway.save_conflict(make_conflict("c-broken", "law", "missing"))


class TestProcessConflicts:

    def test_counts_each_outcome(self, worker, gateway, make_rule, make_conflict):
        _seed_many(gateway, make_rule, make_conflict)

        results = worker.process_conflicts(["c-resolve", "c-escalate", "c-broken", "c-resolve"])

        assert results.processed == 4
        assert results.resolved == 1
        assert results.escalated == 1
        assert results.failed == 1
        assert results.skipped == 1
        assert "c-broken" in results.errors[0]

    def test_run_batch_scans_open_conflicts(self, worker, gateway, make_rule, make_conflict):
        _seed_many(gateway, make_rule, make_conflict)

        results = worker.run_batch(limit=10)

        assert results.processed == 3
        assert gateway.get_conflict("c-resolve").status == ConflictStatus.RESOLVED
        assert gateway.get_conflict("c-broken").status == ConflictStatus.OPEN


class TestRunQueue:

    def test_completes_and_fails_jobs(self, worker, queue, gateway, make_rule, make_conflict):
        _seed_many(gateway, make_rule, make_conflict)
        queue.enqueue(ARBITER_QUEUE, {"conflict_ids": ["c-resolve"]}, idempotency_key(ARBITER_QUEUE, ["c-resolve@0"]))
        queue.enqueue(ARBITER_QUEUE, {"conflict_ids": ["c-broken"]}, idempotency_key(ARBITER_QUEUE, ["c-broken@0"]))

        results = worker.run_queue()

        assert results.resolved == 1
        assert results.failed == 1
        statuses = sorted(j.status.value for j in queue.jobs(ARBITER_QUEUE))
        assert statuses == [JobStatus.COMPLETED.value, JobStatus.FAILED.value]

        # failed jobs release their key so the conflict can be dispatched again
        assert queue.enqueue(ARBITER_QUEUE, {"conflict_ids": ["c-broken"]}, idempotency_key(ARBITER_QUEUE, ["c-broken@0"]))

    def test_max_jobs(self, worker, queue):
        for i in range(3):
            queue.enqueue(ARBITER_QUEUE, {"conflict_ids": []}, f"k{i}")

        worker.run_queue(max_jobs=2)

        assert queue.stats()[ARBITER_QUEUE]["pending"] == 1

    def test_requires_dispatcher(self, workflow):
        with pytest.raises(ValueError):
            ArbiterWorker(workflow).run_queue()
