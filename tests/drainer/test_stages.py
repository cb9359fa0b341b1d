"""
Tests for the seven pipeline stages
"""

from unittest.mock import MagicMock

import pytest

from regulatory_truth.core.config import StageConfig
from regulatory_truth.drainer.stages import (
    STAGE_ORDER,
    build_stages,
    drain_approved_rules,
    drain_conflicts,
    drain_draft_rules,
    drain_fetched_evidence,
    drain_pending_items,
    drain_pending_ocr,
    drain_source_pointers,
)
from regulatory_truth.queue.dispatcher import InMemoryJobQueue
from regulatory_truth.schema import (
    ContentClass,
    DiscoveredItem,
    DiscoveredItemStatus,
    Evidence,
    RuleStatus,
    SourcePointer,
)


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def config():
    return StageConfig()


def _payloads(queue, name):
    return [j.payload for j in queue.jobs(name)]


class TestPendingItems:

    def test_claims_and_queues_fetch_jobs(self, gateway, queue, config):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        gateway.save_discovered_item(DiscoveredItem(id="i2"))

        assert drain_pending_items(gateway, queue, config) == 2

        assert sorted(p["itemId"] for p in _payloads(queue, "fetch")) == ["i1", "i2"]
        assert gateway.get_discovered_item("i1").status == DiscoveredItemStatus.PROCESSING

    def test_claimed_items_are_not_picked_again(self, gateway, queue, config):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        drain_pending_items(gateway, queue, config)

        assert drain_pending_items(gateway, queue, config) == 0
        assert len(queue.jobs("fetch")) == 1

    def test_lost_claim_is_skipped(self, gateway, queue, config, monkeypatch):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        monkeypatch.setattr(gateway, "claim", lambda *args, **kwargs: False)

        assert drain_pending_items(gateway, queue, config) == 0
        assert queue.jobs("fetch") == []

    def test_queue_error_releases_claim(self, gateway, queue, config):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        broken = MagicMock()
        broken.enqueue.side_effect = ConnectionError("queue down")

        with pytest.raises(ConnectionError):
            drain_pending_items(gateway, broken, config)

        assert gateway.get_discovered_item("i1").status == DiscoveredItemStatus.PENDING
        assert drain_pending_items(gateway, queue, config) == 1

    def test_rejected_job_releases_claim(self, gateway, config):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        rejecting = MagicMock()
        rejecting.enqueue.return_value = False

        assert drain_pending_items(gateway, rejecting, config) == 0
        assert gateway.get_discovered_item("i1").status == DiscoveredItemStatus.PENDING

    def test_retried_item_is_queued_again(self, gateway, queue, config):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        drain_pending_items(gateway, queue, config)

        # the fetch worker gave up on this attempt and handed the item back
        gateway.save_discovered_item(DiscoveredItem(id="i1", retry_count=1))

        assert drain_pending_items(gateway, queue, config) == 1
        assert len(queue.jobs("fetch")) == 2
        assert gateway.get_discovered_item("i1").status == DiscoveredItemStatus.PROCESSING

    def test_batch_size(self, gateway, queue):
        for i in range(5):
            gateway.save_discovered_item(DiscoveredItem(id=f"i{i}"))

        assert drain_pending_items(gateway, queue, StageConfig(pending_items_batch=3)) == 3


class TestPendingOcr:

    def test_queues_ocr_for_scanned_pdfs(self, gateway, queue, config):
        gateway.save_evidence(Evidence(id="e1", content_class=ContentClass.PDF_SCANNED))
        gateway.save_evidence(Evidence(id="e2"))

        assert drain_pending_ocr(gateway, queue, config) == 1
        assert _payloads(queue, "ocr")[0]["evidenceId"] == "e1"
        assert gateway.get_evidence("e1").ocr_status == "PROCESSING"

    def test_queue_error_releases_claim(self, gateway, config):
        gateway.save_evidence(Evidence(id="e1", content_class=ContentClass.PDF_SCANNED))
        broken = MagicMock()
        broken.enqueue.side_effect = ConnectionError("queue down")

        with pytest.raises(ConnectionError):
            drain_pending_ocr(gateway, broken, config)

        assert gateway.get_evidence("e1").ocr_status == "PENDING"


class TestFetchedEvidence:

    def test_rescan_of_queued_backlog_is_idle(self, gateway, queue, config):
        gateway.save_evidence(Evidence(id="e1"))
        gateway.save_discovered_item(DiscoveredItem(id="i1", status=DiscoveredItemStatus.FETCHED, evidence_id="e1"))

        assert drain_fetched_evidence(gateway, queue, config) == 1
        assert drain_fetched_evidence(gateway, queue, config) == 0
        assert len(queue.jobs("extract")) == 1

    def test_dispatch_is_capped(self, gateway, queue):
        for i in range(6):
            gateway.save_evidence(Evidence(id=f"e{i}"))
            gateway.save_discovered_item(
                DiscoveredItem(id=f"i{i}", status=DiscoveredItemStatus.FETCHED, evidence_id=f"e{i}")
            )

        config = StageConfig(fetched_evidence_scan=5, fetched_evidence_batch=2)
        assert drain_fetched_evidence(gateway, queue, config) == 2


class TestSourcePointers:

    def test_one_compose_job_per_domain(self, gateway, queue, config):
        gateway.save_source_pointer(SourcePointer(id="p1", evidence_id="e1", domain="vat"))
        gateway.save_source_pointer(SourcePointer(id="p2", evidence_id="e1", domain="vat"))
        gateway.save_source_pointer(SourcePointer(id="p3", evidence_id="e2", domain="payroll"))

        assert drain_source_pointers(gateway, queue, config) == 2

        by_domain = {p["domain"]: p["pointerIds"] for p in _payloads(queue, "compose")}
        assert by_domain == {"vat": ["p1", "p2"], "payroll": ["p3"]}


class TestRulesAndConflicts:

    def test_review_jobs_for_drafts(self, gateway, queue, config, make_rule):
        gateway.save_rule(make_rule("d1", status=RuleStatus.DRAFT))
        gateway.save_rule(make_rule("p1"))

        assert drain_draft_rules(gateway, queue, config) == 1
        assert _payloads(queue, "review")[0]["ruleId"] == "d1"

    def test_arbiter_jobs_for_open_conflicts(self, gateway, queue, config, make_conflict):
        gateway.save_conflict(make_conflict("c1"))

        assert drain_conflicts(gateway, queue, config) == 1
        assert drain_conflicts(gateway, queue, config) == 0
        assert _payloads(queue, "arbiter")[0]["conflict_ids"] == ["c1"]

    def test_reopened_conflict_is_dispatched_again(self, gateway, queue, config, make_conflict):
        gateway.save_conflict(make_conflict("c1"))
        drain_conflicts(gateway, queue, config)

        gateway.save_conflict(make_conflict("c1", revision=1))

        assert drain_conflicts(gateway, queue, config) == 1

    def test_single_release_job(self, gateway, queue, config, make_rule):
        gateway.save_rule(make_rule("a1", status=RuleStatus.APPROVED))
        gateway.save_rule(make_rule("a2", status=RuleStatus.APPROVED))

        assert drain_approved_rules(gateway, queue, config) == 1
        assert drain_approved_rules(gateway, queue, config) == 0
        assert sorted(_payloads(queue, "release")[0]["ruleIds"]) == ["a1", "a2"]

    def test_empty_backlogs_are_idle(self, gateway, queue, config):
        for stage in build_stages(gateway, queue, config):
            assert stage.scan_and_dispatch() == 0


class TestBuildStages:

    def test_fixed_order_and_queues(self, gateway, queue, config):
        stages = build_stages(gateway, queue, config)

        assert [s.name for s in stages] == STAGE_ORDER
        assert [s.queue_name for s in stages] == [
            "fetch", "ocr", "extract", "compose", "review", "arbiter", "release",
        ]
