"""
Tests for the storage gateways: scans, claims and the JSON state file
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from regulatory_truth.core.error_handling import BackendUnavailableError
from regulatory_truth.schema import (
    ConflictStatus,
    ContentClass,
    DiscoveredItem,
    DiscoveredItemStatus,
    Evidence,
    PrecedenceEdge,
    RuleStatus,
    SourcePointer,
)
from regulatory_truth.storage.gateway import InMemoryGateway, StateFileGateway


class TestCopies:

    def test_returned_entities_are_copies(self, gateway, make_rule):
        gateway.save_rule(make_rule("r1"))

        rule = gateway.get_rule("r1")
        rule.status = RuleStatus.DEPRECATED

        assert gateway.get_rule("r1").status == RuleStatus.PUBLISHED

    def test_missing_entities(self, gateway):
        assert gateway.get_rule("nope") is None
        assert gateway.get_conflict("nope") is None


class TestScans:

    def test_pending_items_respect_retries_and_limit(self, gateway):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        gateway.save_discovered_item(DiscoveredItem(id="i2", retry_count=3))
        gateway.save_discovered_item(DiscoveredItem(id="i3", status=DiscoveredItemStatus.FETCHED))
        gateway.save_discovered_item(DiscoveredItem(id="i4", retry_count=2))

        assert [i.id for i in gateway.scan_pending_items(10, max_retries=3)] == ["i1", "i4"]
        assert len(gateway.scan_pending_items(1, max_retries=3)) == 1

    def test_pending_ocr(self, gateway):
        gateway.save_evidence(Evidence(id="scan", content_class=ContentClass.PDF_SCANNED))
        gateway.save_evidence(Evidence(id="done", content_class=ContentClass.PDF_SCANNED, primary_text_artifact_id="a1"))
        gateway.save_evidence(Evidence(id="error", content_class=ContentClass.PDF_SCANNED, ocr_error="bad scan"))
        gateway.save_evidence(Evidence(id="html"))

        assert [e.id for e in gateway.scan_pending_ocr(10)] == ["scan"]

    def test_fetched_evidence_without_pointers(self, gateway):
        gateway.save_evidence(Evidence(id="e1"))
        gateway.save_evidence(Evidence(id="e2"))
        gateway.save_discovered_item(DiscoveredItem(id="i1", status=DiscoveredItemStatus.FETCHED, evidence_id="e1"))
        gateway.save_discovered_item(DiscoveredItem(id="i2", status=DiscoveredItemStatus.FETCHED, evidence_id="e2"))
        gateway.save_source_pointer(SourcePointer(id="p1", evidence_id="e2", domain="vat"))

        assert [e.id for e in gateway.scan_fetched_evidence(10)] == ["e1"]

    def test_uncomposed_pointers(self, gateway):
        gateway.save_source_pointer(SourcePointer(id="p1", evidence_id="e1", domain="vat"))
        gateway.save_source_pointer(SourcePointer(id="p2", evidence_id="e1", domain="vat", rule_ids=["r1"]))

        assert [p.id for p in gateway.scan_uncomposed_pointers(10)] == ["p1"]

    def test_rule_scans(self, gateway, make_rule):
        gateway.save_rule(make_rule("draft", status=RuleStatus.DRAFT))
        gateway.save_rule(make_rule("approved", status=RuleStatus.APPROVED))
        gateway.save_rule(make_rule("released", status=RuleStatus.APPROVED, released=True))

        assert [r.id for r in gateway.scan_draft_rules(10)] == ["draft"]
        assert [r.id for r in gateway.scan_approved_rules(10)] == ["approved"]

    def test_open_conflicts_oldest_first(self, gateway, make_conflict):
        now = datetime.now(timezone.utc)
        gateway.save_conflict(make_conflict("new", created_at=now))
        gateway.save_conflict(make_conflict("old", created_at=now - timedelta(hours=1)))
        gateway.save_conflict(make_conflict("done", status=ConflictStatus.RESOLVED))

        assert [c.id for c in gateway.scan_open_conflicts(10)] == ["old", "new"]


class TestClaim:

    def test_claim_is_compare_and_swap(self, gateway):
        gateway.save_discovered_item(DiscoveredItem(id="i1"))

        assert gateway.claim("discovered_item", "i1", [DiscoveredItemStatus.PENDING]) is True
        assert gateway.claim("discovered_item", "i1", [DiscoveredItemStatus.PENDING]) is False

        item = gateway.get_discovered_item("i1")
        assert item.status == DiscoveredItemStatus.PROCESSING
        assert gateway.scan_pending_items(10) == []

    def test_claim_evidence_ocr(self, gateway):
        gateway.save_evidence(Evidence(id="e1", content_class=ContentClass.PDF_SCANNED))

        assert gateway.claim("evidence", "e1", ["PENDING"]) is True
        assert gateway.get_evidence("e1").ocr_status == "PROCESSING"
        assert gateway.scan_pending_ocr(10) == []

    def test_claim_missing_entity(self, gateway):
        assert gateway.claim("evidence", "nope", ["PENDING"]) is False

    def test_claim_unknown_kind(self, gateway):
        with pytest.raises(ValueError):
            gateway.claim("rule", "r1", ["DRAFT"])


class TestStateFileGateway:

    def test_state_survives_restart(self, tmp_path, make_rule, make_conflict):
        path = tmp_path / "state" / "state.json"
        gateway = StateFileGateway(path)
        gateway.save_rule(make_rule("r1"))
        gateway.save_conflict(make_conflict("c1", "r1", "r2"))
        gateway.save_edge(PrecedenceEdge(from_rule_id="r1", to_rule_id="r2"))
        gateway.save_discovered_item(DiscoveredItem(id="i1"))
        gateway.claim("discovered_item", "i1", ["PENDING"])

        restarted = StateFileGateway(path)

        assert restarted.get_rule("r1").concept_slug == "vat-threshold"
        assert restarted.get_conflict("c1").item_b_id == "r2"
        assert len(restarted.list_edges()) == 1
        assert restarted.get_discovered_item("i1").status == DiscoveredItemStatus.PROCESSING

    def test_snapshot_is_json(self, tmp_path, make_rule):
        path = tmp_path / "state.json"
        StateFileGateway(path).save_rule(make_rule("r1"))

        data = json.loads(path.read_text())
        assert data["rules"][0]["id"] == "r1"
        assert not path.with_suffix(".tmp").exists()

    def test_corrupt_state_is_backend_error(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{broken")

        with pytest.raises(BackendUnavailableError):
            StateFileGateway(path)

    def test_ping_creates_directory(self, tmp_path):
        gateway = StateFileGateway(tmp_path / "deep" / "state.json")
        assert gateway.ping() is True
        assert (tmp_path / "deep").is_dir()

    def test_unavailable_flag(self):
        gateway = InMemoryGateway()
        gateway.available = False
        assert gateway.ping() is False
