"""
Shared fixtures for regulatory truth tests
"""

from datetime import date

import pytest

from regulatory_truth.precedence.graph import PrecedenceGraph
from regulatory_truth.resolution.audit import InMemoryAuditLedger
from regulatory_truth.resolution.engine import ResolutionEngine
from regulatory_truth.resolution.escalation import ReviewQueue
from regulatory_truth.resolution.oracle import StaticOracle
from regulatory_truth.resolution.workflow import ConflictResolutionWorkflow
from regulatory_truth.schema import (
    AuthorityLevel,
    Conflict,
    ConflictType,
    RegulatoryRule,
    RiskTier,
    RuleStatus,
)
from regulatory_truth.storage.gateway import InMemoryGateway


class FakeClock:
    """Manually advanced monotonic clock; ``sleep`` advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_rule():
    """Factory for rules with sensible defaults."""
    def _make(
        rule_id: str,
        authority: AuthorityLevel = AuthorityLevel.GUIDANCE,
        effective_from: date = date(2025, 1, 1),
        risk_tier: RiskTier = RiskTier.T2,
        confidence: float = 0.95,
        status: RuleStatus = RuleStatus.PUBLISHED,
        **kwargs,
    ) -> RegulatoryRule:
        return RegulatoryRule(
            id=rule_id,
            concept_slug=kwargs.pop("concept_slug", "vat-threshold"),
            value=kwargs.pop("value", "40000"),
            value_type=kwargs.pop("value_type", "currency"),
            authority_level=authority,
            effective_from=effective_from,
            risk_tier=risk_tier,
            confidence=confidence,
            status=status,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_conflict():
    def _make(
        conflict_id: str = "c1",
        item_a_id: str = "rule-a",
        item_b_id: str = "rule-b",
        conflict_type: ConflictType = ConflictType.SCOPE_CONFLICT,
        **kwargs,
    ) -> Conflict:
        return Conflict(
            id=conflict_id,
            conflict_type=conflict_type,
            item_a_id=item_a_id,
            item_b_id=item_b_id,
            **kwargs,
        )
    return _make


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def ledger():
    return InMemoryAuditLedger()


@pytest.fixture
def reviews():
    return ReviewQueue()


@pytest.fixture
def graph():
    return PrecedenceGraph()


@pytest.fixture
def oracle():
    return StaticOracle()


@pytest.fixture
def workflow(gateway, ledger, reviews, graph, oracle):
    return ConflictResolutionWorkflow(
        gateway=gateway,
        engine=ResolutionEngine(oracle),
        graph=graph,
        ledger=ledger,
        review_sink=reviews,
    )


@pytest.fixture
def seed(gateway, make_rule, make_conflict):
    """Store two rules and a conflict between them; returns the conflict id."""
    def _seed(rule_a=None, rule_b=None, **conflict_kwargs):
        rule_a = rule_a or make_rule("rule-a")
        rule_b = rule_b or make_rule("rule-b")
        gateway.save_rule(rule_a)
        gateway.save_rule(rule_b)
        conflict = make_conflict(
            item_a_id=rule_a.id, item_b_id=rule_b.id, **conflict_kwargs
        )
        gateway.save_conflict(conflict)
        return conflict.id
    return _seed
