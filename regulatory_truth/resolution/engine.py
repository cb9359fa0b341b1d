"""
Resolution Engine

Decides which of two conflicting rules prevails. Strategies are tried in a
fixed order and the first strict winner is taken:

1. specificity: an explicit override edge (lex specialis)
2. hierarchy: lower authority score
3. source hierarchy: lower source document hierarchy at equal authority
4. temporal: later effective date (lex posterior); equal dates fall back to
   the smaller rule id and are always escalated

INTERPRETATION_CONFLICT goes to the arbitration oracle. SOURCE_CONFLICT is
never auto-resolved. Every candidate passes through the mandatory escalation
predicate before it becomes an outcome.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.config import EscalationConfig
from ..precedence.graph import PrecedenceGraph
from ..schema import (
    Conflict,
    ConflictType,
    EscalationReason,
    RegulatoryRule,
    ResolutionOutcome,
    ResolutionRecord,
    ResolutionStrategy,
)
from .escalation import EscalationDecision, NO_ESCALATION, evaluate_escalation
from .oracle import (
    ArbitrationOracle,
    ArbitrationRequest,
    OracleResolved,
    OracleUnavailable,
    build_claim,
)

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A deterministic winner before escalation checks."""
    winner_id: str
    loser_id: str
    strategy: ResolutionStrategy
    rationale: str
    tie_break: Optional[str] = None


@dataclass
class Resolution:
    """Outcome of resolving one conflict."""
    outcome: ResolutionOutcome
    strategy: Optional[ResolutionStrategy]
    rationale: str
    winner_id: Optional[str] = None
    loser_id: Optional[str] = None
    confidence: Optional[float] = None
    escalation: EscalationDecision = NO_ESCALATION
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def escalated(self) -> bool:
        return self.outcome == ResolutionOutcome.ESCALATE_TO_HUMAN

    @property
    def escalation_reason(self) -> Optional[EscalationReason]:
        return self.escalation.reason

    def to_record(self, resolved_by: str = "arbiter") -> ResolutionRecord:
        return ResolutionRecord(
            outcome=self.outcome,
            winning_rule_id=self.winner_id,
            losing_rule_id=self.loser_id,
            strategy=self.strategy,
            rationale=self.rationale,
            escalation_reason=self.escalation.reason,
            resolved_by=resolved_by,
        )


def compare_rules(rule_a: RegulatoryRule, rule_b: RegulatoryRule) -> dict[str, Any]:
    """Authority, source and temporal comparisons recorded with every decision."""
    return {
        "authority": {
            "rule_a": {"level": rule_a.authority_level.value, "score": rule_a.authority_score},
            "rule_b": {"level": rule_b.authority_level.value, "score": rule_b.authority_score},
            "equal": rule_a.authority_score == rule_b.authority_score,
        },
        "source_hierarchy": {
            "rule_a": rule_a.source_hierarchy,
            "rule_b": rule_b.source_hierarchy,
        },
        "temporal": {
            "rule_a": rule_a.effective_from.isoformat(),
            "rule_b": rule_b.effective_from.isoformat(),
            "equal": rule_a.effective_from == rule_b.effective_from,
        },
        "risk_tiers": [rule_a.risk_tier.value, rule_b.risk_tier.value],
        "rule_confidence": [rule_a.confidence, rule_b.confidence],
    }


class ResolutionEngine:
    """Applies the resolution strategies and the escalation predicate."""

    def __init__(
        self,
        oracle: Optional[ArbitrationOracle] = None,
        thresholds: Optional[EscalationConfig] = None,
    ):
        self.oracle = oracle
        self.thresholds = thresholds or EscalationConfig()

    @staticmethod
    def decide_deterministic(
        rule_a: RegulatoryRule,
        rule_b: RegulatoryRule,
        graph: PrecedenceGraph,
    ) -> Candidate:
        """Pure strategy cascade. Always yields a candidate for two rules."""
        a, b = rule_a, rule_b

        if graph.does_override(a.id, b.id):
            return Candidate(a.id, b.id, ResolutionStrategy.SPECIFICITY,
                             f"{a.id} overrides {b.id} (lex specialis)")
        if graph.does_override(b.id, a.id):
            return Candidate(b.id, a.id, ResolutionStrategy.SPECIFICITY,
                             f"{b.id} overrides {a.id} (lex specialis)")

        if a.authority_score != b.authority_score:
            winner, loser = (a, b) if a.authority_score < b.authority_score else (b, a)
            return Candidate(
                winner.id, loser.id, ResolutionStrategy.HIERARCHY,
                f"{winner.authority_level.value} outranks {loser.authority_level.value}",
            )

        ha, hb = a.source_hierarchy, b.source_hierarchy
        if ha is not None and hb is not None and ha != hb:
            winner, loser = (a, b) if ha < hb else (b, a)
            return Candidate(
                winner.id, loser.id, ResolutionStrategy.HIERARCHY,
                f"Equal authority; source hierarchy {min(ha, hb)} outranks {max(ha, hb)}",
                tie_break="source_hierarchy",
            )

        if a.effective_from != b.effective_from:
            winner, loser = (a, b) if a.effective_from > b.effective_from else (b, a)
            return Candidate(
                winner.id, loser.id, ResolutionStrategy.TEMPORAL,
                f"{winner.id} effective {winner.effective_from.isoformat()} is later "
                f"than {loser.effective_from.isoformat()} (lex posterior)",
            )

        winner, loser = (a, b) if a.id < b.id else (b, a)
        return Candidate(
            winner.id, loser.id, ResolutionStrategy.TEMPORAL,
            f"Equal effective date {a.effective_from.isoformat()}; "
            f"{winner.id} chosen by rule id order",
            tie_break="rule_id",
        )

    def resolve(
        self,
        conflict: Conflict,
        rule_a: Optional[RegulatoryRule],
        rule_b: Optional[RegulatoryRule],
        graph: PrecedenceGraph,
    ) -> Resolution:
        """
        Resolve a conflict between two rules.

        Args:
            conflict: The OPEN conflict
            rule_a: Rule referenced by ``item_a_id``
            rule_b: Rule referenced by ``item_b_id``
            graph: Precedence graph used for specificity

        Returns:
            Resolution with outcome, strategy and audit metadata

        Raises:
            ValueError: a rule conflict is missing one of its rules
        """
        if conflict.conflict_type == ConflictType.SOURCE_CONFLICT:
            decision = EscalationDecision(
                True,
                EscalationReason.SOURCE_CONFLICT,
                "Conflicting values in source data require human review",
            )
            return Resolution(
                outcome=ResolutionOutcome.ESCALATE_TO_HUMAN,
                strategy=None,
                rationale=decision.detail,
                escalation=decision,
                metadata={"source_pointer_ids": list(conflict.source_pointer_ids)},
            )

        if rule_a is None or rule_b is None:
            raise ValueError(f"Conflict {conflict.id} is missing one or both rules")

        candidate = self.decide_deterministic(rule_a, rule_b, graph)
        metadata = compare_rules(rule_a, rule_b)
        metadata["deterministic"] = {
            "winner_id": candidate.winner_id,
            "strategy": candidate.strategy.value,
            "tie_break": candidate.tie_break,
        }
        if candidate.tie_break:
            metadata["tie_break"] = candidate.tie_break

        if conflict.conflict_type == ConflictType.INTERPRETATION_CONFLICT:
            return self._resolve_with_oracle(conflict, rule_a, rule_b, candidate, metadata)

        decision = evaluate_escalation(
            rule_a, rule_b, candidate.strategy, thresholds=self.thresholds
        )
        return self._finish(
            rule_a,
            winner_id=candidate.winner_id,
            loser_id=candidate.loser_id,
            strategy=candidate.strategy,
            rationale=candidate.rationale,
            confidence=min(rule_a.confidence, rule_b.confidence),
            decision=decision,
            metadata=metadata,
        )

    def _resolve_with_oracle(
        self,
        conflict: Conflict,
        rule_a: RegulatoryRule,
        rule_b: RegulatoryRule,
        candidate: Candidate,
        metadata: dict[str, Any],
    ) -> Resolution:
        if self.oracle is None:
            result = OracleUnavailable(reason="no oracle configured")
        else:
            request = ArbitrationRequest(
                conflict_id=conflict.id,
                conflict_type=conflict.conflict_type,
                conflicting_items=[build_claim(rule_a), build_claim(rule_b)],
            )
            result = self.oracle.arbitrate(request)

        if isinstance(result, OracleResolved):
            verdict = result.response
            valid_ids = {rule_a.id, rule_b.id}
            winner_valid = verdict.winning_item_id in valid_ids
            metadata["oracle"] = {
                "available": True,
                "winning_item_id": verdict.winning_item_id,
                "strategy": verdict.strategy.value,
                "confidence": verdict.confidence,
                "requires_human_review": verdict.requires_human_review,
                "review_reason": verdict.review_reason,
                "rationale_hr": verdict.rationale_hr,
            }
            decision = evaluate_escalation(
                rule_a, rule_b, verdict.strategy,
                oracle_consulted=True,
                oracle_confidence=verdict.confidence,
                oracle_requires_review=verdict.requires_human_review,
                oracle_winner_valid=winner_valid,
                thresholds=self.thresholds,
            )
            if winner_valid:
                winner_id = verdict.winning_item_id
                loser_id = rule_b.id if winner_id == rule_a.id else rule_a.id
            else:
                winner_id, loser_id = candidate.winner_id, candidate.loser_id
            return self._finish(
                rule_a,
                winner_id=winner_id,
                loser_id=loser_id,
                strategy=verdict.strategy,
                rationale=verdict.rationale_en or verdict.rationale_hr,
                confidence=verdict.confidence,
                decision=decision,
                metadata=metadata,
            )

        logger.warning(f"Oracle unavailable for conflict {conflict.id}: {result.reason}")
        metadata["oracle"] = {"available": False, "reason": result.reason}
        decision = evaluate_escalation(
            rule_a, rule_b, ResolutionStrategy.CONSERVATIVE,
            oracle_consulted=True,
            oracle_confidence=None,
            thresholds=self.thresholds,
        )
        return self._finish(
            rule_a,
            winner_id=candidate.winner_id,
            loser_id=candidate.loser_id,
            strategy=ResolutionStrategy.CONSERVATIVE,
            rationale=f"Oracle unavailable ({result.reason}); deterministic recommendation: "
                      f"{candidate.rationale}",
            confidence=None,
            decision=decision,
            metadata=metadata,
        )

    @staticmethod
    def _finish(
        rule_a: RegulatoryRule,
        *,
        winner_id: str,
        loser_id: str,
        strategy: ResolutionStrategy,
        rationale: str,
        confidence: Optional[float],
        decision: EscalationDecision,
        metadata: dict[str, Any],
    ) -> Resolution:
        if decision.escalate:
            outcome = ResolutionOutcome.ESCALATE_TO_HUMAN
            metadata["escalation"] = {
                "reason": decision.reason.value,
                "detail": decision.detail,
                "priority": decision.priority.value,
                "sla_hours": decision.sla_hours,
            }
        elif winner_id == rule_a.id:
            outcome = ResolutionOutcome.RULE_A_PREVAILS
        else:
            outcome = ResolutionOutcome.RULE_B_PREVAILS

        return Resolution(
            outcome=outcome,
            strategy=strategy,
            rationale=rationale,
            winner_id=winner_id,
            loser_id=loser_id,
            confidence=confidence,
            escalation=decision,
            metadata=metadata,
        )
