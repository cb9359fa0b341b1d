"""
Mandatory Escalation

The escalation predicate is evaluated on every candidate resolution. When it
fires the outcome becomes ESCALATE_TO_HUMAN, whatever strategy produced the
candidate winner. Escalations are handed to a human-review sink with a fixed
priority and SLA per reason.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from ..core.config import EscalationConfig
from ..schema import (
    ConflictType,
    EscalationReason,
    RegulatoryRule,
    ResolutionStrategy,
    ReviewPriority,
    RiskTier,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewPolicy:
    """Review priority and SLA attached to an escalation reason."""
    priority: ReviewPriority
    sla_hours: int


REVIEW_POLICIES = {
    EscalationReason.CONFLICT_BOTH_T0: ReviewPolicy(ReviewPriority.CRITICAL, 4),
    EscalationReason.ARBITER_LOW_CONFIDENCE: ReviewPolicy(ReviewPriority.HIGH, 24),
    EscalationReason.CONFLICT_EQUAL_AUTHORITY: ReviewPolicy(ReviewPriority.HIGH, 24),
    EscalationReason.CONFLICT_UNRESOLVABLE: ReviewPolicy(ReviewPriority.HIGH, 24),
    EscalationReason.SOURCE_CONFLICT: ReviewPolicy(ReviewPriority.HIGH, 24),
}

PRIORITY_RANK = {
    ReviewPriority.CRITICAL: 0,
    ReviewPriority.HIGH: 1,
    ReviewPriority.NORMAL: 2,
    ReviewPriority.LOW: 3,
}


@dataclass(frozen=True)
class EscalationDecision:
    """Result of the escalation predicate."""
    escalate: bool
    reason: Optional[EscalationReason] = None
    detail: str = ""

    @property
    def policy(self) -> Optional[ReviewPolicy]:
        return REVIEW_POLICIES.get(self.reason) if self.reason else None

    @property
    def priority(self) -> Optional[ReviewPriority]:
        return self.policy.priority if self.policy else None

    @property
    def sla_hours(self) -> Optional[int]:
        return self.policy.sla_hours if self.policy else None


NO_ESCALATION = EscalationDecision(escalate=False)


def evaluate_escalation(
    rule_a: RegulatoryRule,
    rule_b: RegulatoryRule,
    strategy: Optional[ResolutionStrategy],
    *,
    oracle_consulted: bool = False,
    oracle_confidence: Optional[float] = None,
    oracle_requires_review: bool = False,
    oracle_winner_valid: bool = True,
    thresholds: Optional[EscalationConfig] = None,
) -> EscalationDecision:
    """
    Decide whether a candidate resolution must go to a human.

    Reasons are checked in a fixed order so that the most severe one is
    reported when several apply:

    1. both rules are T0
    2. oracle consulted but unavailable or below the confidence floor
    3. equal authority decided by the hierarchy strategy
    4. equal effective dates decided by the temporal strategy
    5. either rule below the rule confidence floor
    6. oracle picked neither rule or asked for review itself

    Args:
        rule_a: First contesting rule
        rule_b: Second contesting rule
        strategy: Strategy that produced the candidate winner, if any
        oracle_consulted: Whether the arbitration oracle was asked
        oracle_confidence: Oracle confidence, None when the oracle was unavailable
        oracle_requires_review: Oracle flagged the conflict for review
        oracle_winner_valid: Oracle's winner is one of the two rules
        thresholds: Confidence floors (defaults when omitted)

    Returns:
        EscalationDecision
    """
    thresholds = thresholds or EscalationConfig()

    if rule_a.risk_tier == RiskTier.T0 and rule_b.risk_tier == RiskTier.T0:
        return EscalationDecision(
            True,
            EscalationReason.CONFLICT_BOTH_T0,
            "Both rules are T0 (critical); automatic resolution not permitted",
        )

    if oracle_consulted:
        if oracle_confidence is None:
            return EscalationDecision(
                True,
                EscalationReason.ARBITER_LOW_CONFIDENCE,
                "Arbitration oracle unavailable",
            )
        if oracle_confidence < thresholds.oracle_min_confidence:
            return EscalationDecision(
                True,
                EscalationReason.ARBITER_LOW_CONFIDENCE,
                f"Oracle confidence {oracle_confidence:.2f} below "
                f"{thresholds.oracle_min_confidence:.2f}",
            )

    if (
        strategy == ResolutionStrategy.HIERARCHY
        and rule_a.authority_score == rule_b.authority_score
    ):
        return EscalationDecision(
            True,
            EscalationReason.CONFLICT_EQUAL_AUTHORITY,
            f"Both rules have authority {rule_a.authority_level.value}; "
            "hierarchy cannot decide",
        )

    if (
        strategy == ResolutionStrategy.TEMPORAL
        and rule_a.effective_from == rule_b.effective_from
    ):
        return EscalationDecision(
            True,
            EscalationReason.CONFLICT_UNRESOLVABLE,
            f"Both rules take effect on {rule_a.effective_from.isoformat()}; "
            "winner chosen by rule id only",
        )

    low = [r for r in (rule_a, rule_b) if r.confidence < thresholds.rule_min_confidence]
    if low:
        return EscalationDecision(
            True,
            EscalationReason.CONFLICT_UNRESOLVABLE,
            "Rule confidence below "
            f"{thresholds.rule_min_confidence:.2f}: "
            + ", ".join(f"{r.id}={r.confidence:.2f}" for r in low),
        )

    if oracle_consulted and (oracle_requires_review or not oracle_winner_valid):
        detail = (
            "Oracle requested human review"
            if oracle_requires_review
            else "Oracle winner matches neither rule"
        )
        return EscalationDecision(True, EscalationReason.CONFLICT_UNRESOLVABLE, detail)

    return NO_ESCALATION


# ============================================================================
# Human review sink
# ============================================================================

class EscalationRequest(BaseModel):
    """Request for human review of an escalated conflict."""
    conflict_id: str
    revision: int = 0
    conflict_type: ConflictType
    rule_a_tier: Optional[RiskTier] = None
    rule_b_tier: Optional[RiskTier] = None
    confidence: Optional[float] = None
    reason: EscalationReason
    priority: ReviewPriority
    sla_hours: int
    detail: str = ""
    recommended_winner_id: Optional[str] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sla_deadline(self) -> datetime:
        return self.requested_at + timedelta(hours=self.sla_hours)

    @classmethod
    def build(
        cls,
        conflict_id: str,
        conflict_type: ConflictType,
        decision: EscalationDecision,
        *,
        revision: int = 0,
        rule_a: Optional[RegulatoryRule] = None,
        rule_b: Optional[RegulatoryRule] = None,
        confidence: Optional[float] = None,
        recommended_winner_id: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> "EscalationRequest":
        policy = decision.policy or REVIEW_POLICIES[EscalationReason.CONFLICT_UNRESOLVABLE]
        return cls(
            conflict_id=conflict_id,
            revision=revision,
            conflict_type=conflict_type,
            rule_a_tier=rule_a.risk_tier if rule_a else None,
            rule_b_tier=rule_b.risk_tier if rule_b else None,
            confidence=confidence,
            reason=decision.reason or EscalationReason.CONFLICT_UNRESOLVABLE,
            priority=policy.priority,
            sla_hours=policy.sla_hours,
            detail=decision.detail,
            recommended_winner_id=recommended_winner_id,
            requested_at=requested_at or datetime.now(timezone.utc),
        )


class ReviewSink(Protocol):
    """Anything that accepts human-review requests."""

    def request_review(self, request: EscalationRequest) -> bool:
        """Submit a request. Returns False when it was already submitted."""
        ...


class ReviewQueue:
    """In-memory review sink, idempotent per conflict revision."""

    def __init__(self):
        self._requests: dict[tuple[str, int], EscalationRequest] = {}
        self._completed: set[tuple[str, int]] = set()
        self._lock = threading.Lock()

    def request_review(self, request: EscalationRequest) -> bool:
        key = (request.conflict_id, request.revision)
        with self._lock:
            if key in self._requests:
                logger.debug(f"Review already requested for {request.conflict_id} r{request.revision}")
                return False
            self._requests[key] = request

        logger.info(
            f"Review requested for conflict {request.conflict_id}: "
            f"{request.reason.value} ({request.priority.value}, SLA {request.sla_hours}h)"
        )
        return True

    def get(self, conflict_id: str, revision: int = 0) -> Optional[EscalationRequest]:
        with self._lock:
            return self._requests.get((conflict_id, revision))

    def complete(self, conflict_id: str, revision: int = 0) -> bool:
        key = (conflict_id, revision)
        with self._lock:
            if key not in self._requests or key in self._completed:
                return False
            self._completed.add(key)
            return True

    def pending(self) -> list[EscalationRequest]:
        """Open requests, most urgent first (priority, then SLA deadline)."""
        with self._lock:
            open_requests = [
                r for k, r in self._requests.items() if k not in self._completed
            ]
        return sorted(
            open_requests,
            key=lambda r: (PRIORITY_RANK[r.priority], r.sla_deadline),
        )

    def breached(self, now: Optional[datetime] = None) -> list[EscalationRequest]:
        """Open requests whose SLA deadline has passed."""
        now = now or datetime.now(timezone.utc)
        return [r for r in self.pending() if r.sla_deadline < now]

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)


class JsonlReviewQueue(ReviewQueue):
    """
    Review queue persisted as JSON Lines

    Requests and completions are appended as events and replayed on startup,
    so open reviews survive a restart of the process that raised them.
    """

    def __init__(self, log_file: Path = Path(".regulatory_truth/reviews.jsonl")):
        super().__init__()
        self.log_file = Path(log_file)
        self._write_lock = threading.Lock()
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self._replay()

    def _replay(self) -> None:
        if not self.log_file.exists():
            return

        with open(self.log_file, 'r') as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                    if event["event"] == "requested":
                        request = EscalationRequest.model_validate(event["request"])
                        self._requests[(request.conflict_id, request.revision)] = request
                    elif event["event"] == "completed":
                        self._completed.add((event["conflict_id"], event["revision"]))
                except (json.JSONDecodeError, KeyError, TypeError, ValidationError):
                    logger.warning(f"Skipping malformed review line {line_no} in {self.log_file}")

    def _append(self, event: dict) -> None:
        with open(self.log_file, 'a') as f:
            f.write(json.dumps(event) + '\n')

    def request_review(self, request: EscalationRequest) -> bool:
        with self._write_lock:
            if not super().request_review(request):
                return False
            try:
                self._append({"event": "requested", "request": request.model_dump(mode="json")})
            except OSError:
                # Not persisted, so a re-run must be able to submit it again.
                with self._lock:
                    del self._requests[(request.conflict_id, request.revision)]
                raise
        return True

    def complete(self, conflict_id: str, revision: int = 0) -> bool:
        with self._write_lock:
            if not super().complete(conflict_id, revision):
                return False
            self._append({"event": "completed", "conflict_id": conflict_id, "revision": revision})
        return True
