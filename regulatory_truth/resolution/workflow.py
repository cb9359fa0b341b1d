"""
Conflict Resolution Workflow

Moves one conflict from OPEN to RESOLVED (winner kept, loser deprecated) or to
ESCALATED (human review requested), and back to OPEN on rollback.

Storage offers no multi-entity transactions, so every transition is a fixed
sequence of steps, each checking whether it already happened:

    resolve:   audit -> deprecate loser -> conflict RESOLVED
    escalate:  audit -> conflict ESCALATED -> review request
    reopen:    audit -> restore loser -> conflict OPEN (revision + 1)

An interrupted run can be repeated and completes the decision already written
to the audit ledger instead of computing a new one.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..core.error_handling import RegulatoryTruthError
from ..precedence.graph import CycleDetectedError, PrecedenceGraph
from ..schema import (
    AuditAction,
    Conflict,
    ConflictStatus,
    ConflictType,
    DeprecationNote,
    EscalationReason,
    PrecedenceEdge,
    RegulatoryRule,
    ResolutionAudit,
    ResolutionOutcome,
    ResolutionStrategy,
    RuleStatus,
)
from ..storage.gateway import StorageGateway
from .audit import AuditLedger
from .engine import Resolution, ResolutionEngine
from .escalation import EscalationDecision, EscalationRequest, NO_ESCALATION, ReviewSink

logger = logging.getLogger(__name__)


class ConflictDataError(RegulatoryTruthError):
    """A conflict or one of the rules it references cannot be found."""
    pass


@dataclass
class WorkflowResult:
    """What a workflow call did to one conflict."""
    conflict_id: str
    status: ConflictStatus
    outcome: Optional[ResolutionOutcome] = None
    strategy: Optional[ResolutionStrategy] = None
    winner_id: Optional[str] = None
    loser_id: Optional[str] = None
    escalation_reason: Optional[EscalationReason] = None
    revision: int = 0
    skipped: bool = False
    replayed: bool = False

    @property
    def resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED and not self.skipped

    @property
    def escalated(self) -> bool:
        return self.status == ConflictStatus.ESCALATED and not self.skipped


class ConflictResolutionWorkflow:
    """
    Orchestrates conflict resolution with global concurrency of one.

    All rule and precedence mutations go through this class so that the
    audit-then-mutate ordering holds everywhere.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        engine: ResolutionEngine,
        graph: PrecedenceGraph,
        ledger: AuditLedger,
        review_sink: ReviewSink,
        resolved_by: str = "arbiter",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.gateway = gateway
        self.engine = engine
        self.graph = graph
        self.ledger = ledger
        self.review_sink = review_sink
        self.resolved_by = resolved_by
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve_conflict(self, conflict_id: str) -> WorkflowResult:
        """
        Resolve or escalate an OPEN conflict.

        Returns:
            WorkflowResult; ``skipped`` is set when the conflict was not OPEN

        Raises:
            ConflictDataError: conflict or one of its rules is missing
        """
        with self._lock:
            conflict = self._load_conflict(conflict_id)

            if conflict.status != ConflictStatus.OPEN:
                if conflict.status == ConflictStatus.ESCALATED:
                    self._finish_pending_review(conflict)
                logger.debug(f"Conflict {conflict_id} is {conflict.status.value}, nothing to do")
                return self._skipped(conflict)

            rule_a, rule_b = self._load_rules(conflict)

            recorded = self._recorded_decision(conflict)
            if recorded is not None:
                logger.info(f"Replaying recorded decision for conflict {conflict_id} r{conflict.revision}")
                resolution = self._resolution_from_audit(recorded)
                replayed = True
            else:
                resolution = self.engine.resolve(conflict, rule_a, rule_b, self.graph)
                replayed = False

            if resolution.escalated:
                result = self._apply_escalation(conflict, rule_a, rule_b, resolution)
            else:
                result = self._apply_resolution(conflict, resolution)
            result.replayed = replayed
            return result

    def _apply_resolution(self, conflict: Conflict, resolution: Resolution) -> WorkflowResult:
        # (1) audit
        self.ledger.append(self._audit_row(conflict, AuditAction.CONFLICT_RESOLVED, resolution))

        # (2) deprecate loser
        loser = self.gateway.get_rule(resolution.loser_id)
        if loser is None:
            raise ConflictDataError(f"Losing rule {resolution.loser_id} not found")
        note = loser.deprecation_note
        already_applied = (
            loser.status == RuleStatus.DEPRECATED
            and note is not None
            and note.conflict_id == conflict.id
            and note.revision == conflict.revision
        )
        if not already_applied and loser.status != RuleStatus.DEPRECATED:
            loser.deprecation_note = DeprecationNote(
                conflict_id=conflict.id,
                superseded_by=resolution.winner_id,
                reason=f"Conflict resolution - {resolution.outcome.value}",
                previous_status=loser.status,
                rationale=resolution.rationale,
                revision=conflict.revision,
                deprecated_at=self._clock(),
            )
            loser.status = RuleStatus.DEPRECATED
            self.gateway.save_rule(loser)
            logger.info(f"Deprecated rule {loser.id}, superseded by {resolution.winner_id}")
        elif not already_applied:
            logger.warning(f"Rule {loser.id} already deprecated by another decision, leaving note intact")

        # (3) conflict
        conflict.status = ConflictStatus.RESOLVED
        conflict.resolution = resolution.to_record(self.resolved_by)
        conflict.confidence = resolution.confidence
        conflict.requires_human_review = False
        conflict.human_review_reason = None
        conflict.resolved_at = self._clock()
        self.gateway.save_conflict(conflict)

        logger.info(
            f"Resolved conflict {conflict.id}: {resolution.outcome.value} "
            f"via {resolution.strategy.value}"
        )
        return self._result(conflict, resolution)

    def _apply_escalation(
        self,
        conflict: Conflict,
        rule_a: Optional[RegulatoryRule],
        rule_b: Optional[RegulatoryRule],
        resolution: Resolution,
    ) -> WorkflowResult:
        decision = resolution.escalation

        # (1) audit
        self.ledger.append(self._audit_row(conflict, AuditAction.CONFLICT_ESCALATED, resolution))

        # (2) conflict
        conflict.status = ConflictStatus.ESCALATED
        conflict.resolution = resolution.to_record(self.resolved_by)
        conflict.confidence = resolution.confidence
        conflict.requires_human_review = True
        conflict.human_review_reason = f"{decision.reason.value}: {decision.detail}"
        conflict.resolved_at = None
        self.gateway.save_conflict(conflict)

        # (3) review request
        self.review_sink.request_review(
            EscalationRequest.build(
                conflict.id,
                conflict.conflict_type,
                decision,
                revision=conflict.revision,
                rule_a=rule_a,
                rule_b=rule_b,
                confidence=resolution.confidence,
                recommended_winner_id=resolution.winner_id,
                requested_at=self._clock(),
            )
        )

        logger.info(
            f"Escalated conflict {conflict.id}: {decision.reason.value} "
            f"({decision.priority.value}, SLA {decision.sla_hours}h)"
        )
        return self._result(conflict, resolution)

    def _finish_pending_review(self, conflict: Conflict) -> None:
        """Re-send the review request of an escalation interrupted after step (2)."""
        recorded = self.ledger.find(conflict.id, conflict.revision, AuditAction.CONFLICT_ESCALATED)
        if recorded is None:
            return
        resolution = self._resolution_from_audit(recorded)
        rule_a = self.gateway.get_rule(conflict.item_a_id) if conflict.item_a_id else None
        rule_b = self.gateway.get_rule(conflict.item_b_id) if conflict.item_b_id else None
        self.review_sink.request_review(
            EscalationRequest.build(
                conflict.id,
                conflict.conflict_type,
                resolution.escalation,
                revision=conflict.revision,
                rule_a=rule_a,
                rule_b=rule_b,
                confidence=resolution.confidence,
                recommended_winner_id=resolution.winner_id,
                requested_at=recorded.created_at,
            )
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def reopen_conflict(self, conflict_id: str, reason: str = "") -> WorkflowResult:
        """
        Compensating rollback: RESOLVED/ESCALATED -> OPEN.

        Restores the loser's previous status, clears the resolution and bumps
        the conflict revision. No-op when the conflict is already OPEN.
        """
        with self._lock:
            conflict = self._load_conflict(conflict_id)

            if conflict.status == ConflictStatus.OPEN:
                logger.debug(f"Conflict {conflict_id} already OPEN")
                return self._skipped(conflict)

            revision = conflict.revision
            previous = conflict.resolution

            # (1) audit
            self.ledger.append(ResolutionAudit(
                conflict_id=conflict.id,
                revision=revision,
                action=AuditAction.CONFLICT_REOPENED,
                rule_a_id=conflict.item_a_id,
                rule_b_id=conflict.item_b_id,
                outcome=previous.outcome if previous else None,
                strategy=previous.strategy if previous else None,
                reason=reason or f"Reopened from {conflict.status.value}",
                resolved_by=self.resolved_by,
                metadata={
                    "previous_status": conflict.status.value,
                    "previous_resolution": previous.model_dump(mode='json') if previous else None,
                },
                created_at=self._clock(),
            ))

            # (2) restore loser
            if previous is not None and previous.losing_rule_id:
                loser = self.gateway.get_rule(previous.losing_rule_id)
                note = loser.deprecation_note if loser else None
                if (
                    loser is not None
                    and loser.status == RuleStatus.DEPRECATED
                    and note is not None
                    and note.conflict_id == conflict.id
                    and note.revision == revision
                ):
                    loser.status = note.previous_status
                    loser.deprecation_note = None
                    self.gateway.save_rule(loser)
                    logger.info(f"Restored rule {loser.id} to {loser.status.value}")

            # (3) conflict
            conflict.status = ConflictStatus.OPEN
            conflict.resolution = None
            conflict.confidence = None
            conflict.requires_human_review = False
            conflict.human_review_reason = None
            conflict.resolved_at = None
            conflict.revision = revision + 1
            self.gateway.save_conflict(conflict)

            logger.info(f"Reopened conflict {conflict_id} (revision {conflict.revision})")
            return WorkflowResult(
                conflict_id=conflict.id,
                status=conflict.status,
                outcome=previous.outcome if previous else None,
                winner_id=previous.winning_rule_id if previous else None,
                loser_id=previous.losing_rule_id if previous else None,
                revision=conflict.revision,
            )

    # ------------------------------------------------------------------
    # Precedence
    # ------------------------------------------------------------------

    def record_override(self, from_rule_id: str, to_rule_id: str, note: str = "") -> PrecedenceEdge:
        """
        Add an override edge, persist it and audit it.

        Raises:
            CycleDetectedError: the edge would create a cycle
        """
        with self._lock:
            if (from_rule_id, to_rule_id) in self.graph:
                return self.graph.add_override(from_rule_id, to_rule_id, note)

            try:
                edge = self.graph.add_override(from_rule_id, to_rule_id, note)
            except CycleDetectedError:
                logger.error(f"Override {from_rule_id} -> {to_rule_id} rejected: cycle")
                raise

            self.gateway.save_edge(edge)
            self.ledger.append(ResolutionAudit(
                action=AuditAction.OVERRIDE_ADDED,
                rule_a_id=from_rule_id,
                rule_b_id=to_rule_id,
                reason=note,
                resolved_by=self.resolved_by,
                metadata={"from_rule_id": from_rule_id, "to_rule_id": to_rule_id},
                created_at=self._clock(),
            ))
            return edge

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_conflict(self, conflict_id: str) -> Conflict:
        conflict = self.gateway.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictDataError(f"Conflict not found: {conflict_id}")
        return conflict

    def _load_rules(
        self, conflict: Conflict
    ) -> tuple[Optional[RegulatoryRule], Optional[RegulatoryRule]]:
        if conflict.conflict_type == ConflictType.SOURCE_CONFLICT:
            return None, None

        rule_a = self.gateway.get_rule(conflict.item_a_id) if conflict.item_a_id else None
        rule_b = self.gateway.get_rule(conflict.item_b_id) if conflict.item_b_id else None
        if rule_a is None or rule_b is None:
            raise ConflictDataError(
                f"One or both conflicting rules not found for conflict: {conflict.id}"
            )
        return rule_a, rule_b

    def _recorded_decision(self, conflict: Conflict) -> Optional[ResolutionAudit]:
        for action in (AuditAction.CONFLICT_RESOLVED, AuditAction.CONFLICT_ESCALATED):
            recorded = self.ledger.find(conflict.id, conflict.revision, action)
            if recorded is not None:
                return recorded
        return None

    def _audit_row(
        self, conflict: Conflict, action: AuditAction, resolution: Resolution
    ) -> ResolutionAudit:
        decision = resolution.escalation
        metadata: dict[str, Any] = dict(resolution.metadata)
        metadata["decision"] = {
            "winner_id": resolution.winner_id,
            "loser_id": resolution.loser_id,
            "confidence": resolution.confidence,
            "escalation_reason": decision.reason.value if decision.reason else None,
            "escalation_detail": decision.detail,
        }
        return ResolutionAudit(
            conflict_id=conflict.id,
            revision=conflict.revision,
            action=action,
            rule_a_id=conflict.item_a_id,
            rule_b_id=conflict.item_b_id,
            outcome=resolution.outcome,
            strategy=resolution.strategy,
            reason=resolution.rationale,
            resolved_by=self.resolved_by,
            metadata=metadata,
            created_at=self._clock(),
        )

    @staticmethod
    def _resolution_from_audit(row: ResolutionAudit) -> Resolution:
        decision_data = row.metadata.get("decision", {})
        reason = decision_data.get("escalation_reason")
        decision = (
            EscalationDecision(True, EscalationReason(reason), decision_data.get("escalation_detail", ""))
            if reason
            else NO_ESCALATION
        )
        return Resolution(
            outcome=row.outcome,
            strategy=row.strategy,
            rationale=row.reason,
            winner_id=decision_data.get("winner_id"),
            loser_id=decision_data.get("loser_id"),
            confidence=decision_data.get("confidence"),
            escalation=decision,
            metadata=dict(row.metadata),
        )

    @staticmethod
    def _result(conflict: Conflict, resolution: Resolution) -> WorkflowResult:
        return WorkflowResult(
            conflict_id=conflict.id,
            status=conflict.status,
            outcome=resolution.outcome,
            strategy=resolution.strategy,
            winner_id=resolution.winner_id,
            loser_id=resolution.loser_id,
            escalation_reason=resolution.escalation.reason,
            revision=conflict.revision,
        )

    @staticmethod
    def _skipped(conflict: Conflict) -> WorkflowResult:
        record = conflict.resolution
        return WorkflowResult(
            conflict_id=conflict.id,
            status=conflict.status,
            outcome=record.outcome if record else None,
            strategy=record.strategy if record else None,
            winner_id=record.winning_rule_id if record else None,
            loser_id=record.losing_rule_id if record else None,
            escalation_reason=record.escalation_reason if record else None,
            revision=conflict.revision,
            skipped=True,
        )
