"""
Regulatory Truth Schema Definitions using Pydantic

This module defines the rules, conflicts, precedence edges and audit rows the
resolution engine works on, plus the pipeline backlog entities scanned by the
drain scheduler.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional
from datetime import date, datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class AuthorityLevel(str, Enum):
    """Legal source category of a rule."""
    LAW = "LAW"
    GUIDANCE = "GUIDANCE"
    PROCEDURE = "PROCEDURE"
    PRACTICE = "PRACTICE"


AUTHORITY_SCORES = {
    AuthorityLevel.LAW: 1,
    AuthorityLevel.GUIDANCE: 2,
    AuthorityLevel.PROCEDURE: 3,
    AuthorityLevel.PRACTICE: 4,
}

UNKNOWN_AUTHORITY_SCORE = 999


def authority_score(level: Any) -> int:
    """Ordinal authority score, lower wins. Unknown levels rank last."""
    try:
        return AUTHORITY_SCORES[AuthorityLevel(level)]
    except ValueError:
        return UNKNOWN_AUTHORITY_SCORE


class RiskTier(str, Enum):
    """Criticality of a rule. T0 carries the highest stakes."""
    T0 = "T0"
    T1 = "T1"
    T2 = "T2"
    T3 = "T3"


class RuleStatus(str, Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    DEPRECATED = "DEPRECATED"


class ConflictType(str, Enum):
    SOURCE_CONFLICT = "SOURCE_CONFLICT"
    TEMPORAL_CONFLICT = "TEMPORAL_CONFLICT"
    SCOPE_CONFLICT = "SCOPE_CONFLICT"
    INTERPRETATION_CONFLICT = "INTERPRETATION_CONFLICT"


class ConflictStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class ResolutionStrategy(str, Enum):
    """Strategy that produced a candidate winner."""
    SPECIFICITY = "specificity"
    HIERARCHY = "hierarchy"
    TEMPORAL = "temporal"
    CONSERVATIVE = "conservative"


class ResolutionOutcome(str, Enum):
    RULE_A_PREVAILS = "RULE_A_PREVAILS"
    RULE_B_PREVAILS = "RULE_B_PREVAILS"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"


class EscalationReason(str, Enum):
    CONFLICT_BOTH_T0 = "CONFLICT_BOTH_T0"
    ARBITER_LOW_CONFIDENCE = "ARBITER_LOW_CONFIDENCE"
    CONFLICT_EQUAL_AUTHORITY = "CONFLICT_EQUAL_AUTHORITY"
    CONFLICT_UNRESOLVABLE = "CONFLICT_UNRESOLVABLE"
    SOURCE_CONFLICT = "SOURCE_CONFLICT"


class ReviewPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class AuditAction(str, Enum):
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    CONFLICT_ESCALATED = "CONFLICT_ESCALATED"
    CONFLICT_REOPENED = "CONFLICT_REOPENED"
    OVERRIDE_ADDED = "OVERRIDE_ADDED"


class DiscoveredItemStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FETCHED = "FETCHED"
    FAILED = "FAILED"


class ContentClass(str, Enum):
    HTML = "HTML"
    PDF_TEXT = "PDF_TEXT"
    PDF_SCANNED = "PDF_SCANNED"


# ============================================================================
# Rules
# ============================================================================

class SourceQuote(BaseModel):
    """Evidence excerpt backing a rule."""
    evidence_id: str
    source_name: str = ""
    hierarchy: Optional[int] = Field(default=None, ge=1, le=7)  # 1 = Constitution ... 7 = Practice
    exact_quote: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class DeprecationNote(BaseModel):
    """Structured note left on a rule deprecated by a conflict resolution."""
    conflict_id: str
    superseded_by: str
    reason: str
    previous_status: RuleStatus
    rationale: str = ""
    revision: int = 0
    deprecated_at: datetime = Field(default_factory=_utcnow)


class RegulatoryRule(BaseModel):
    """A machine-extracted regulatory rule."""
    id: str
    concept_slug: str
    title: str = ""
    value: str = ""
    value_type: str = "text"
    authority_level: AuthorityLevel = AuthorityLevel.GUIDANCE
    risk_tier: RiskTier = RiskTier.T2
    effective_from: date
    effective_until: Optional[date] = None
    status: RuleStatus = RuleStatus.DRAFT
    confidence: float = 1.0
    applies_when: str = ""
    explanation: str = ""
    sources: list[SourceQuote] = Field(default_factory=list)
    released: bool = False
    deprecation_note: Optional[DeprecationNote] = None

    @field_validator('confidence')
    @classmethod
    def confidence_in_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('confidence must be between 0 and 1')
        return v

    @property
    def authority_score(self) -> int:
        return authority_score(self.authority_level)

    @property
    def source_hierarchy(self) -> Optional[int]:
        """Highest-authority (lowest number) hierarchy among the rule's sources."""
        levels = [s.hierarchy for s in self.sources if s.hierarchy is not None]
        return min(levels) if levels else None


# ============================================================================
# Conflicts
# ============================================================================

class ResolutionRecord(BaseModel):
    """Resolution payload stored on a conflict once it leaves OPEN."""
    outcome: ResolutionOutcome
    winning_rule_id: Optional[str] = None
    losing_rule_id: Optional[str] = None
    strategy: Optional[ResolutionStrategy] = None
    rationale: str = ""
    escalation_reason: Optional[EscalationReason] = None
    resolved_by: str = "arbiter"


class Conflict(BaseModel):
    """A detected contradiction between two rules or two pieces of evidence."""
    id: str
    conflict_type: ConflictType
    item_a_id: Optional[str] = None
    item_b_id: Optional[str] = None
    status: ConflictStatus = ConflictStatus.OPEN
    resolution: Optional[ResolutionRecord] = None
    confidence: Optional[float] = None
    requires_human_review: bool = False
    human_review_reason: Optional[str] = None
    description: str = ""
    source_pointer_ids: list[str] = Field(default_factory=list)
    revision: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None


class PrecedenceEdge(BaseModel):
    """``from_rule_id`` (specific) overrides ``to_rule_id`` (general)."""
    model_config = ConfigDict(frozen=True)

    from_rule_id: str
    to_rule_id: str
    note: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class ResolutionAudit(BaseModel):
    """Immutable audit row. Rows are only ever inserted."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    conflict_id: Optional[str] = None
    revision: int = 0
    action: AuditAction
    rule_a_id: Optional[str] = None
    rule_b_id: Optional[str] = None
    outcome: Optional[ResolutionOutcome] = None
    strategy: Optional[ResolutionStrategy] = None
    reason: str = ""
    resolved_by: str = "arbiter"
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[Optional[str], int, AuditAction]:
        return (self.conflict_id, self.revision, self.action)


# ============================================================================
# Pipeline backlog
# ============================================================================

class DiscoveredItem(BaseModel):
    """A discovered source URL waiting to be fetched."""
    id: str
    url: str = ""
    status: DiscoveredItemStatus = DiscoveredItemStatus.PENDING
    retry_count: int = 0
    evidence_id: Optional[str] = None


class Evidence(BaseModel):
    """Fetched source document."""
    id: str
    url: str = ""
    content_class: ContentClass = ContentClass.HTML
    primary_text_artifact_id: Optional[str] = None
    ocr_error: Optional[str] = None
    ocr_status: str = "PENDING"


class SourcePointer(BaseModel):
    """Extracted claim locator within a piece of evidence."""
    id: str
    evidence_id: str
    domain: str
    rule_ids: list[str] = Field(default_factory=list)
