"""
Regulatory Truth - rule conflict resolution and pipeline draining

Resolves contradictions between machine-extracted regulatory rules with a
legal-precedence algorithm and mandatory human escalation, and keeps the
seven-stage extraction pipeline drained.
"""

from .schema import (
    AuthorityLevel,
    Conflict,
    ConflictStatus,
    ConflictType,
    EscalationReason,
    RegulatoryRule,
    ResolutionOutcome,
    ResolutionStrategy,
    RiskTier,
    RuleStatus,
)
from .precedence.graph import CycleDetectedError, PrecedenceGraph
from .resolution.engine import Resolution, ResolutionEngine
from .resolution.workflow import ConflictDataError, ConflictResolutionWorkflow
from .drainer.scheduler import DrainScheduler

__version__ = "0.1.0"
