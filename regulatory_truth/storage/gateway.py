"""
Storage Gateway

Bounded backlog scans for the drain stages, rule and conflict persistence for
the resolution workflow, and an atomic compare-and-swap ``claim`` that moves an
entity from a claimable status to PROCESSING so that concurrent workers never
pick up the same item twice.
"""

import fcntl
import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from pydantic import BaseModel

from ..core.error_handling import BackendUnavailableError
from ..schema import (
    Conflict,
    ConflictStatus,
    ContentClass,
    DiscoveredItem,
    DiscoveredItemStatus,
    Evidence,
    PrecedenceEdge,
    RegulatoryRule,
    RuleStatus,
    SourcePointer,
)

logger = logging.getLogger(__name__)

# Claimable entity kinds and the status field each claim compares.
CLAIM_FIELDS = {
    "discovered_item": "status",
    "evidence": "ocr_status",
}


class StorageGateway(Protocol):
    def ping(self) -> bool: ...

    def get_rule(self, rule_id: str) -> Optional[RegulatoryRule]: ...
    def save_rule(self, rule: RegulatoryRule) -> None: ...
    def get_conflict(self, conflict_id: str) -> Optional[Conflict]: ...
    def save_conflict(self, conflict: Conflict) -> None: ...
    def list_edges(self) -> list[PrecedenceEdge]: ...
    def save_edge(self, edge: PrecedenceEdge) -> None: ...

    def scan_pending_items(self, limit: int, max_retries: int) -> list[DiscoveredItem]: ...
    def scan_pending_ocr(self, limit: int) -> list[Evidence]: ...
    def scan_fetched_evidence(self, limit: int) -> list[Evidence]: ...
    def scan_uncomposed_pointers(self, limit: int) -> list[SourcePointer]: ...
    def scan_draft_rules(self, limit: int) -> list[RegulatoryRule]: ...
    def scan_open_conflicts(self, limit: int) -> list[Conflict]: ...
    def scan_approved_rules(self, limit: int) -> list[RegulatoryRule]: ...

    def claim(
        self, kind: str, entity_id: str, claimable: Iterable[str], target: str = "PROCESSING"
    ) -> bool: ...


class InMemoryGateway:
    """
    Gateway over in-process dictionaries

    Entities are copied on the way in and out so callers never share mutable
    state with the store. All operations hold one lock.
    """

    def __init__(self):
        self.available = True
        self._lock = threading.RLock()
        self._rules: dict[str, RegulatoryRule] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._edges: dict[tuple[str, str], PrecedenceEdge] = {}
        self._items: dict[str, DiscoveredItem] = {}
        self._evidence: dict[str, Evidence] = {}
        self._pointers: dict[str, SourcePointer] = {}

    def ping(self) -> bool:
        return self.available

    def _on_change(self) -> None:
        """Hook for persistent subclasses"""

    # ------------------------------------------------------------------
    # Rules, conflicts, edges
    # ------------------------------------------------------------------

    def get_rule(self, rule_id: str) -> Optional[RegulatoryRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule else None

    def save_rule(self, rule: RegulatoryRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule.model_copy(deep=True)
            self._on_change()

    def get_conflict(self, conflict_id: str) -> Optional[Conflict]:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            return conflict.model_copy(deep=True) if conflict else None

    def save_conflict(self, conflict: Conflict) -> None:
        with self._lock:
            self._conflicts[conflict.id] = conflict.model_copy(deep=True)
            self._on_change()

    def list_edges(self) -> list[PrecedenceEdge]:
        with self._lock:
            return list(self._edges.values())

    def save_edge(self, edge: PrecedenceEdge) -> None:
        with self._lock:
            self._edges.setdefault((edge.from_rule_id, edge.to_rule_id), edge)
            self._on_change()

    # ------------------------------------------------------------------
    # Pipeline backlog
    # ------------------------------------------------------------------

    def save_discovered_item(self, item: DiscoveredItem) -> None:
        with self._lock:
            self._items[item.id] = item.model_copy(deep=True)
            self._on_change()

    def get_discovered_item(self, item_id: str) -> Optional[DiscoveredItem]:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def save_evidence(self, evidence: Evidence) -> None:
        with self._lock:
            self._evidence[evidence.id] = evidence.model_copy(deep=True)
            self._on_change()

    def get_evidence(self, evidence_id: str) -> Optional[Evidence]:
        with self._lock:
            evidence = self._evidence.get(evidence_id)
            return evidence.model_copy(deep=True) if evidence else None

    def save_source_pointer(self, pointer: SourcePointer) -> None:
        with self._lock:
            self._pointers[pointer.id] = pointer.model_copy(deep=True)
            self._on_change()

    def list_rules(self) -> list[RegulatoryRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._rules.values()]

    def list_conflicts(self) -> list[Conflict]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._conflicts.values()]

    def scan_pending_items(self, limit: int, max_retries: int = 3) -> list[DiscoveredItem]:
        with self._lock:
            found = [
                i for i in self._items.values()
                if i.status == DiscoveredItemStatus.PENDING and i.retry_count < max_retries
            ]
            return [i.model_copy(deep=True) for i in found[:limit]]

    def scan_pending_ocr(self, limit: int) -> list[Evidence]:
        with self._lock:
            found = [
                e for e in self._evidence.values()
                if e.content_class == ContentClass.PDF_SCANNED
                and e.primary_text_artifact_id is None
                and e.ocr_error is None
                and e.ocr_status == "PENDING"
            ]
            return [e.model_copy(deep=True) for e in found[:limit]]

    def scan_fetched_evidence(self, limit: int) -> list[Evidence]:
        """Evidence behind FETCHED items that has no source pointers yet."""
        with self._lock:
            pointed = {p.evidence_id for p in self._pointers.values()}
            found = []
            for item in self._items.values():
                if item.status != DiscoveredItemStatus.FETCHED or not item.evidence_id:
                    continue
                evidence = self._evidence.get(item.evidence_id)
                if evidence is None or evidence.id in pointed:
                    continue
                found.append(evidence.model_copy(deep=True))
                if len(found) >= limit:
                    break
            return found

    def scan_uncomposed_pointers(self, limit: int) -> list[SourcePointer]:
        with self._lock:
            found = [p for p in self._pointers.values() if not p.rule_ids]
            return [p.model_copy(deep=True) for p in found[:limit]]

    def scan_draft_rules(self, limit: int) -> list[RegulatoryRule]:
        with self._lock:
            found = [r for r in self._rules.values() if r.status == RuleStatus.DRAFT]
            return [r.model_copy(deep=True) for r in found[:limit]]

    def scan_open_conflicts(self, limit: int) -> list[Conflict]:
        with self._lock:
            found = [c for c in self._conflicts.values() if c.status == ConflictStatus.OPEN]
            found.sort(key=lambda c: c.created_at)
            return [c.model_copy(deep=True) for c in found[:limit]]

    def scan_approved_rules(self, limit: int) -> list[RegulatoryRule]:
        with self._lock:
            found = [
                r for r in self._rules.values()
                if r.status == RuleStatus.APPROVED and not r.released
            ]
            return [r.model_copy(deep=True) for r in found[:limit]]

    def claim(
        self,
        kind: str,
        entity_id: str,
        claimable: Iterable[str],
        target: str = "PROCESSING",
    ) -> bool:
        """
        Atomically move an entity's status from a claimable value to ``target``.

        Returns:
            True if this caller won the claim
        """
        if kind not in CLAIM_FIELDS:
            raise ValueError(f"Unknown claimable kind: {kind}")
        store = self._items if kind == "discovered_item" else self._evidence
        status_field = CLAIM_FIELDS[kind]
        allowed = {str(getattr(c, "value", c)) for c in claimable}

        with self._lock:
            entity = store.get(entity_id)
            if entity is None:
                return False
            current = getattr(entity, status_field)
            if str(getattr(current, "value", current)) not in allowed:
                return False
            store[entity_id] = type(entity).model_validate(
                {**entity.model_dump(), status_field: target}
            )
            self._on_change()
            return True


class StateFileGateway(InMemoryGateway):
    """
    In-memory gateway mirrored to a JSON snapshot

    Every mutation rewrites the snapshot through a temp file and an atomic
    rename, holding an exclusive file lock.
    """

    def __init__(self, state_file: Path = Path(".regulatory_truth/state.json")):
        super().__init__()
        self.state_file = Path(state_file)
        self._loading = True
        self._load()
        self._loading = False

    def ping(self) -> bool:
        parent = self.state_file.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"State directory {parent} unavailable: {e}")
            return False
        return self.available

    def _load(self) -> None:
        if not self.state_file.exists():
            return

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BackendUnavailableError(f"Cannot read state file {self.state_file}: {e}") from e

        for raw in data.get("rules", []):
            self.save_rule(RegulatoryRule.model_validate(raw))
        for raw in data.get("conflicts", []):
            self.save_conflict(Conflict.model_validate(raw))
        for raw in data.get("edges", []):
            self.save_edge(PrecedenceEdge.model_validate(raw))
        for raw in data.get("discovered_items", []):
            self.save_discovered_item(DiscoveredItem.model_validate(raw))
        for raw in data.get("evidence", []):
            self.save_evidence(Evidence.model_validate(raw))
        for raw in data.get("source_pointers", []):
            self.save_source_pointer(SourcePointer.model_validate(raw))

    def _snapshot(self) -> dict[str, Any]:
        def dump(models: Iterable[BaseModel]) -> list[dict[str, Any]]:
            return [m.model_dump(mode='json') for m in models]

        return {
            "rules": dump(self._rules.values()),
            "conflicts": dump(self._conflicts.values()),
            "edges": dump(self._edges.values()),
            "discovered_items": dump(self._items.values()),
            "evidence": dump(self._evidence.values()),
            "source_pointers": dump(self._pointers.values()),
        }

    def _on_change(self) -> None:
        if self._loading:
            return

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.state_file.with_suffix('.tmp')

        with open(temp_file, 'w') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(self._snapshot(), f, indent=2, default=str)
                f.flush()
                temp_file.replace(self.state_file)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
