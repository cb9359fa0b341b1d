"""
Resolution Audit Ledger

Append-only record of every resolution, escalation, rollback and override.
Rows are never updated; a rollback writes a compensating CONFLICT_REOPENED row.

Conflict-scoped rows are keyed by (conflict id, revision, action). Appending a
row whose key already exists returns the stored row instead of writing a
second one, which is what lets an interrupted workflow re-run to completion.
"""

from typing import Any, Dict, List, Optional, Protocol
from pathlib import Path
import json
import logging
import threading

from pydantic import ValidationError

from ..schema import AuditAction, ResolutionAudit

logger = logging.getLogger(__name__)


class AuditLedger(Protocol):
    def append(self, entry: ResolutionAudit) -> ResolutionAudit: ...

    def find(
        self, conflict_id: str, revision: int, action: AuditAction
    ) -> Optional[ResolutionAudit]: ...

    def query(
        self,
        conflict_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: Optional[int] = None,
    ) -> List[ResolutionAudit]: ...


def _is_keyed(entry: ResolutionAudit) -> bool:
    return entry.conflict_id is not None and entry.action != AuditAction.OVERRIDE_ADDED


def _matches(
    entry: ResolutionAudit,
    conflict_id: Optional[str],
    action: Optional[AuditAction],
) -> bool:
    if conflict_id and entry.conflict_id != conflict_id:
        return False
    if action and entry.action != action:
        return False
    return True


def _stats(entries: List[ResolutionAudit]) -> Dict[str, Any]:
    actions: Dict[str, int] = {}
    outcomes: Dict[str, int] = {}
    for entry in entries:
        actions[entry.action.value] = actions.get(entry.action.value, 0) + 1
        if entry.outcome:
            outcomes[entry.outcome.value] = outcomes.get(entry.outcome.value, 0) + 1
    return {
        "total_entries": len(entries),
        "actions": actions,
        "outcomes": outcomes,
    }


class InMemoryAuditLedger:
    """Audit ledger held in process memory."""

    def __init__(self):
        self._entries: List[ResolutionAudit] = []
        self._index: Dict[tuple, ResolutionAudit] = {}
        self._lock = threading.Lock()

    def append(self, entry: ResolutionAudit) -> ResolutionAudit:
        with self._lock:
            if _is_keyed(entry):
                existing = self._index.get(entry.key)
                if existing is not None:
                    return existing
                self._index[entry.key] = entry
            self._entries.append(entry)
        return entry

    def find(
        self, conflict_id: str, revision: int, action: AuditAction
    ) -> Optional[ResolutionAudit]:
        with self._lock:
            return self._index.get((conflict_id, revision, action))

    def query(
        self,
        conflict_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: Optional[int] = None,
    ) -> List[ResolutionAudit]:
        with self._lock:
            entries = [e for e in self._entries if _matches(e, conflict_id, action)]
        return entries[:limit] if limit else entries

    def get_recent(self, count: int = 10) -> List[ResolutionAudit]:
        with self._lock:
            return list(reversed(self._entries[-count:]))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return _stats(list(self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class JsonlAuditLedger:
    """
    Audit ledger persisted as JSON Lines

    Thread-safe for concurrent appends. The key index is rebuilt from the
    file on startup.
    """

    def __init__(self, log_file: Path = Path(".regulatory_truth/audit.jsonl")):
        """
        Initialize audit ledger

        Args:
            log_file: Path to audit log file
        """
        self.log_file = Path(log_file)
        self._lock = threading.Lock()
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self._index: Dict[tuple, ResolutionAudit] = {
            e.key: e for e in self._read_all() if _is_keyed(e)
        }

    def _read_all(self) -> List[ResolutionAudit]:
        if not self.log_file.exists():
            return []

        entries = []
        with open(self.log_file, 'r') as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entries.append(ResolutionAudit.model_validate_json(line))
                except ValidationError:
                    logger.warning(f"Skipping malformed audit line {line_no} in {self.log_file}")
        return entries

    def append(self, entry: ResolutionAudit) -> ResolutionAudit:
        """
        Write audit entry to log file

        Returns:
            The entry written, or the already stored entry with the same key
        """
        with self._lock:
            if _is_keyed(entry):
                existing = self._index.get(entry.key)
                if existing is not None:
                    return existing
            with open(self.log_file, 'a') as f:
                f.write(entry.model_dump_json() + '\n')
            if _is_keyed(entry):
                self._index[entry.key] = entry
        return entry

    def find(
        self, conflict_id: str, revision: int, action: AuditAction
    ) -> Optional[ResolutionAudit]:
        with self._lock:
            return self._index.get((conflict_id, revision, action))

    def query(
        self,
        conflict_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: Optional[int] = None,
    ) -> List[ResolutionAudit]:
        """
        Query audit entries

        Args:
            conflict_id: Filter by conflict
            action: Filter by action
            limit: Maximum number of entries to return

        Returns:
            Matching entries in insertion order
        """
        with self._lock:
            entries = [e for e in self._read_all() if _matches(e, conflict_id, action)]
        return entries[:limit] if limit else entries

    def get_recent(self, count: int = 10) -> List[ResolutionAudit]:
        """Most recent entries, newest first"""
        with self._lock:
            entries = self._read_all()
        return list(reversed(entries[-count:]))

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return _stats(self._read_all())
