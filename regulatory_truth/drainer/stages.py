"""
Pipeline stages.

Each stage scans one backlog through the storage gateway and dispatches jobs
for the stage-specific workers. Job identity is the idempotency key of the ids
a job covers, so re-scanning a backlog that is already queued dispatches
nothing new. Stages return the number of jobs the queue newly accepted.
"""

import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Iterable

from ..core.config import StageConfig
from ..queue.dispatcher import JobDispatcher, idempotency_key
from ..storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

PENDING_ITEMS = "pending-items"
PENDING_OCR = "pending-ocr"
FETCHED_EVIDENCE = "fetched-evidence"
SOURCE_POINTERS = "source-pointers"
DRAFT_RULES = "draft-rules"
CONFLICTS = "conflicts"
APPROVED_RULES = "approved-rules"

STAGE_ORDER = [
    PENDING_ITEMS,
    PENDING_OCR,
    FETCHED_EVIDENCE,
    SOURCE_POINTERS,
    DRAFT_RULES,
    CONFLICTS,
    APPROVED_RULES,
]


@dataclass(frozen=True)
class Stage:
    name: str
    queue_name: str
    scan_and_dispatch: Callable[[], int]


def _run_id(prefix: str = "drain") -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


def dispatch(
    dispatcher: JobDispatcher,
    queue_name: str,
    ids: Iterable[str],
    payload: dict[str, Any],
) -> bool:
    """Enqueue one job keyed by the ids it covers. True when newly accepted."""
    key = idempotency_key(queue_name, ids)
    return dispatcher.enqueue(queue_name, payload, key)


def claim_and_dispatch(
    gateway: StorageGateway,
    dispatcher: JobDispatcher,
    kind: str,
    entity_id: str,
    queue_name: str,
    key_ids: Iterable[str],
    payload: dict[str, Any],
) -> bool:
    """
    Claim an entity (PENDING -> PROCESSING) and queue its job.

    The claim is released again when the queue rejects the job or raises, so
    the entity is picked up by a later scan instead of staying in PROCESSING
    with no job behind it.
    """
    if not gateway.claim(kind, entity_id, ["PENDING"]):
        return False

    try:
        accepted = dispatch(dispatcher, queue_name, key_ids, payload)
    except Exception:
        gateway.claim(kind, entity_id, ["PROCESSING"], target="PENDING")
        raise

    if not accepted:
        gateway.claim(kind, entity_id, ["PROCESSING"], target="PENDING")
        logger.debug(f"{queue_name} job for {kind} {entity_id} not accepted; claim released")
    return accepted


def drain_pending_items(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Claim PENDING discovered items and queue fetch jobs"""
    items = gateway.scan_pending_items(config.pending_items_batch, config.pending_items_max_retries)
    if not items:
        return 0

    run_id = _run_id()
    queued = 0
    for item in items:
        # Retry count in the key lets a retried item be fetched again.
        key_ids = [f"{item.id}#{item.retry_count}"]
        payload = {"itemId": item.id, "runId": run_id}
        if claim_and_dispatch(gateway, dispatcher, "discovered_item", item.id, "fetch", key_ids, payload):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} fetch jobs from {len(items)} pending items")
    return queued


def drain_pending_ocr(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Claim scanned PDFs without text and queue OCR jobs"""
    pending = gateway.scan_pending_ocr(config.pending_ocr_batch)
    if not pending:
        return 0

    run_id = _run_id("drain-ocr")
    queued = 0
    for evidence in pending:
        payload = {"evidenceId": evidence.id, "runId": run_id}
        if claim_and_dispatch(gateway, dispatcher, "evidence", evidence.id, "ocr", [evidence.id], payload):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} OCR jobs")
    return queued


def drain_fetched_evidence(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Queue extract jobs for fetched evidence without source pointers"""
    evidence = gateway.scan_fetched_evidence(config.fetched_evidence_scan)
    if not evidence:
        return 0

    run_id = _run_id()
    queued = 0
    for e in evidence[:config.fetched_evidence_batch]:
        if dispatch(dispatcher, "extract", [e.id], {"evidenceId": e.id, "runId": run_id}):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} extract jobs")
    return queued


def drain_source_pointers(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Queue one compose job per domain of uncomposed source pointers"""
    pointers = gateway.scan_uncomposed_pointers(config.source_pointers_batch)
    if not pointers:
        return 0

    by_domain: dict[str, list[str]] = {}
    for p in pointers:
        by_domain.setdefault(p.domain, []).append(p.id)

    run_id = _run_id()
    queued = 0
    for domain, pointer_ids in by_domain.items():
        payload = {"pointerIds": pointer_ids, "domain": domain, "runId": run_id}
        if dispatch(dispatcher, "compose", pointer_ids, payload):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} compose jobs for {len(pointers)} pointers")
    return queued


def drain_draft_rules(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Queue review jobs for DRAFT rules"""
    drafts = gateway.scan_draft_rules(config.draft_rules_batch)
    if not drafts:
        return 0

    run_id = _run_id()
    queued = 0
    for rule in drafts:
        if dispatch(dispatcher, "review", [rule.id], {"ruleId": rule.id, "runId": run_id}):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} review jobs")
    return queued


def drain_conflicts(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Queue arbiter jobs for OPEN conflicts"""
    conflicts = gateway.scan_open_conflicts(config.conflicts_batch)
    if not conflicts:
        return 0

    run_id = _run_id()
    queued = 0
    for c in conflicts:
        # Revision in the key lets a reopened conflict be dispatched again.
        key_ids = [f"{c.id}@{c.revision}"]
        if dispatch(dispatcher, "arbiter", key_ids, {"conflict_ids": [c.id], "runId": run_id}):
            queued += 1

    if queued:
        logger.info(f"Queued {queued} arbiter jobs")
    return queued


def drain_approved_rules(
    gateway: StorageGateway, dispatcher: JobDispatcher, config: StageConfig
) -> int:
    """Queue one release job for APPROVED, unreleased rules"""
    approved = gateway.scan_approved_rules(config.approved_rules_batch)
    if not approved:
        return 0

    rule_ids = [r.id for r in approved]
    if not dispatch(dispatcher, "release", rule_ids, {"ruleIds": rule_ids, "runId": _run_id()}):
        return 0

    logger.info(f"Queued release job for {len(rule_ids)} approved rules")
    return 1


STAGE_FUNCTIONS = {
    PENDING_ITEMS: ("fetch", drain_pending_items),
    PENDING_OCR: ("ocr", drain_pending_ocr),
    FETCHED_EVIDENCE: ("extract", drain_fetched_evidence),
    SOURCE_POINTERS: ("compose", drain_source_pointers),
    DRAFT_RULES: ("review", drain_draft_rules),
    CONFLICTS: ("arbiter", drain_conflicts),
    APPROVED_RULES: ("release", drain_approved_rules),
}


def build_stages(
    gateway: StorageGateway,
    dispatcher: JobDispatcher,
    config: StageConfig,
) -> list[Stage]:
    """The seven pipeline stages in execution order."""
    stages = []
    for name in STAGE_ORDER:
        queue_name, fn = STAGE_FUNCTIONS[name]
        stages.append(Stage(name, queue_name, partial(fn, gateway, dispatcher, config)))
    return stages
