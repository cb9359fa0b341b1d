"""
Regulatory Truth CLI

Usage:
    python -m regulatory_truth drain            # run the drain loop until SIGINT/SIGTERM
    python -m regulatory_truth drain --once     # one drain cycle
    python -m regulatory_truth arbitrate --limit 10
    python -m regulatory_truth reopen <conflict-id> --reason "wrong source"
    python -m regulatory_truth override <specific-rule> <general-rule> --note "..."
    python -m regulatory_truth status
"""

import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.config import ConfigManager, RegulatoryTruthConfig
from .core.error_handling import BackendUnavailableError, RegulatoryTruthError
from .core.logging_setup import configure_logging
from .drainer.heartbeat import JsonHeartbeatStore
from .drainer.scheduler import DrainScheduler
from .precedence.graph import CycleDetectedError, PrecedenceGraph
from .queue.dispatcher import FileJobQueue
from .resolution.audit import JsonlAuditLedger
from .resolution.engine import ResolutionEngine
from .resolution.escalation import JsonlReviewQueue
from .resolution.oracle import (
    ArbitrationOracle,
    HttpArbitrationOracle,
    OracleRateLimiter,
    RateLimitedOracle,
    StaticOracle,
)
from .resolution.worker import ArbiterWorker
from .resolution.workflow import ConflictResolutionWorkflow
from .schema import ConflictStatus
from .storage.gateway import StateFileGateway

logger = logging.getLogger(__name__)

console = Console()


@dataclass
class Runtime:
    """Wired components for one CLI invocation."""
    config: RegulatoryTruthConfig
    gateway: StateFileGateway
    dispatcher: FileJobQueue
    ledger: JsonlAuditLedger
    heartbeat: JsonHeartbeatStore
    reviews: JsonlReviewQueue
    workflow: ConflictResolutionWorkflow
    manager: Optional[ConfigManager] = None


def build_oracle(config: RegulatoryTruthConfig) -> ArbitrationOracle:
    if config.oracle.endpoint:
        oracle: ArbitrationOracle = HttpArbitrationOracle.from_config(config.oracle)
    else:
        logger.warning("No oracle endpoint configured; interpretation conflicts will escalate")
        oracle = StaticOracle()
    return RateLimitedOracle(oracle, OracleRateLimiter.from_config(config.oracle))


def build_runtime(config: RegulatoryTruthConfig, manager: Optional[ConfigManager] = None) -> Runtime:
    gateway = StateFileGateway(Path(config.storage.state_file))
    dispatcher = FileJobQueue(
        Path(config.queue.queue_dir),
        dedupe_retention_seconds=config.queue.dedupe_retention_seconds,
    )
    ledger = JsonlAuditLedger(Path(config.storage.audit_file))
    heartbeat = JsonHeartbeatStore(Path(config.storage.heartbeat_file))
    graph = PrecedenceGraph.from_edges(gateway.list_edges(), max_depth=config.precedence.max_depth)
    reviews = JsonlReviewQueue(Path(config.storage.reviews_file))
    workflow = ConflictResolutionWorkflow(
        gateway=gateway,
        engine=ResolutionEngine(build_oracle(config), config.escalation),
        graph=graph,
        ledger=ledger,
        review_sink=reviews,
    )
    return Runtime(config, gateway, dispatcher, ledger, heartbeat, reviews, workflow, manager)


# ============================================================================
# Commands
# ============================================================================

def reload_config(runtime: Runtime, scheduler: DrainScheduler) -> bool:
    """
    Re-read the config file and apply logging and drainer settings.

    Storage paths and the oracle are fixed for the life of the process.
    """
    errors = runtime.manager.reload()
    if errors:
        return False

    runtime.config = runtime.manager.config
    configure_logging(runtime.config.logging)
    scheduler.reconfigure(runtime.config)
    return True


def cmd_drain(runtime: Runtime, args: argparse.Namespace) -> int:
    scheduler = DrainScheduler.from_config(
        runtime.gateway, runtime.dispatcher, runtime.config, heartbeat=runtime.heartbeat
    )

    try:
        scheduler.preflight()
    except BackendUnavailableError as e:
        logger.error(f"Startup failed: {e}")
        console.print(f"[red]Error: {e}[/red]")
        return 1

    if args.once:
        active = scheduler.run_cycle()
        console.print(f"Cycle {'active' if active else 'idle'}; next delay {scheduler.backoff.current_ms}ms")
        return 0

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        scheduler.stop()

    def handle_reload(signum, frame):
        reload_config(runtime, scheduler)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    if runtime.manager is not None:
        signal.signal(signal.SIGHUP, handle_reload)

    scheduler.run_forever(max_cycles=args.max_cycles)
    return 0


def cmd_arbitrate(runtime: Runtime, args: argparse.Namespace) -> int:
    worker = ArbiterWorker(runtime.workflow, runtime.dispatcher, runtime.gateway)
    results = worker.run_queue(args.limit) if args.from_queue else worker.run_batch(args.limit)

    console.print(
        f"[bold]Processed {results.processed}[/bold]: "
        f"[green]{results.resolved} resolved[/green], "
        f"[yellow]{results.escalated} escalated[/yellow], "
        f"[red]{results.failed} failed[/red]"
    )
    for error in results.errors:
        console.print(f"  [red]{error}[/red]")
    for request in runtime.reviews.pending():
        console.print(
            f"  Review {request.conflict_id}: {request.reason.value} "
            f"({request.priority.value}, due {request.sla_deadline.isoformat()})"
        )
    return 1 if results.failed else 0


def cmd_reopen(runtime: Runtime, args: argparse.Namespace) -> int:
    result = runtime.workflow.reopen_conflict(args.conflict_id, reason=args.reason or "")
    if result.skipped:
        console.print(f"[yellow]Conflict {args.conflict_id} is already OPEN[/yellow]")
    else:
        console.print(f"[green]Conflict {args.conflict_id} reopened (revision {result.revision})[/green]")
    return 0


def cmd_override(runtime: Runtime, args: argparse.Namespace) -> int:
    try:
        runtime.workflow.record_override(args.from_rule, args.to_rule, args.note or "")
    except CycleDetectedError as e:
        console.print(f"[red]Rejected: {e}[/red]")
        return 1
    console.print(f"[green]{args.from_rule} now overrides {args.to_rule}[/green]")
    return 0


def cmd_status(runtime: Runtime, args: argparse.Namespace) -> int:
    latest = runtime.heartbeat.latest()
    drainer = latest.pop("drainer", None)

    table = Table(title="Pipeline stages")
    table.add_column("Stage")
    table.add_column("Items", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Last activity")
    table.add_column("Last error")
    for stage, hb in latest.items():
        error = hb.get("last_error")
        table.add_row(
            stage,
            str(hb.get("items_processed", 0)),
            str(hb.get("avg_duration_ms", 0)),
            hb.get("last_activity", ""),
            f"[red]{error}[/red]" if error else "",
        )
    console.print(table)

    if drainer:
        console.print(
            f"Drainer: {drainer['status']} | cycles {drainer['cycle_count']} | "
            f"backoff {drainer['backoff_delay_ms']}ms | last activity {drainer['last_activity']}"
        )

    queues = Table(title="Queues")
    queues.add_column("Queue")
    for status in FileJobQueue.STATUSES:
        queues.add_column(status.capitalize(), justify="right")
    for name, counts in sorted(runtime.dispatcher.stats().items()):
        queues.add_row(name, *(str(counts[s]) for s in FileJobQueue.STATUSES))
    console.print(queues)

    conflicts = runtime.gateway.list_conflicts()
    by_status = {s: sum(1 for c in conflicts if c.status == s) for s in ConflictStatus}
    console.print(
        "Conflicts: " + ", ".join(f"{s.value} {n}" for s, n in by_status.items())
    )
    console.print(f"Audit: {runtime.ledger.get_stats()['total_entries']} entries")
    console.print(f"Reviews: {len(runtime.reviews.pending())} open")
    return 0


# ============================================================================
# Entry point
# ============================================================================

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="regulatory-truth",
        description="Regulatory rule conflict resolution and pipeline draining",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: regulatory_truth.yaml)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    drain = subparsers.add_parser("drain", help="Run the pipeline drain loop")
    drain.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    drain.add_argument("--max-cycles", type=int, default=None, help="Stop after N cycles")
    drain.set_defaults(handler=cmd_drain)

    arbitrate = subparsers.add_parser("arbitrate", help="Resolve OPEN conflicts")
    arbitrate.add_argument("--limit", type=int, default=10, help="Max conflicts (or jobs)")
    arbitrate.add_argument(
        "--from-queue",
        action="store_true",
        help="Consume 'arbiter' jobs instead of scanning storage"
    )
    arbitrate.set_defaults(handler=cmd_arbitrate)

    reopen = subparsers.add_parser("reopen", help="Roll back a resolved or escalated conflict")
    reopen.add_argument("conflict_id")
    reopen.add_argument("--reason", default="", help="Reason recorded in the audit ledger")
    reopen.set_defaults(handler=cmd_reopen)

    override = subparsers.add_parser("override", help="Record that one rule overrides another")
    override.add_argument("from_rule", help="Specific rule")
    override.add_argument("to_rule", help="General rule it overrides")
    override.add_argument("--note", default="", help="Provenance note")
    override.set_defaults(handler=cmd_override)

    status = subparsers.add_parser("status", help="Show drainer, queue and conflict status")
    status.set_defaults(handler=cmd_status)

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    manager = ConfigManager(args.config)
    valid, errors = manager.validate()
    if not valid:
        for error in errors:
            console.print(f"[red]Config error: {error}[/red]")
        return 2
    configure_logging(manager.config.logging)

    try:
        runtime = build_runtime(manager.config, manager)
        return args.handler(runtime, args)
    except BackendUnavailableError as e:
        logger.error(f"Backend unavailable: {e}")
        console.print(f"[red]Error: {e}[/red]")
        return 1
    except RegulatoryTruthError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
