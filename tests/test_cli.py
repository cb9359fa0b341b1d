"""
Tests for the command line interface
"""

import logging

import pytest
import yaml

from regulatory_truth import cli
from regulatory_truth.core.config import ConfigManager
from regulatory_truth.drainer.scheduler import DrainScheduler
from regulatory_truth.resolution.audit import JsonlAuditLedger
from regulatory_truth.resolution.escalation import JsonlReviewQueue
from regulatory_truth.schema import AuditAction, AuthorityLevel, ConflictStatus, RiskTier, RuleStatus
from regulatory_truth.storage.gateway import StateFileGateway


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    for name in ("REGTRUTH_STATE_FILE", "REGTRUTH_AUDIT_FILE", "REGTRUTH_QUEUE_DIR", "REGTRUTH_ORACLE_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def config_file(workdir):
    path = workdir / "regulatory_truth.yaml"
    path.write_text(yaml.dump({
        "storage": {
            "state_file": str(workdir / "state.json"),
            "audit_file": str(workdir / "audit.jsonl"),
            "heartbeat_file": str(workdir / "heartbeat.json"),
            "reviews_file": str(workdir / "reviews.jsonl"),
        },
        "queue": {"queue_dir": str(workdir / "queue")},
        "logging": {"console": False, "format": "text"},
    }))
    return path


@pytest.fixture
def seeded(workdir, config_file, make_rule, make_conflict):
    gateway = StateFileGateway(workdir / "state.json")
    gateway.save_rule(make_rule("rule-a", AuthorityLevel.LAW))
    gateway.save_rule(make_rule("rule-b"))
    gateway.save_conflict(make_conflict("c1", "rule-a", "rule-b"))
    return config_file


def run(config_file, *args):
    return cli.main(["--config", str(config_file), *args])


class TestParseArgs:

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])

    def test_drain_flags(self):
        args = cli.parse_args(["drain", "--once"])
        assert args.once is True
        assert args.handler is cli.cmd_drain


class TestCommands:

    def test_drain_once_queues_arbiter_job(self, seeded, workdir):
        assert run(seeded, "drain", "--once") == 0
        assert list((workdir / "queue" / "pending").glob("*.json"))

    def test_arbitrate_from_queue(self, seeded, workdir):
        run(seeded, "drain", "--once")

        assert run(seeded, "arbitrate", "--from-queue") == 0

        gateway = StateFileGateway(workdir / "state.json")
        assert gateway.get_conflict("c1").status == ConflictStatus.RESOLVED
        assert gateway.get_rule("rule-b").status == RuleStatus.DEPRECATED

    def test_reopen(self, seeded, workdir, capsys):
        run(seeded, "arbitrate")

        assert run(seeded, "reopen", "c1", "--reason", "bad extraction") == 0

        gateway = StateFileGateway(workdir / "state.json")
        assert gateway.get_conflict("c1").status == ConflictStatus.OPEN
        assert gateway.get_rule("rule-b").status == RuleStatus.PUBLISHED
        ledger = JsonlAuditLedger(workdir / "audit.jsonl")
        assert ledger.find("c1", 0, AuditAction.CONFLICT_REOPENED).reason == "bad extraction"
        assert "reopened" in capsys.readouterr().out

    def test_override_cycle_exits_nonzero(self, seeded):
        assert run(seeded, "override", "rule-a", "rule-b") == 0
        assert run(seeded, "override", "rule-b", "rule-a") == 1

    def test_unknown_conflict_exits_nonzero(self, seeded):
        assert run(seeded, "reopen", "ghost") == 1

    def test_status(self, seeded, capsys):
        run(seeded, "drain", "--once")

        assert run(seeded, "status") == 0

        out = capsys.readouterr().out
        assert "Pipeline stages" in out
        assert "arbiter" in out

    def test_invalid_config(self, workdir):
        path = workdir / "bad.yaml"
        path.write_text(yaml.dump({"drainer": {"min_delay_ms": 10, "max_delay_ms": 5}}))

        assert run(path, "status") == 2

    def test_corrupt_state_exits_nonzero(self, config_file, workdir):
        (workdir / "state.json").write_text("{broken")

        assert run(config_file, "status") == 1

    def test_review_requests_outlive_the_process(self, workdir, config_file, make_rule, make_conflict, capsys):
        gateway = StateFileGateway(workdir / "state.json")
        gateway.save_rule(make_rule("vat-a", AuthorityLevel.LAW, risk_tier=RiskTier.T0))
        gateway.save_rule(make_rule("vat-b", AuthorityLevel.GUIDANCE, risk_tier=RiskTier.T0))
        gateway.save_conflict(make_conflict("c-t0", "vat-a", "vat-b"))

        assert run(config_file, "arbitrate") == 0

        assert JsonlReviewQueue(workdir / "reviews.jsonl").get("c-t0") is not None
        run(config_file, "status")
        assert "Reviews: 1 open" in capsys.readouterr().out


class TestReloadConfig:

    @pytest.fixture
    def runtime(self, config_file):
        manager = ConfigManager(config_file)
        return cli.build_runtime(manager.config, manager)

    @pytest.fixture
    def scheduler(self, runtime):
        return DrainScheduler.from_config(
            runtime.gateway, runtime.dispatcher, runtime.config, heartbeat=runtime.heartbeat
        )

    def _rewrite(self, config_file, **drainer):
        data = yaml.safe_load(config_file.read_text())
        data["drainer"] = drainer
        config_file.write_text(yaml.dump(data))

    def test_applies_new_drainer_settings(self, runtime, scheduler, config_file):
        self._rewrite(config_file, min_delay_ms=100, max_delay_ms=900)

        assert cli.reload_config(runtime, scheduler) is True

        assert runtime.config.drainer.max_delay_ms == 900
        assert scheduler.backoff.max_delay_ms == 900
        assert scheduler.backoff.current_ms == 900

    def test_invalid_file_keeps_running_config(self, runtime, scheduler, config_file):
        self._rewrite(config_file, min_delay_ms=100, max_delay_ms=50)

        assert cli.reload_config(runtime, scheduler) is False

        assert runtime.config.drainer.max_delay_ms == 60000
        assert scheduler.backoff.max_delay_ms == 60000
