"""
Configuration System

Manages regulatory truth configuration from multiple sources:
1. Default values
2. Configuration file (regulatory_truth.yaml)
3. Environment variables (highest priority)

Supports validation and reloading a running process (SIGHUP for the drainer).
"""

from typing import Any, Dict, Optional
from pathlib import Path
import logging
import os
import yaml
from dataclasses import dataclass, field, asdict

logger = logging.getLogger(__name__)


@dataclass
class DrainerConfig:
    """Drain loop backoff configuration"""
    min_delay_ms: int = 1000  # floor, used whenever a cycle finds work
    max_delay_ms: int = 60000  # ceiling while idle
    multiplier: float = 2.0
    log_every_n_cycles: int = 10


@dataclass
class StageConfig:
    """Per-stage execution configuration"""
    timeout_seconds: float = 300.0
    pending_items_batch: int = 50
    pending_items_max_retries: int = 3
    pending_ocr_batch: int = 10
    fetched_evidence_scan: int = 100
    fetched_evidence_batch: int = 50
    source_pointers_batch: int = 50
    draft_rules_batch: int = 100
    conflicts_batch: int = 10
    approved_rules_batch: int = 20


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration"""
    error_threshold_percentage: float = 30.0
    rolling_window_seconds: float = 600.0
    volume_threshold: int = 3
    reset_timeout_seconds: float = 300.0


@dataclass
class OracleConfig:
    """Arbitration oracle configuration"""
    endpoint: Optional[str] = None
    api_key_env_var: str = "REGTRUTH_ORACLE_API_KEY"
    timeout_seconds: float = 120.0
    max_attempts: int = 3
    temperature: float = 0.1
    max_concurrent_calls: int = 1
    min_interval_ms: int = 2000
    max_calls_per_window: int = 20
    window_seconds: float = 60.0


@dataclass
class EscalationConfig:
    """Mandatory escalation thresholds"""
    oracle_min_confidence: float = 0.80
    rule_min_confidence: float = 0.85


@dataclass
class PrecedenceConfig:
    """Precedence graph configuration"""
    max_depth: int = 50


@dataclass
class QueueConfig:
    """Job queue configuration"""
    queue_dir: str = ".regulatory_truth/queue"
    dedupe_retention_seconds: float = 3600.0


@dataclass
class StorageConfig:
    """Storage gateway configuration"""
    state_file: str = ".regulatory_truth/state.json"
    audit_file: str = ".regulatory_truth/audit.jsonl"
    heartbeat_file: str = ".regulatory_truth/heartbeat.json"
    reviews_file: str = ".regulatory_truth/reviews.jsonl"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"
    file: Optional[str] = None
    console: bool = True


@dataclass
class RegulatoryTruthConfig:
    """Complete configuration"""
    drainer: DrainerConfig = field(default_factory=DrainerConfig)
    stage: StageConfig = field(default_factory=StageConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    precedence: PrecedenceConfig = field(default_factory=PrecedenceConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegulatoryTruthConfig":
        """Create configuration from dictionary"""
        config = cls()

        if "drainer" in data:
            config.drainer = DrainerConfig(**data["drainer"])
        if "stage" in data:
            config.stage = StageConfig(**data["stage"])
        if "circuit_breaker" in data:
            config.circuit_breaker = CircuitBreakerConfig(**data["circuit_breaker"])
        if "oracle" in data:
            config.oracle = OracleConfig(**data["oracle"])
        if "escalation" in data:
            config.escalation = EscalationConfig(**data["escalation"])
        if "precedence" in data:
            config.precedence = PrecedenceConfig(**data["precedence"])
        if "queue" in data:
            config.queue = QueueConfig(**data["queue"])
        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])
        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])

        return config


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
        """
        self.config_file = config_file or Path("regulatory_truth.yaml")
        self._config = self._load_config()

    def _load_config(self) -> RegulatoryTruthConfig:
        """
        Load configuration from all sources

        Returns:
            Complete configuration
        """
        config = RegulatoryTruthConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
                    if file_data:
                        config = RegulatoryTruthConfig.from_dict(file_data)
            except (OSError, yaml.YAMLError, TypeError) as e:
                logger.warning(f"Failed to load config file {self.config_file}: {e}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: RegulatoryTruthConfig) -> RegulatoryTruthConfig:
        """
        Apply environment variable overrides

        Environment variables format: REGTRUTH_<SECTION>_<KEY>
        Example: REGTRUTH_DRAINER_MAX_DELAY_MS=120000

        Args:
            config: Base configuration

        Returns:
            Configuration with environment overrides applied
        """
        # Drainer overrides
        if min_delay := os.getenv("REGTRUTH_DRAINER_MIN_DELAY_MS"):
            config.drainer.min_delay_ms = int(min_delay)
        if max_delay := os.getenv("REGTRUTH_DRAINER_MAX_DELAY_MS"):
            config.drainer.max_delay_ms = int(max_delay)

        # Stage overrides
        if stage_timeout := os.getenv("REGTRUTH_STAGE_TIMEOUT_SECONDS"):
            config.stage.timeout_seconds = float(stage_timeout)

        # Oracle overrides
        if endpoint := os.getenv("REGTRUTH_ORACLE_ENDPOINT"):
            config.oracle.endpoint = endpoint
        if oracle_timeout := os.getenv("REGTRUTH_ORACLE_TIMEOUT_SECONDS"):
            config.oracle.timeout_seconds = float(oracle_timeout)

        # Storage overrides
        if state_file := os.getenv("REGTRUTH_STATE_FILE"):
            config.storage.state_file = state_file
        if audit_file := os.getenv("REGTRUTH_AUDIT_FILE"):
            config.storage.audit_file = audit_file
        if queue_dir := os.getenv("REGTRUTH_QUEUE_DIR"):
            config.queue.queue_dir = queue_dir

        # Logging overrides
        if log_level := os.getenv("REGTRUTH_LOG_LEVEL"):
            config.logging.level = log_level
        if log_format := os.getenv("REGTRUTH_LOG_FORMAT"):
            config.logging.format = log_format
        if log_file := os.getenv("REGTRUTH_LOG_FILE"):
            config.logging.file = log_file

        return config

    @property
    def config(self) -> RegulatoryTruthConfig:
        return self._config

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = self._check(self._config)
        return len(errors) == 0, errors

    @staticmethod
    def _check(cfg: RegulatoryTruthConfig) -> list[str]:
        errors = []

        # Drainer
        if cfg.drainer.min_delay_ms < 0:
            errors.append("Drainer min delay must be non-negative")
        if cfg.drainer.max_delay_ms < cfg.drainer.min_delay_ms:
            errors.append("Drainer max delay must be >= min delay")
        if cfg.drainer.multiplier < 1:
            errors.append("Drainer backoff multiplier must be at least 1")

        # Stage
        if cfg.stage.timeout_seconds <= 0:
            errors.append("Stage timeout must be positive")

        # Circuit breaker
        if not 0 < cfg.circuit_breaker.error_threshold_percentage <= 100:
            errors.append("Circuit breaker error threshold must be in (0, 100]")
        if cfg.circuit_breaker.volume_threshold < 1:
            errors.append("Circuit breaker volume threshold must be at least 1")

        # Oracle
        if cfg.oracle.max_attempts < 1:
            errors.append("Oracle max attempts must be at least 1")
        if cfg.oracle.max_concurrent_calls < 1:
            errors.append("Oracle max concurrent calls must be at least 1")

        # Escalation
        for name in ("oracle_min_confidence", "rule_min_confidence"):
            value = getattr(cfg.escalation, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"Escalation {name} must be between 0 and 1")

        # Precedence
        if cfg.precedence.max_depth < 1:
            errors.append("Precedence max depth must be at least 1")

        # Logging
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if cfg.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")
        if cfg.logging.format not in ("json", "text"):
            errors.append("Logging format must be 'json' or 'text'")

        return errors

    def reload(self) -> list[str]:
        """
        Reload configuration from file and environment

        An invalid configuration is rejected and the current one kept.

        Returns:
            Errors of the rejected configuration, empty when it was applied
        """
        config = self._load_config()
        errors = self._check(config)
        if errors:
            logger.error(f"Rejected reloaded config {self.config_file}: {'; '.join(errors)}")
            return errors

        self._config = config
        logger.info(f"Reloaded config from {self.config_file}")
        return []
