"""
Radar configuration.

Every setting is loaded once at startup into frozen pydantic models and is
never mutated during a run. Sources, lowest precedence first:

    1. Defaults declared below
    2. Optional JSON file (--config or RADAR_CONFIG_PATH)
    3. Environment variables (see ENV_OVERRIDES)

The signal weight table can also be supplied on its own through
SIGNAL_WEIGHTS_PATH, a JSON file holding either a list of rule weights or a
{"rules": [...], "thresholds": {...}} object.

Usage:
    config = RadarConfig.load(config_path)
    config.resolver.retry_max_attempts
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration cannot be loaded or fails validation."""
    pass


# =============================================================================
# Sections
# =============================================================================


class RpcConfig(BaseModel):
    """Bitcoin Core JSON-RPC endpoint."""

    model_config = ConfigDict(frozen=True)

    url: str = "http://127.0.0.1:8332"
    user: Optional[str] = None
    password: Optional[str] = None
    timeout: float = 10.0
    max_retries: int = 3
    retry_delay: float = 0.5
    header_cache_size: int = 2048


class CacheConfig(BaseModel):
    """Persisted prevout cache (SQLite, WAL mode)."""

    model_config = ConfigDict(frozen=True)

    path: str = "data/utxo_cache.db"
    timeout: float = 5.0


class ResolverConfig(BaseModel):
    """Prevout resolution worker pool and retry policy."""

    model_config = ConfigDict(frozen=True)

    max_workers: int = 16
    max_queue_depth: int = 2048

    # Background retry for unavailable / transient lookups
    retry_initial_delay: float = 2.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 60.0
    retry_max_attempts: int = 5
    retry_interval: float = 1.0

    drain_timeout: float = 10.0

    @field_validator("max_workers", "max_queue_depth")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("retry_multiplier")
    @classmethod
    def _non_shrinking(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("backoff multiplier must be >= 1.0")
        return value

    @field_validator("retry_max_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the given retry attempt (1-based)."""
        delay = self.retry_initial_delay * (self.retry_multiplier ** max(0, attempt - 1))
        return min(delay, self.retry_max_delay)


class MempoolConfig(BaseModel):
    """Lifecycle state machine retention."""

    model_config = ConfigDict(frozen=True)

    grace_window_seconds: float = 300.0
    prune_interval_seconds: float = 30.0


class StatsConfig(BaseModel):
    """Aggregate statistics batching (count or time, whichever first)."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = 100
    interval_seconds: float = 5.0
    tick_seconds: float = 0.5


class PipelineConfig(BaseModel):
    """Orchestrator deadlines and resync behaviour."""

    model_config = ConfigDict(frozen=True)

    hot_path_timeout: float = 1.0
    correction_window: float = 30.0
    raw_tx_buffer_size: int = 10_000
    resync_retry_interval: float = 10.0
    resync_fetch_limit: int = 5_000
    resync_fetch_concurrency: int = 8
    drain_timeout: float = 10.0


class RuleWeight(BaseModel):
    """One row of the signal weight table."""

    model_config = ConfigDict(frozen=True)

    name: str
    weight: float
    # None uses the rule's own declared maximum
    max_contribution: Optional[float] = None

    @field_validator("max_contribution")
    @classmethod
    def _positive_maximum(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("max_contribution must be positive")
        return value


DEFAULT_RULE_WEIGHTS: tuple[RuleWeight, ...] = (
    RuleWeight(name="tx_value", weight=6.0),
    RuleWeight(name="utxo_age", weight=8.0),
    RuleWeight(name="cdd", weight=9.0),
    RuleWeight(name="input_count", weight=4.0),
    RuleWeight(name="fee_rate", weight=3.0),
    RuleWeight(name="rbf_flag", weight=2.0),
    RuleWeight(name="exchange_flow", weight=10.0),
    RuleWeight(name="coinjoin", weight=-6.0),
)


class TierThresholds(BaseModel):
    """Lower bounds (inclusive) of each alert tier on the clamped score."""

    model_config = ConfigDict(frozen=True)

    critical: float = 80.0
    high: float = 60.0
    medium: float = 40.0

    @model_validator(mode="after")
    def _descending(self) -> "TierThresholds":
        if not (0 < self.medium < self.high < self.critical <= 100):
            raise ValueError(
                "thresholds must satisfy 0 < medium < high < critical <= 100"
            )
        return self


class SignalConfig(BaseModel):
    """Scoring weight table and tiers."""

    model_config = ConfigDict(frozen=True)

    rules: tuple[RuleWeight, ...] = DEFAULT_RULE_WEIGHTS
    thresholds: TierThresholds = TierThresholds()

    @field_validator("rules")
    @classmethod
    def _unique_non_empty(cls, rules: tuple[RuleWeight, ...]) -> tuple[RuleWeight, ...]:
        if not rules:
            raise ValueError("weight table must name at least one rule")
        names = [r.name for r in rules]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate rules in weight table: {duplicates}")
        return rules


class HistoryConfig(BaseModel):
    """Optional PostgreSQL signal history."""

    model_config = ConfigDict(frozen=True)

    database_url: Optional[str] = None
    min_score_persist: float = 10.0
    batch_size: int = 50
    flush_interval_seconds: float = 5.0
    max_buffered: int = 10_000

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)


class DashboardConfig(BaseModel):
    """JSON / WebSocket publication surface."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9050
    subscriber_queue_size: int = 1000


class AlertingConfig(BaseModel):
    """Notifications for high-scoring transactions."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    min_score: float = 60.0
    # One alert per txid within this window
    cooldown_seconds: float = 30.0
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    send_timeout: float = 10.0

    @field_validator("min_score")
    @classmethod
    def _score_range(cls, value: float) -> float:
        if not 0.0 <= value <= 100.0:
            raise ValueError("min_score must be within [0, 100]")
        return value

    @field_validator("cooldown_seconds")
    @classmethod
    def _non_negative_cooldown(cls, value: float) -> float:
        if value < 0:
            raise ValueError("cooldown must be >= 0")
        return value

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


class RadarConfig(BaseModel):
    """Complete radar configuration."""

    model_config = ConfigDict(frozen=True)

    rpc: RpcConfig = RpcConfig()
    cache: CacheConfig = CacheConfig()
    resolver: ResolverConfig = ResolverConfig()
    mempool: MempoolConfig = MempoolConfig()
    stats: StatsConfig = StatsConfig()
    pipeline: PipelineConfig = PipelineConfig()
    signals: SignalConfig = SignalConfig()
    history: HistoryConfig = HistoryConfig()
    dashboard: DashboardConfig = DashboardConfig()
    alerting: AlertingConfig = AlertingConfig()

    @classmethod
    def from_file(cls, path: str | Path) -> "RadarConfig":
        """Load configuration from a JSON file."""
        return cls._validate(_read_json(Path(path)), source=str(path))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["RadarConfig"] = None,
    ) -> "RadarConfig":
        """Apply environment variable overrides on top of base (or defaults)."""
        environ = os.environ if environ is None else environ
        data = (base or cls()).model_dump()

        for var, (section, key) in ENV_OVERRIDES.items():
            value = environ.get(var)
            if value is None or value == "":
                continue
            data[section][key] = value

        weights_path = environ.get("SIGNAL_WEIGHTS_PATH")
        if weights_path:
            data["signals"] = _signal_section(_read_json(Path(weights_path)), data["signals"])
            logger.info(f"Loaded signal weight table from {weights_path}")

        return cls._validate(data, source="environment")

    @classmethod
    def load(
        cls,
        path: Optional[str | Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RadarConfig":
        """Defaults, then the JSON file (if any), then environment overrides."""
        environ = os.environ if environ is None else environ
        path = path or environ.get("RADAR_CONFIG_PATH")
        base = cls.from_file(path) if path else None
        return cls.from_env(environ, base=base)

    @classmethod
    def _validate(cls, data: Any, source: str) -> "RadarConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration from {source}: {e}") from e


# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "BITCOIN_RPC_URL": ("rpc", "url"),
    "BITCOIN_RPC_USER": ("rpc", "user"),
    "BITCOIN_RPC_PASSWORD": ("rpc", "password"),
    "BITCOIN_RPC_TIMEOUT": ("rpc", "timeout"),
    "CACHE_PATH": ("cache", "path"),
    "RESOLVER_MAX_WORKERS": ("resolver", "max_workers"),
    "RESOLVER_MAX_QUEUE_DEPTH": ("resolver", "max_queue_depth"),
    "RESOLVER_INITIAL_BACKOFF_SECONDS": ("resolver", "retry_initial_delay"),
    "RESOLVER_BACKOFF_MULTIPLIER": ("resolver", "retry_multiplier"),
    "RESOLVER_MAX_BACKOFF_SECONDS": ("resolver", "retry_max_delay"),
    "RESOLVER_MAX_ATTEMPTS": ("resolver", "retry_max_attempts"),
    "GRACE_WINDOW_SECONDS": ("mempool", "grace_window_seconds"),
    "PRUNE_INTERVAL_SECONDS": ("mempool", "prune_interval_seconds"),
    "STATS_BATCH_SIZE": ("stats", "batch_size"),
    "STATS_INTERVAL_SECONDS": ("stats", "interval_seconds"),
    "HOT_PATH_TIMEOUT_SECONDS": ("pipeline", "hot_path_timeout"),
    "CORRECTION_WINDOW_SECONDS": ("pipeline", "correction_window"),
    "DATABASE_URL": ("history", "database_url"),
    "MIN_SCORE_PERSIST": ("history", "min_score_persist"),
    "DASHBOARD_ENABLED": ("dashboard", "enabled"),
    "DASHBOARD_HOST": ("dashboard", "host"),
    "DASHBOARD_PORT": ("dashboard", "port"),
    "ALERTS_ENABLED": ("alerting", "enabled"),
    "ALERT_MIN_SCORE": ("alerting", "min_score"),
    "ALERT_COOLDOWN_SECONDS": ("alerting", "cooldown_seconds"),
    "TELEGRAM_BOT_TOKEN": ("alerting", "telegram_bot_token"),
    "TELEGRAM_CHAT_ID": ("alerting", "telegram_chat_id"),
}


def _read_json(path: Path) -> Any:
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e


def _signal_section(payload: Any, current: dict) -> dict:
    """Merge a standalone weight-table file into the signals section."""
    if isinstance(payload, list):
        return {**current, "rules": payload}
    if isinstance(payload, dict):
        return {**current, **payload}
    raise ConfigurationError("Signal weight file must hold a list or an object")
