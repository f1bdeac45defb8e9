"""
Configuration management for the yield rebalancer.

Nested dataclass sections with defaults, loadable from YAML/dict, with
environment variable overrides for deployment-specific values.
"""

import os
from dataclasses import dataclass, field
from typing import Literal


@dataclass
class AlignerConfig:
    """Snapshot alignment and source fetch limits."""

    max_workers: int = 8  # Parallel fetches per snapshot
    rate_limit_per_sec: float = 20.0  # Shared across all fetches of one source
    rate_limit_burst: int = 5
    deadline_sec: float = 30.0  # Whole snapshot fails past this
    history_hours: int = 72  # Lookback window fed to the estimators


@dataclass
class OptimizerConfig:
    """Mean-variance allocation parameters."""

    risk_aversion: float = 2.0  # lambda in mu'w - lambda w'Sw
    concentration_cap: float = 0.25  # Max weight per market
    turnover_cap: float = 0.20  # Max |w_i - w_prev_i| per market
    reserved_fraction: float = 0.10  # Kept back for hedge margin / cash
    tolerance: float = 1e-6  # Equality constraint and convergence tolerance
    max_iterations: int = 20_000
    dust_weight: float = 0.01  # Weight deltas below this are not traded
    ewma_alpha: float = 0.0286  # ~24h half-life on hourly fees
    variance_floor_bps2: float = 1.0  # Diagonal floor when history is short
    utilization_penalty: float = 1.0  # Tail-risk scaling per unit utilization
    min_history: int = 3  # Observations needed for a covariance estimate
    solve_timeout_sec: float = 60.0


@dataclass
class RetryConfig:
    """Backoff for transient source/submission errors."""

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    factor: float = 2.0
    max_delay_sec: float = 30.0
    jitter: float = 0.1


@dataclass
class ExecutionConfig:
    """Trade planning and submission."""

    mode: Literal["paper", "live"] = "paper"
    min_trade_usd: float = 10.0  # Smaller USD deltas are dust
    min_hedge_size: float = 0.01  # Smaller hedge deltas (contracts) are dust
    poll_interval_sec: float = 2.0
    confirm_timeout_sec: float = 120.0  # Pending longer than this = failed attempt
    pool_account: str = "pool"
    hedge_account: str = "hedge"
    max_parallel_accounts: int = 4
    initial_capital_usd: float = 100_000.0  # Cash assumed before the first snapshot exists


@dataclass
class CycleConfig:
    """Cycle-level retry of retryable outcomes."""

    data_retry_attempts: int = 3
    data_retry_wait_sec: float = 60.0
    persistence_retry_attempts: int = 2


@dataclass
class LedgerConfig:
    database_url: str = "sqlite:///yield_rebalancer.db"
    strategy_version: str = "mv-1"
    echo: bool = False


@dataclass
class SchedulerConfig:
    interval_minutes: int = 30  # One cycle per interval, never overlapping
    offset_seconds: int = 60  # Fire shortly after the boundary so ingestion lands first


@dataclass
class MonitoringConfig:
    metrics_enabled: bool = True
    max_failed_trade_ratio: float = 0.5  # Trip the review gate above this


@dataclass
class HedgeConfig:
    """Hyperliquid hedge venue settings."""

    network: Literal["testnet", "mainnet"] = "testnet"
    address: str = ""  # Main wallet address (from env)
    secret_key: str = ""  # API wallet private key (from env)
    ticker: str = "ETH"  # Perp used as the hedge instrument
    sz_decimals: int = 4
    max_slippage: float = 0.01

    api_url: str = ""

    def __post_init__(self):
        """Set API URL based on network."""
        from hyperliquid.utils import constants

        if self.network == "testnet":
            self.api_url = constants.TESTNET_API_URL
        else:
            self.api_url = constants.MAINNET_API_URL


@dataclass
class Config:
    """
    Complete system configuration.

    Environment variables (override config file):
    - DATABASE_URL: SQLAlchemy URL of the ledger database
    - STRATEGY_VERSION: version tag written on every strategy run
    - EXECUTION_MODE: "paper" or "live"
    - HL_NETWORK / HL_ADDRESS / HL_SECRET_KEY: hedge venue credentials
    """

    aligner: AlignerConfig = field(default_factory=AlignerConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    hedge: HedgeConfig = field(default_factory=HedgeConfig)

    def __post_init__(self):
        """Load environment variable overrides."""
        if os.getenv("DATABASE_URL"):
            self.ledger.database_url = os.getenv("DATABASE_URL", "")

        if os.getenv("STRATEGY_VERSION"):
            self.ledger.strategy_version = os.getenv("STRATEGY_VERSION", "")

        if os.getenv("EXECUTION_MODE"):
            self.execution.mode = os.getenv("EXECUTION_MODE", "paper").lower()

        if os.getenv("HL_NETWORK"):
            self.hedge.network = os.getenv("HL_NETWORK", "testnet")

        if os.getenv("HL_ADDRESS"):
            self.hedge.address = os.getenv("HL_ADDRESS", "")

        if os.getenv("HL_SECRET_KEY"):
            self.hedge.secret_key = os.getenv("HL_SECRET_KEY", "")

        # Re-initialize to set API URL
        self.hedge.__post_init__()

    @classmethod
    def from_yaml(cls, path: str) -> "Config":
        """Load config from YAML file."""
        import yaml

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Load config from dictionary."""
        from dataclasses import is_dataclass, fields

        def build(dc_type, data):
            if not is_dataclass(dc_type):
                return data
            kwargs = {}
            for f in fields(dc_type):
                if f.name in data:
                    val = data[f.name]
                    section = f.default_factory if callable(f.default_factory) else None
                    if section is not None and is_dataclass(section) and isinstance(val, dict):
                        kwargs[f.name] = build(section, val)
                    else:
                        kwargs[f.name] = val
            return dc_type(**kwargs)

        return build(cls, data)

    def validate(self) -> list[str]:
        """
        Validate configuration parameters.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        opt = self.optimizer

        if self.execution.mode not in ("paper", "live"):
            errors.append("execution.mode must be 'paper' or 'live'")

        if self.execution.mode == "live":
            if not self.hedge.address:
                errors.append("HL_ADDRESS environment variable required in live mode")
            if not self.hedge.secret_key:
                errors.append("HL_SECRET_KEY environment variable required in live mode")

        if opt.risk_aversion <= 0:
            errors.append("optimizer.risk_aversion must be > 0")

        if not (0.0 <= opt.reserved_fraction < 1.0):
            errors.append("optimizer.reserved_fraction must be in [0, 1)")

        if not (0.0 < opt.concentration_cap <= 1.0):
            errors.append("optimizer.concentration_cap must be in (0, 1]")

        if opt.turnover_cap <= 0:
            errors.append("optimizer.turnover_cap must be > 0")

        if opt.tolerance <= 0 or opt.tolerance > 1e-3:
            errors.append("optimizer.tolerance must be in (0, 1e-3]")

        if self.retry.max_attempts < 1:
            errors.append("retry.max_attempts must be >= 1")

        if self.scheduler.interval_minutes <= 0:
            errors.append("scheduler.interval_minutes must be > 0")

        return errors
