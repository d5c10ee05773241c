"""
Configuration loading and validation for the DEX arbitrage engine.

The YAML file is parsed with ``yaml.safe_load`` and validated by pydantic
models. Secrets never live in the file: the signing key is read from the
environment variable named by ``execution.private_key_env`` and the RPC URL
may be overridden with ``ARB_RPC_URL`` (both can come from a ``.env`` file).
"""

import os
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from web3 import Web3

from dex_arbitrage.exceptions import ConfigurationError

RPC_URL_ENV = "ARB_RPC_URL"


def _address(value: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


class RpcSettings(BaseModel):
    """Read endpoint, relays and admission window."""

    url: str = ""
    relay_urls: List[str] = Field(default_factory=list)
    chain_id: int = Field(default=137, ge=1)
    max_inflight: int = Field(default=4, ge=1, le=64, description="Concurrent read calls")
    fast_lane_methods: List[str] = Field(default_factory=lambda: ["get_block_number"])
    retry_attempts: int = Field(default=2, ge=1, le=5)
    call_timeout_seconds: float = Field(default=5.0, gt=0, le=120)


class ScannerSettings(BaseModel):
    min_edge_pct: float = Field(default=0.25, ge=0, le=100)
    min_liquidity_usd: float = Field(default=300_000.0, ge=0)
    queue_capacity: int = Field(default=100, ge=1, le=100_000)
    max_notional_usd: float = Field(default=10_000.0, gt=0)
    loan_tokens: List[str] = Field(default_factory=list)
    scan_interval_seconds: float = Field(default=2.0, gt=0)
    refresh_interval_seconds: float = Field(default=30.0, gt=0)

    @field_validator("loan_tokens")
    @classmethod
    def validate_loan_tokens(cls, v):
        return [_address(t) for t in v]


class ProtectionSettings(BaseModel):
    cooldown_seconds: float = Field(default=3.0, ge=0)
    activity_lookback_seconds: float = Field(default=10.0, ge=0)
    max_slippage_bps: int = Field(default=150, ge=0, le=10_000)
    min_profit_usd: float = Field(default=10.0, ge=0)
    min_profit_bps: float = Field(default=0.0, ge=0)
    oracle_staleness_seconds: float = Field(default=180.0, ge=0)
    max_fee_gwei: float = Field(default=300.0, gt=0)
    max_gas_limit: int = Field(default=2_000_000, gt=0)
    reserve_slippage_pct: int = Field(default=1, ge=0, le=99)
    step_timeout_seconds: float = Field(default=5.0, gt=0)
    profit_lock_pct: float = Field(default=75.0, ge=0, le=100)


class ExecutorSettings(BaseModel):
    name: str
    address: str

    @field_validator("address")
    @classmethod
    def validate_address(cls, v):
        return _address(v)


class ExecutionSettings(BaseModel):
    executors: List[ExecutorSettings] = Field(default_factory=list)
    private_key_env: str = "ARB_PRIVATE_KEY"
    wallet: Optional[str] = None
    trade_slippage_bps: int = Field(default=100, ge=0, lt=10_000)
    deadline_seconds: int = Field(default=120, gt=0)
    relay_timeout_seconds: float = Field(default=10.0, gt=0)
    wait_for_receipt: bool = True
    confirmation_timeout_seconds: float = Field(default=60.0, gt=0)
    native_token: Optional[str] = None
    native_price_usd: float = Field(default=0.0, ge=0)
    gas_units_estimate: int = Field(default=600_000, gt=0)
    max_concurrent_candidates: int = Field(default=4, ge=1, le=64)
    attempt_all_executors: bool = True
    dry_run: bool = True

    @field_validator("wallet", "native_token")
    @classmethod
    def validate_optional_address(cls, v):
        return _address(v) if v else None


class TokenSettings(BaseModel):
    symbol: str
    decimals: int = Field(default=18, ge=0, le=36)
    stable: bool = False
    feed: Optional[str] = None

    @field_validator("feed")
    @classmethod
    def validate_feed(cls, v):
        return _address(v) if v else None


class FlashLoanSourceSettings(BaseModel):
    type: Literal["aave", "balancer"]
    address: str
    enabled: bool = True

    @field_validator("address")
    @classmethod
    def validate_address(cls, v):
        return _address(v)


class StorageSettings(BaseModel):
    repository_dir: str = "data/candidates"
    alerts_path: str = "logs/alerts.jsonl"
    alert_suppression_seconds: float = Field(default=2.0, ge=0)
    cooldown_state_path: str = "data/route_cooldowns.json"
    pool_feed_path: str = "data/pools.json"


class MetricsSettings(BaseModel):
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)


class EngineConfig(BaseModel):
    """Validated engine configuration."""

    rpc: RpcSettings = Field(default_factory=RpcSettings)
    scanner: ScannerSettings = Field(default_factory=ScannerSettings)
    protection: ProtectionSettings = Field(default_factory=ProtectionSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    tokens: Dict[str, TokenSettings] = Field(default_factory=dict)
    flash_loan_sources: List[FlashLoanSourceSettings] = Field(default_factory=list)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    model_config = {"extra": "forbid"}

    @field_validator("tokens")
    @classmethod
    def validate_tokens(cls, v):
        return {_address(addr): settings for addr, settings in v.items()}

    @model_validator(mode="after")
    def validate_executors(self):
        # Dry runs still build and gas-gate against a real executor
        if not self.execution.executors:
            raise ValueError("execution.executors must list at least one executor contract")
        return self

    @property
    def stable_tokens(self) -> List[str]:
        return [addr for addr, t in self.tokens.items() if t.stable]

    @property
    def price_feeds(self) -> Dict[str, str]:
        return {addr: t.feed for addr, t in self.tokens.items() if t.feed}

    @property
    def relay_urls(self) -> List[str]:
        return self.rpc.relay_urls or ([self.rpc.url] if self.rpc.url else [])


def validate_engine_config(
    config_dict: Mapping,
    env: Optional[Mapping[str, str]] = None,
    force_dry_run: bool = False,
) -> EngineConfig:
    """
    Validate a configuration dictionary and apply environment overrides.

    ``force_dry_run`` switches execution to dry-run before the signing key
    requirement is checked.

    Raises:
        ConfigurationError: If the configuration is invalid or incomplete
    """
    env = os.environ if env is None else env
    try:
        config = EngineConfig(**dict(config_dict))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if force_dry_run:
        config.execution.dry_run = True

    if env.get(RPC_URL_ENV):
        config.rpc.url = env[RPC_URL_ENV]
    if not config.rpc.url:
        raise ConfigurationError(f"rpc.url is required (or set {RPC_URL_ENV})")
    if not config.rpc.url.startswith(("http://", "https://")):
        raise ConfigurationError(f"Invalid RPC URL format: {config.rpc.url}")

    if not config.execution.dry_run and not env.get(config.execution.private_key_env):
        raise ConfigurationError(
            f"Signing key missing: set {config.execution.private_key_env} or enable dry_run"
        )
    return config


def load_config(
    config_path: Union[str, Path],
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
    force_dry_run: bool = False,
) -> EngineConfig:
    """
    Load and validate a YAML configuration file.

    Args:
        config_path: Path to YAML configuration file
        env: Environment mapping (defaults to ``os.environ`` after loading .env)
        dotenv_path: Explicit .env file; the default search is used if None
        force_dry_run: Run in dry-run mode whatever the file says

    Returns:
        Validated EngineConfig

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    if env is None:
        load_dotenv(dotenv_path)

    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e

    if not isinstance(config_dict, dict):
        raise ConfigurationError(f"Configuration file is empty or invalid: {path}")

    return validate_engine_config(config_dict, env, force_dry_run=force_dry_run)


def private_key_from_env(config: EngineConfig, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = os.environ if env is None else env
    return env.get(config.execution.private_key_env) or None
