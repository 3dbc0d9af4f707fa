"""Configuration loader for the exchange gateway.

Supports YAML format with environment variable interpolation. Credentials are
not part of this file; see :mod:`lnm_gateway.credentials`.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from .cache import TTL_ACCOUNT, TTL_DEGRADED, TTL_FEES, TTL_FUNDING, TTL_SNAPSHOT, TTL_TICKER
from .circuit_breaker import CircuitBreakerConfig
from .environment import DEFAULT_TEST_KEY_PATTERNS, DEFAULT_TEST_LABEL_WORDS
from .fallback import FallbackConfig
from .rate_gate import RateGateConfig
from .retry import NO_RETRY, RetryPolicy


@dataclass
class ExchangeConfig:
    """Exchange endpoints and request settings."""
    production_url: str = "https://api.lnmarkets.com"
    test_url: str = "https://api.testnet4.lnmarkets.com"
    path_prefix: str = "/v2"
    sign_with_prefix: bool = True
    timeout: float = 10.0
    environment: Optional[str] = None  # force production/test; None = detect
    test_key_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_TEST_KEY_PATTERNS))
    test_label_words: List[str] = field(default_factory=lambda: list(DEFAULT_TEST_LABEL_WORDS))


@dataclass
class CacheConfig:
    """TTL per resource class (seconds)."""
    ticker_ttl: float = TTL_TICKER
    funding_ttl: float = TTL_FUNDING
    fees_ttl: float = TTL_FEES
    account_ttl: float = TTL_ACCOUNT
    snapshot_ttl: float = TTL_SNAPSHOT
    degraded_ttl: float = TTL_DEGRADED


@dataclass
class LoggingConfig:
    log_file: Optional[str] = "gateway.log"
    level: str = "INFO"
    enable_console: bool = True
    serialize: bool = False
    rotation: str = "50 MB"
    retention: str = "14 days"


def _build(cls, data: Optional[Mapping[str, Any]]):
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**data)


@dataclass
class GatewayConfig:
    """Complete gateway configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    rate_gate: RateGateConfig = field(default_factory=RateGateConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    # order-mutating calls; single attempt unless configured
    mutation_retry: RetryPolicy = field(default_factory=lambda: NO_RETRY)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "GatewayConfig":
        data = dict(data or {})
        fallback = dict(data.get("fallback") or {})
        for key in ("min_price", "max_price"):
            if key in fallback:
                fallback[key] = Decimal(str(fallback[key]))
        return cls(
            exchange=_build(ExchangeConfig, data.get("exchange")),
            rate_gate=_build(RateGateConfig, data.get("rate_gate")),
            retry=_build(RetryPolicy, data.get("retry")),
            mutation_retry=_build(RetryPolicy, data.get("mutation_retry") or asdict(NO_RETRY)),
            circuit_breaker=_build(CircuitBreakerConfig, data.get("circuit_breaker")),
            cache=_build(CacheConfig, data.get("cache")),
            fallback=_build(FallbackConfig, fallback),
            logging=_build(LoggingConfig, data.get("logging")),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "GatewayConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            GatewayConfig instance

        Example YAML:
            exchange:
              timeout: 10
            circuit_breaker:
              failure_threshold: 5
              recovery_timeout: 60
            logging:
              log_file: "${LOG_DIR}/gateway.log"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        return cls.from_dict(yaml.safe_load(raw) or {})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["fallback"]["min_price"] = str(self.fallback.min_price)
        data["fallback"]["max_price"] = str(self.fallback.max_price)
        return data

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
