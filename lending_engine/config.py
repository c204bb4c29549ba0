"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .constants import DEFAULT_COMPUTE_BUDGET, FARMS_PROGRAM_ID, KLEND_PROGRAM_ID
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_ORACLES = ("pyth",)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    commitment: str = "confirmed"


@dataclass(frozen=True)
class MarketConfig:
    address: str = ""
    program_id: str = KLEND_PROGRAM_ID
    farms_program_id: str = FARMS_PROGRAM_ID


@dataclass(frozen=True)
class SequencerConfig:
    """Defaults applied to every action the service builds."""

    extra_compute_budget: int = DEFAULT_COMPUTE_BUDGET
    include_ata_ixns: bool = True
    include_user_metadata: bool = True
    request_elevation_group: bool = False


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    max_age_seconds: int = 60


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class AppConfig:
    chain: ChainConfig = field(default_factory=ChainConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        commitment=raw.get("commitment", "confirmed"),
    )


def _build_market(raw: dict[str, Any]) -> MarketConfig:
    return MarketConfig(
        address=raw.get("address", ""),
        program_id=raw.get("program_id", KLEND_PROGRAM_ID),
        farms_program_id=raw.get("farms_program_id", FARMS_PROGRAM_ID),
    )


def _build_sequencer(raw: dict[str, Any]) -> SequencerConfig:
    return SequencerConfig(
        extra_compute_budget=int(raw.get("extra_compute_budget", DEFAULT_COMPUTE_BUDGET)),
        include_ata_ixns=bool(raw.get("include_ata_ixns", True)),
        include_user_metadata=bool(raw.get("include_user_metadata", True)),
        request_elevation_group=bool(raw.get("request_elevation_group", False)),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            max_age_seconds=int(pyth_raw.get("max_age_seconds", 60)),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        chain=_build_chain(raw.get("chain", {})),
        market=_build_market(raw.get("market", {})),
        sequencer=_build_sequencer(raw.get("sequencer", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        log_level=str(raw.get("log_level", "INFO")),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.chain.rpc_endpoints:
        raise ConfigurationError("At least one RPC endpoint must be configured")
    if cfg.chain.rpc_timeout <= 0:
        raise ConfigurationError("rpc_timeout must be positive")
    if not cfg.market.address:
        raise ConfigurationError("Market address is not configured")
    if cfg.price_oracle.provider not in SUPPORTED_ORACLES:
        raise ConfigurationError(
            f"Unsupported price oracle provider '{cfg.price_oracle.provider}'"
        )
    if cfg.price_oracle.pyth.max_age_seconds <= 0:
        raise ConfigurationError("Pyth max_age_seconds must be positive")
    if cfg.sequencer.extra_compute_budget < 0:
        raise ConfigurationError("extra_compute_budget cannot be negative")
