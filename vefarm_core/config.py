"""
TOML-based configuration for VeFarm.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from vefarm_core.config import load_config
    cfg = load_config("vefarm.toml")
    farm = Farm(reward, cfg.farm.to_parameters(), ...)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from vefarm_core.params import (
    DEFAULT_EMISSION_RATE,
    DEFAULT_MAX_LOCK_TIME,
    DEFAULT_MIN_LOCK_TIME,
    DEFAULT_STAKING_PERCENT,
    FarmParameters,
)
from vefarm_core.precision import UNITS_PER_TOKEN, to_fixed

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class FarmSettings:
    """Engine parameters.  ``steepness`` is a human decimal (``"3.0"``)."""
    emission_rate: int = DEFAULT_EMISSION_RATE
    staking_weight_percent: int = DEFAULT_STAKING_PERCENT
    steepness: str = "3.0"
    reward_start_time: int = 0
    min_lock_time: int = DEFAULT_MIN_LOCK_TIME
    max_lock_time: int = DEFAULT_MAX_LOCK_TIME
    staking_pool_weight: int = 1000
    farm_account: str = "vefarm"
    check_invariants: bool = True

    def to_parameters(self) -> FarmParameters:
        params = FarmParameters(
            emission_rate=int(self.emission_rate),
            staking_weight_percent=int(self.staking_weight_percent),
            steepness=to_fixed(self.steepness),
            reward_start_time=int(self.reward_start_time),
            min_lock_time=int(self.min_lock_time),
            max_lock_time=int(self.max_lock_time),
        )
        params.validate()
        return params


@dataclass
class RewardTokenConfig:
    """Reward token supply settings (base units)."""
    symbol: str = "VEF"
    max_supply: int = 1_000_000_000 * UNITS_PER_TOKEN
    initial_supply: int = 0
    initial_holder: str = "treasury"


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/vefarm.db"
    snapshot_interval: int = 30        # seconds between background snapshots


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class VeFarmConfig:
    """Top-level configuration container."""
    farm: FarmSettings = field(default_factory=FarmSettings)
    reward_token: RewardTokenConfig = field(default_factory=RewardTokenConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> VeFarmConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        VEFARM_EMISSION_RATE   -> farm.emission_rate
        VEFARM_STAKING_PCT     -> farm.staking_weight_percent
        VEFARM_STEEPNESS       -> farm.steepness
        VEFARM_START_TIME      -> farm.reward_start_time
        VEFARM_API_PORT        -> api.port   (also enables the API)
        VEFARM_API_KEY         -> api.api_key
        VEFARM_CORS_ORIGINS    -> api.cors_origins  (comma-separated)
        VEFARM_DB_PATH         -> storage.path      (also enables storage)
        VEFARM_LOG_LEVEL       -> logging.level
        VEFARM_LOG_FMT         -> logging.format
    """
    cfg = VeFarmConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("farm", cfg.farm),
                ("reward_token", cfg.reward_token),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("VEFARM_EMISSION_RATE"):
        cfg.farm.emission_rate = int(v)
    if v := os.environ.get("VEFARM_STAKING_PCT"):
        cfg.farm.staking_weight_percent = int(v)
    if v := os.environ.get("VEFARM_STEEPNESS"):
        cfg.farm.steepness = v
    if v := os.environ.get("VEFARM_START_TIME"):
        cfg.farm.reward_start_time = int(v)
    if v := os.environ.get("VEFARM_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("VEFARM_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("VEFARM_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("VEFARM_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("VEFARM_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("VEFARM_LOG_FMT"):
        cfg.logging.format = v

    return cfg
