"""Configuration loading and strict validation for the town economy."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


class SimulationConfig(StrictModel):
    default_ticks: int = 60
    tick_interval_seconds: float = 1.0
    max_runtime_seconds: float = 3600.0
    summary_interval_ticks: int = 10
    seed: int | None = None


class PrincipalsConfig(StrictModel):
    count: int = 4
    id_prefix: str = "agent_"
    starting_bankroll: int = 500
    starting_reserve: int = 2000
    archetypes: list[str] = Field(default_factory=lambda: ["SHARK", "DEGEN", "GRINDER", "ROCK", "CHAMELEON"])


class TownsConfig(StrictModel):
    count: int = 1
    id_prefix: str = "town_"
    names: list[str] = Field(default_factory=lambda: ["Hollowmere", "Brightwater", "Ashford"])
    theme: str = "frontier trading post"
    level: int = 1
    plots_per_town: int = 10
    built_plots: int = 3
    built_cost_arena: int = 40


class PoolConfig(StrictModel):
    initial_reserve: int = 10_000
    initial_arena: int = 10_000
    fee_bps: int = 100


class SplitConfig(StrictModel):
    town_bps: int = 5000
    ops_bps: int = 2500
    pvp_bps: int = 1500
    insurance_bps: int = 1000


class AccountingConfig(StrictModel):
    fee_insurance_bps: int = 7000
    claim_split: SplitConfig = Field(default_factory=SplitConfig)
    build_split: SplitConfig = Field(default_factory=SplitConfig)


class MarketPulseConfig(StrictModel):
    enabled: bool = True
    interval_ms: int = 1200
    trades_per_tick: int = 2
    min_trade_in: int = 120
    max_trade_in: int = 6000
    agent_cooldown_ms: int = 3500


class WorldEventsConfig(StrictModel):
    enabled: bool = True
    event_cooldown_ticks: int = 5
    event_chance: float = 0.20
    max_active_events: int = 1
    bounty_bonus: int = 50
    tax_rate: float = 0.10


class SkillsConfig(StrictModel):
    global_min_ticks_between_purchases: int = 3
    max_purchases_per_window: int = 2
    window_ticks: int = 10


class LLMConfig(StrictModel):
    enabled: bool = True
    default_model: str = "gemini/gemini-2.5-flash"
    timeout_seconds: int = 30


class StoreConfig(StrictModel):
    database_path: str = ":memory:"


class LoggingConfig(StrictModel):
    logs_dir: str = "logs"
    event_file_name: str = "events.jsonl"
    summary_file_name: str = "summary.jsonl"
    channel_maxlen: int = 1000


class AppConfig(StrictModel):
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    principals: PrincipalsConfig = Field(default_factory=PrincipalsConfig)
    towns: TownsConfig = Field(default_factory=TownsConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    accounting: AccountingConfig = Field(default_factory=AccountingConfig)
    market_pulse: MarketPulseConfig = Field(default_factory=MarketPulseConfig)
    world_events: WorldEventsConfig = Field(default_factory=WorldEventsConfig)
    skills: SkillsConfig = Field(default_factory=SkillsConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and strictly validate YAML config."""
    path = Path(config_path)
    with path.open("r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw)


def _env_int(env: Mapping[str, str], key: str) -> int | None:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _env_bool(env: Mapping[str, str], key: str) -> bool | None:
    raw = env.get(key)
    if raw is None:
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


_INT_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("ECONOMY_INIT_RESERVE", "pool", "initial_reserve"),
    ("ECONOMY_INIT_ARENA", "pool", "initial_arena"),
    ("ECONOMY_FEE_BPS", "pool", "fee_bps"),
    ("ECONOMY_FEE_INSURANCE_BPS", "accounting", "fee_insurance_bps"),
    ("MARKET_PULSE_INTERVAL_MS", "market_pulse", "interval_ms"),
    ("MARKET_PULSE_TRADES_PER_TICK", "market_pulse", "trades_per_tick"),
)

_SPLIT_PARTS = ("town", "ops", "pvp", "insurance")


def apply_env_overrides(config: AppConfig, env: Mapping[str, str] | None = None) -> AppConfig:
    """Apply economy environment overrides in place.

    Unparseable values keep the configured default. Build splits fall back to
    the claim override for any part without its own ECONOMY_BUILD_* key.
    """
    env = os.environ if env is None else env

    for key, section, attr in _INT_OVERRIDES:
        value = _env_int(env, key)
        if value is not None:
            setattr(getattr(config, section), attr, value)

    enabled = _env_bool(env, "MARKET_PULSE_ENABLED")
    if enabled is not None:
        config.market_pulse.enabled = enabled

    for part in _SPLIT_PARTS:
        claim = _env_int(env, f"ECONOMY_CLAIM_{part.upper()}_BPS")
        build = _env_int(env, f"ECONOMY_BUILD_{part.upper()}_BPS")
        if claim is not None:
            setattr(config.accounting.claim_split, f"{part}_bps", claim)
        if build is None:
            build = claim
        if build is not None:
            setattr(config.accounting.build_split, f"{part}_bps", build)

    return config

