"""Persistent economy record types."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SwapSide(str, Enum):
    BUY_ARENA = "BUY_ARENA"
    SELL_ARENA = "SELL_ARENA"


class PlotZone(str, Enum):
    RESIDENTIAL = "RESIDENTIAL"
    COMMERCIAL = "COMMERCIAL"
    CIVIC = "CIVIC"
    INDUSTRIAL = "INDUSTRIAL"
    ENTERTAINMENT = "ENTERTAINMENT"


ZONES: tuple[str, ...] = tuple(zone.value for zone in PlotZone)


class PlotStatus(str, Enum):
    EMPTY = "EMPTY"
    CLAIMED = "CLAIMED"
    UNDER_CONSTRUCTION = "UNDER_CONSTRUCTION"
    BUILT = "BUILT"


class TownStatus(str, Enum):
    BUILDING = "BUILDING"
    COMPLETE = "COMPLETE"


class LedgerType(str, Enum):
    TRADE_FEE_SPLIT = "TRADE_FEE_SPLIT"
    CLAIM_CONTRIBUTION = "CLAIM_CONTRIBUTION"
    BUILD_CONTRIBUTION = "BUILD_CONTRIBUTION"
    BUDGET_PAYOUT = "BUDGET_PAYOUT"


BUDGET_BUCKETS: tuple[str, ...] = ("ops_budget", "pvp_budget", "rescue_budget", "insurance_budget")

BUDGET_ACCOUNTS: dict[str, str] = {
    "ops_budget": "POOL_OPS_BUDGET",
    "pvp_budget": "POOL_PVP_BUDGET",
    "rescue_budget": "POOL_RESCUE_BUDGET",
    "insurance_budget": "POOL_INSURANCE_BUDGET",
}


def spot_price(reserve_balance: int, arena_balance: int) -> float | None:
    """Reserve per ARENA, undefined when the pool holds no ARENA."""
    if arena_balance <= 0:
        return None
    return reserve_balance / arena_balance


@dataclass
class Pool:
    id: int
    reserve_balance: int
    arena_balance: int
    fee_bps: int
    cumulative_fees_reserve: int = 0
    cumulative_fees_arena: int = 0
    ops_budget: int = 0
    pvp_budget: int = 0
    rescue_budget: int = 0
    insurance_budget: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def spot_price(self) -> float | None:
        return spot_price(self.reserve_balance, self.arena_balance)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["spot_price"] = self.spot_price
        return data


@dataclass(frozen=True)
class Swap:
    id: int
    agent_id: str
    side: SwapSide
    amount_in: int
    amount_out: int
    fee_amount: int
    price_before: float | None
    price_after: float | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data


@dataclass
class Agent:
    id: str
    name: str
    archetype: str = "CHAMELEON"
    bankroll: int = 0
    reserve_balance: int = 0
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Town:
    id: str
    name: str
    theme: str = ""
    level: int = 1
    status: TownStatus = TownStatus.BUILDING
    total_invested: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class Plot:
    id: str
    town_id: str
    plot_index: int
    zone: PlotZone
    status: PlotStatus = PlotStatus.EMPTY
    building_type: str | None = None
    build_cost_arena: int = 0
    owner_id: str | None = None
    yield_multiplier: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["zone"] = self.zone.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    pool_id: int | None
    source: str
    destination: str
    amount: int
    type: LedgerType
    agent_id: str | None
    town_id: str | None
    tick: int | None
    metadata: dict[str, Any]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(frozen=True)
class SkillPurchase:
    id: int
    agent_id: str
    town_id: str | None
    skill: str
    price_arena: int
    description: str
    input: dict[str, Any]
    output: dict[str, Any]
    model_used: str
    api_calls: int
    api_cost_cents: float
    response_time_ms: int
    tick: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
