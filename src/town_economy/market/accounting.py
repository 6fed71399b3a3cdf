"""Fee and contribution splits plus the append-only economy ledger.

The split helpers are pure integer math. The ledger and budget helpers take an
open ``StoreSession`` and never commit on their own: they join whatever
transaction the caller opened.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ..records import BUDGET_ACCOUNTS, BUDGET_BUCKETS, LedgerType
from ..store import StoreSession

BPS_DENOMINATOR = 10_000
DEFAULT_SPLIT_BPS = (5000, 2500, 1500, 1000)
AGENT_BANKROLL = "AGENT_BANKROLL"


def normalize_bps(raw: Any) -> int:
    """Clamp to [0, 10000]; non-numeric input collapses to 0."""
    try:
        value = int(raw)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(BPS_DENOMINATOR, value))


@dataclass(frozen=True)
class SplitBps:
    town: int
    ops: int
    pvp: int
    insurance: int

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.town, self.ops, self.pvp, self.insurance)


def normalize_split_bps(town: Any, ops: Any, pvp: Any, insurance: Any) -> SplitBps:
    """Rescale four basis-point weights so they sum to exactly 10000."""
    parts = [normalize_bps(town), normalize_bps(ops), normalize_bps(pvp), normalize_bps(insurance)]
    total = sum(parts)
    if total == BPS_DENOMINATOR:
        return SplitBps(*parts)
    if total <= 0:
        return SplitBps(*DEFAULT_SPLIT_BPS)
    a, b, c = (p * BPS_DENOMINATOR // total for p in parts[:3])
    return SplitBps(a, b, c, BPS_DENOMINATOR - (a + b + c))


@dataclass(frozen=True)
class ContributionSplit:
    town_invested: int
    ops_budget: int
    pvp_budget: int
    insurance_budget: int

    @property
    def total(self) -> int:
        return self.town_invested + self.ops_budget + self.pvp_budget + self.insurance_budget

    def budgets(self) -> dict[str, int]:
        return {
            "ops_budget": self.ops_budget,
            "pvp_budget": self.pvp_budget,
            "insurance_budget": self.insurance_budget,
        }


@dataclass(frozen=True)
class FeeSplit:
    insurance_budget: int
    ops_budget: int

    def budgets(self) -> dict[str, int]:
        return {"ops_budget": self.ops_budget, "insurance_budget": self.insurance_budget}


def _split_contribution(amount: Any, split: SplitBps) -> ContributionSplit:
    total = max(0, int(amount))
    town = total * split.town // BPS_DENOMINATOR
    ops = total * split.ops // BPS_DENOMINATOR
    pvp = total * split.pvp // BPS_DENOMINATOR
    return ContributionSplit(
        town_invested=town,
        ops_budget=ops,
        pvp_budget=pvp,
        insurance_budget=max(0, total - (town + ops + pvp)),
    )


def split_claim_contribution(amount: Any, split: SplitBps) -> ContributionSplit:
    return _split_contribution(amount, split)


def split_build_contribution(amount: Any, split: SplitBps) -> ContributionSplit:
    return _split_contribution(amount, split)


def split_arena_fee_to_budgets(fee: Any, insurance_bps: Any) -> FeeSplit:
    amount = max(0, int(fee))
    insurance = amount * normalize_bps(insurance_bps) // BPS_DENOMINATOR
    return FeeSplit(insurance_budget=insurance, ops_budget=max(0, amount - insurance))


@dataclass
class LedgerContext:
    type: LedgerType
    agent_id: str | None = None
    town_id: str | None = None
    tick: int | None = None
    source: str = "SYSTEM"
    metadata: dict[str, Any] | None = None


def append_ledger(session: StoreSession, entries: list[dict[str, Any]]) -> int:
    """Insert ledger rows with positive amounts; returns how many were written."""
    rows: list[dict[str, Any]] = []
    for entry in entries:
        amount = max(0, int(entry.get("amount", 0)))
        if amount <= 0:
            continue
        tick = entry.get("tick")
        rows.append(
            {
                "pool_id": entry.get("pool_id"),
                "source": entry["source"],
                "destination": entry["destination"],
                "amount": amount,
                "type": entry["type"],
                "agent_id": entry.get("agent_id") or None,
                "town_id": entry.get("town_id") or None,
                "tick": int(tick) if isinstance(tick, int) else None,
                "metadata": json.dumps(entry.get("metadata") or {}, sort_keys=True, default=str),
            }
        )
    if rows:
        session.insert_ledger_rows(rows)
    return len(rows)


def credit_pool_budgets(
    session: StoreSession,
    pool_id: int,
    split: dict[str, int],
    ctx: LedgerContext,
) -> dict[str, int]:
    """Add each positive bucket amount to the pool and record one ledger row per bucket."""
    unknown = set(split) - set(BUDGET_BUCKETS)
    if unknown:
        raise KeyError(f"unknown budget buckets: {sorted(unknown)}")
    credits = {bucket: max(0, int(split.get(bucket, 0))) for bucket in BUDGET_BUCKETS}
    credits = {bucket: amount for bucket, amount in credits.items() if amount > 0}
    if not credits:
        return {}

    session.increment_pool(pool_id, **credits)
    append_ledger(
        session,
        [
            {
                "pool_id": pool_id,
                "source": ctx.source,
                "destination": BUDGET_ACCOUNTS[bucket],
                "amount": amount,
                "type": ctx.type,
                "agent_id": ctx.agent_id,
                "town_id": ctx.town_id,
                "tick": ctx.tick,
                "metadata": ctx.metadata,
            }
            for bucket, amount in credits.items()
        ],
    )
    return credits


def debit_pool_budget(
    session: StoreSession,
    pool_id: int,
    bucket: str,
    amount: Any,
    ctx: LedgerContext,
    *,
    allow_partial: bool = False,
    minimum_payout: int = 0,
) -> int:
    """Pay out of one budget bucket toward an agent bankroll.

    Returns the amount debited, or 0 when the bucket cannot cover the request
    (or the partial payout would fall below ``minimum_payout``). Crediting the
    agent is the caller's job; this only moves the budget and writes the row.
    """
    if bucket not in BUDGET_ACCOUNTS:
        raise KeyError(f"unknown budget bucket: {bucket}")
    requested = max(0, int(amount))
    if requested <= 0:
        return 0
    pool = session.get_pool(pool_id)
    if pool is None:
        return 0
    available = max(0, int(getattr(pool, bucket)))
    if available <= 0:
        return 0

    debit = min(requested, available) if allow_partial else requested
    if debit > available or debit < max(0, int(minimum_payout)):
        return 0

    session.increment_pool(pool_id, **{bucket: -debit})
    append_ledger(
        session,
        [
            {
                "pool_id": pool_id,
                "source": BUDGET_ACCOUNTS[bucket],
                "destination": AGENT_BANKROLL,
                "amount": debit,
                "type": ctx.type,
                "agent_id": ctx.agent_id,
                "town_id": ctx.town_id,
                "tick": ctx.tick,
                "metadata": ctx.metadata,
            }
        ],
    )
    return debit
