"""Constant-product market between the reserve asset and ARENA.

Fees are taken from the input side before pricing and routed to the pool's
cumulative fee counters rather than left in the reserves. ARENA-side fees are
further split into the insurance and ops budgets.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from ..errors import AgentNotFound, InsufficientBalance, InsufficientLiquidity, InvalidAmount, SlippageExceeded
from ..records import Agent, LedgerType, Pool, Swap, SwapSide, spot_price
from ..store import EconomyStore, StoreSession
from .accounting import append_ledger, split_arena_fee_to_budgets

MAX_AMOUNT = 2_000_000_000
MIN_INITIAL_BALANCE = 1_000
MAX_FEE_BPS = 1_000
SWAP_LIMIT_MAX = 200


def clamp_int(value: Any, lo: int, hi: int) -> int:
    """Truncate toward zero and clamp; non-finite or non-numeric input becomes ``lo``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return lo
    if not math.isfinite(number):
        return lo
    return max(lo, min(hi, int(number)))


def _parse_side(side: SwapSide | str) -> SwapSide:
    try:
        return SwapSide(side)
    except ValueError as exc:
        raise InvalidAmount(f"unknown swap side: {side}") from exc


def _parse_min_amount_out(value: Any) -> int:
    """Slippage floor as a whole-unit minimum; fractional floors round up."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidAmount("min_amount_out must be a non-negative number", details={"min_amount_out": value})
    if not math.isfinite(value) or value < 0:
        raise InvalidAmount("min_amount_out must be a non-negative number", details={"min_amount_out": value})
    return math.ceil(value)


@dataclass(frozen=True)
class Quote:
    side: SwapSide
    amount_in: int
    amount_in_after_fee: int
    amount_out: int
    fee_amount: int
    price_before: float | None
    price_after: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "amount_in": self.amount_in,
            "amount_in_after_fee": self.amount_in_after_fee,
            "amount_out": self.amount_out,
            "fee_amount": self.fee_amount,
            "price_before": self.price_before,
            "price_after": self.price_after,
        }


@dataclass(frozen=True)
class SwapResult:
    pool: Pool
    swap: Swap
    agent: Agent

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool": self.pool.to_dict(),
            "swap": self.swap.to_dict(),
            "agent": {
                "id": self.agent.id,
                "bankroll": self.agent.bankroll,
                "reserve_balance": self.agent.reserve_balance,
            },
        }


def quote_against(pool: Pool, side: SwapSide | str, amount_in: Any) -> Quote:
    """Price a swap against a pool snapshot without touching storage."""
    side = _parse_side(side)
    if isinstance(amount_in, bool) or not isinstance(amount_in, int):
        raise InvalidAmount("amount_in must be an integer")
    if amount_in <= 0 or amount_in > MAX_AMOUNT:
        raise InvalidAmount(f"amount_in must be in (0, {MAX_AMOUNT}]")

    fee = amount_in * pool.fee_bps // 10_000
    after_fee = amount_in - fee
    if after_fee <= 0:
        raise InvalidAmount("amount_in too small for current fee")

    if side is SwapSide.BUY_ARENA:
        out = after_fee * pool.arena_balance // (pool.reserve_balance + after_fee)
        next_reserve = pool.reserve_balance + after_fee
        next_arena = pool.arena_balance - out
    else:
        out = after_fee * pool.reserve_balance // (pool.arena_balance + after_fee)
        next_arena = pool.arena_balance + after_fee
        next_reserve = pool.reserve_balance - out

    if out <= 0:
        raise InvalidAmount("amount_out would be 0; increase amount_in")
    if next_reserve < 0 or next_arena < 0:
        raise InsufficientLiquidity("insufficient pool liquidity")

    return Quote(
        side=side,
        amount_in=amount_in,
        amount_in_after_fee=after_fee,
        amount_out=out,
        fee_amount=fee,
        price_before=pool.spot_price,
        price_after=spot_price(next_reserve, next_arena),
    )


class MarketEngine:
    """Reserve/ARENA swaps against the single active pool."""

    def __init__(
        self,
        store: EconomyStore,
        *,
        initial_reserve: int = 10_000,
        initial_arena: int = 10_000,
        fee_bps: int = 100,
        fee_insurance_bps: int = 7_000,
        logger: Any | None = None,
        channel: Any | None = None,
    ) -> None:
        self.store = store
        self.initial_reserve = clamp_int(initial_reserve, MIN_INITIAL_BALANCE, MAX_AMOUNT)
        self.initial_arena = clamp_int(initial_arena, MIN_INITIAL_BALANCE, MAX_AMOUNT)
        self.fee_bps = clamp_int(fee_bps, 0, MAX_FEE_BPS)
        self.fee_insurance_bps = fee_insurance_bps
        self.logger = logger
        self.channel = channel

    def get_or_create_pool(self, session: StoreSession) -> Pool:
        pool = session.latest_pool()
        if pool is not None:
            return pool
        return session.create_pool(
            reserve_balance=self.initial_reserve,
            arena_balance=self.initial_arena,
            fee_bps=self.fee_bps,
        )

    def _pool(self) -> Pool:
        with self.store.transaction() as tx:
            return self.get_or_create_pool(tx)

    def get_pool_summary(self) -> dict[str, Any]:
        return self._pool().to_dict()

    def spot_price(self) -> float | None:
        return self._pool().spot_price

    def quote(self, side: SwapSide | str, amount_in: Any) -> Quote:
        return quote_against(self._pool(), side, amount_in)

    def swap(
        self,
        agent_id: str,
        side: SwapSide | str,
        amount_in: Any,
        min_amount_out: Any = None,
    ) -> SwapResult:
        side = _parse_side(side)
        minimum = _parse_min_amount_out(min_amount_out)
        with self.store.transaction() as tx:
            pool = self.get_or_create_pool(tx)
            agent = tx.get_agent(agent_id)
            if agent is None:
                raise AgentNotFound(f"agent '{agent_id}' not found")

            q = quote_against(pool, side, amount_in)
            held = agent.reserve_balance if side is SwapSide.BUY_ARENA else agent.bankroll
            if held < q.amount_in:
                asset = "reserve" if side is SwapSide.BUY_ARENA else "$ARENA"
                raise InsufficientBalance(
                    f"Insufficient {asset} balance",
                    details={"required": q.amount_in, "available": held},
                )

            if minimum > 0 and q.amount_out < minimum:
                raise SlippageExceeded(
                    f"Slippage: expected >= {minimum}, got {q.amount_out}",
                    details={"min_amount_out": minimum, "amount_out": q.amount_out},
                )

            if side is SwapSide.BUY_ARENA:
                updated_pool = tx.increment_pool(
                    pool.id,
                    reserve_balance=q.amount_in_after_fee,
                    arena_balance=-q.amount_out,
                    cumulative_fees_reserve=q.fee_amount,
                )
                agent = tx.adjust_agent_balances(agent_id, reserve_balance=-q.amount_in, bankroll=q.amount_out)
            else:
                fee_split = split_arena_fee_to_budgets(q.fee_amount, self.fee_insurance_bps)
                updated_pool = tx.increment_pool(
                    pool.id,
                    arena_balance=q.amount_in_after_fee,
                    reserve_balance=-q.amount_out,
                    cumulative_fees_arena=q.fee_amount,
                    ops_budget=fee_split.ops_budget,
                    insurance_budget=fee_split.insurance_budget,
                )
                append_ledger(
                    tx,
                    [
                        {
                            "pool_id": pool.id,
                            "source": "AMM_SELL_FEE",
                            "destination": destination,
                            "amount": amount,
                            "type": LedgerType.TRADE_FEE_SPLIT,
                            "agent_id": agent_id,
                            "metadata": {
                                "side": side.value,
                                "amount_in": q.amount_in,
                                "fee_amount": q.fee_amount,
                                "to": bucket,
                            },
                        }
                        for bucket, destination, amount in (
                            ("ops_budget", "POOL_OPS_BUDGET", fee_split.ops_budget),
                            ("insurance_budget", "POOL_INSURANCE_BUDGET", fee_split.insurance_budget),
                        )
                    ],
                )
                agent = tx.adjust_agent_balances(agent_id, bankroll=-q.amount_in, reserve_balance=q.amount_out)

            swap = tx.insert_swap(
                agent_id=agent_id,
                side=side,
                amount_in=q.amount_in,
                amount_out=q.amount_out,
                fee_amount=q.fee_amount,
                price_before=q.price_before,
                price_after=q.price_after,
            )

        result = SwapResult(pool=updated_pool, swap=swap, agent=agent)
        if self.logger is not None:
            self.logger.log(
                "swap",
                {
                    "agent_id": agent_id,
                    **q.to_dict(),
                    "swap_id": swap.id,
                    "reserve_balance": updated_pool.reserve_balance,
                    "arena_balance": updated_pool.arena_balance,
                },
            )
        if self.channel is not None:
            self.channel.publish(
                "swap",
                {
                    "agent_id": agent_id,
                    "side": side.value,
                    "amount_in": q.amount_in,
                    "amount_out": q.amount_out,
                    "price_after": q.price_after,
                },
            )
        return result

    def list_recent_swaps(self, limit: Any = 30) -> list[dict[str, Any]]:
        bounded = clamp_int(limit, 1, SWAP_LIMIT_MAX)
        with self.store.session() as session:
            swaps = session.list_swaps(bounded)
            agents: dict[str, Agent | None] = {}
            rows: list[dict[str, Any]] = []
            for swap in swaps:
                if swap.agent_id not in agents:
                    agents[swap.agent_id] = session.get_agent(swap.agent_id)
                agent = agents[swap.agent_id]
                row = swap.to_dict()
                row["agent"] = (
                    {"id": agent.id, "name": agent.name, "archetype": agent.archetype} if agent is not None else None
                )
                rows.append(row)
        return rows
