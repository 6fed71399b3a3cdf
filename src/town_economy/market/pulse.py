"""Archetype-driven background trading that keeps the market moving.

This is a microstructure layer, not a profit maximizer: small reflex trades
sized as a fraction of balance, with a per-agent cooldown so nobody is drained
in a handful of ticks.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import EconomyError
from ..records import SwapSide
from .amm import MarketEngine, clamp_int

MIN_INTERVAL_MS = 250
MAX_INTERVAL_MS = 30_000
MAX_TRADES_PER_TICK = 25

_BUY_PROBABILITY: dict[str, tuple[float, float]] = {
    # (price trending up, otherwise)
    "SHARK": (0.35, 0.75),
    "DEGEN": (0.72, 0.62),
    "GRINDER": (0.55, 0.55),
    "ROCK": (0.5, 0.5),
    "CHAMELEON": (0.62, 0.45),
}

_SIZE_FRACTION: dict[str, float] = {
    "DEGEN": 0.06,
    "SHARK": 0.045,
    "CHAMELEON": 0.035,
    "GRINDER": 0.02,
    "ROCK": 0.012,
}


def buy_probability(archetype: str | None, trend: float) -> float:
    up, other = _BUY_PROBABILITY.get(str(archetype or "").upper(), _BUY_PROBABILITY["CHAMELEON"])
    return up if trend > 0 else other


def size_fraction(archetype: str | None) -> float:
    return _SIZE_FRACTION.get(str(archetype or "").upper(), _SIZE_FRACTION["ROCK"])


def jitter(value: float, rng: random.Random) -> float:
    return value * (0.85 + rng.random() * 0.3)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PulseTrade:
    agent_id: str
    archetype: str
    side: SwapSide
    amount_in: int
    amount_out: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "archetype": self.archetype,
            "side": self.side.value,
            "amount_in": self.amount_in,
            "amount_out": self.amount_out,
        }


class MarketPulse:
    """Periodic heuristic swaps on behalf of active agents."""

    def __init__(
        self,
        engine: MarketEngine,
        *,
        interval_ms: int = 1200,
        trades_per_tick: int = 2,
        min_trade_in: int = 120,
        max_trade_in: int = 6000,
        agent_cooldown_ms: int = 3500,
        rng: random.Random | None = None,
        clock_ms: Callable[[], int] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.engine = engine
        self.interval_ms = interval_ms
        self.trades_per_tick = trades_per_tick
        self.min_trade_in = min_trade_in
        self.max_trade_in = max_trade_in
        self.agent_cooldown_ms = agent_cooldown_ms
        self.rng = rng or random.Random()
        self.clock_ms = clock_ms or _now_ms
        self.logger = logger

        self.last_spot_price: float | None = None
        self._last_trade_at: dict[str, int] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _choose_side(self, archetype: str, reserve: int, bankroll: int, spot: float, trend: float) -> SwapSide | None:
        has_reserve = reserve >= self.min_trade_in
        has_arena = bankroll >= self.min_trade_in
        if not has_reserve and not has_arena:
            return None
        if has_reserve and not has_arena:
            return SwapSide.BUY_ARENA
        if has_arena and not has_reserve:
            return SwapSide.SELL_ARENA

        # Keep some of each asset around.
        arena_value = bankroll * spot
        total_value = reserve + arena_value
        arena_share = arena_value / total_value if total_value > 0 else 0.5

        p_buy = buy_probability(archetype, trend)
        if arena_share < 0.2:
            p_buy = min(0.9, p_buy + 0.25)
        if arena_share > 0.8:
            p_buy = max(0.1, p_buy - 0.25)
        return SwapSide.BUY_ARENA if self.rng.random() < p_buy else SwapSide.SELL_ARENA

    def tick(self, trades_per_tick: int | None = None) -> list[PulseTrade]:
        trades = self.trades_per_tick if trades_per_tick is None else trades_per_tick
        if trades <= 0:
            return []

        now = self.clock_ms()
        spot = self.engine.spot_price() or 1.0
        trend = spot - self.last_spot_price if self.last_spot_price is not None else 0.0
        self.last_spot_price = spot

        with self.engine.store.session() as session:
            agents = session.list_agents(active_only=True)
        eligible = [
            agent
            for agent in agents
            if agent.id not in self._last_trade_at or now - self._last_trade_at[agent.id] >= self.agent_cooldown_ms
        ]

        executed: list[PulseTrade] = []
        for _ in range(min(trades, len(eligible))):
            agent = eligible.pop(self.rng.randrange(len(eligible)))
            side = self._choose_side(agent.archetype, agent.reserve_balance, agent.bankroll, spot, trend)
            if side is None:
                continue

            balance = agent.reserve_balance if side is SwapSide.BUY_ARENA else agent.bankroll
            frac = jitter(size_fraction(agent.archetype), self.rng)
            amount_in = clamp_int(int(balance * frac), self.min_trade_in, min(self.max_trade_in, balance))
            if amount_in < self.min_trade_in:
                continue

            try:
                result = self.engine.swap(agent.id, side, amount_in)
            except EconomyError:
                continue
            self._last_trade_at[agent.id] = now
            executed.append(
                PulseTrade(
                    agent_id=agent.id,
                    archetype=agent.archetype,
                    side=side,
                    amount_in=amount_in,
                    amount_out=result.swap.amount_out,
                )
            )

        if self.logger is not None and executed:
            self.logger.log(
                "pulse_tick",
                {
                    "spot_price": spot,
                    "trend": trend,
                    "trades": [trade.to_dict() for trade in executed],
                },
            )
        return executed

    async def _run(self, interval_ms: int, trades: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                self.tick(trades)
            except Exception as exc:
                if self.logger is not None:
                    self.logger.log("pulse_tick_failed", {"error": f"{type(exc).__name__}: {exc}"})

    def start(self, interval_ms: int | None = None, trades_per_tick: int | None = None) -> None:
        """Tick once now, then every interval on the running event loop."""
        interval = clamp_int(self.interval_ms if interval_ms is None else interval_ms, MIN_INTERVAL_MS, MAX_INTERVAL_MS)
        trades = clamp_int(
            self.trades_per_tick if trades_per_tick is None else trades_per_tick, 0, MAX_TRADES_PER_TICK
        )
        loop = asyncio.get_running_loop()
        self.stop()
        self.tick(trades)
        self._task = loop.create_task(self._run(interval, trades))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None
