from __future__ import annotations

import asyncio
import random
from typing import Any

from town_economy.market.amm import MarketEngine
from town_economy.market.pulse import MarketPulse, buy_probability, jitter, size_fraction
from town_economy.records import Agent, SwapSide
from town_economy.store import EconomyStore


class FakeClock:
    def __init__(self, now_ms: int = 0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class RecordingLogger:
    def __init__(self) -> None:
        self.entries: list[tuple[str, dict[str, Any]]] = []

    def log(self, event_type: str, data: dict[str, Any]) -> None:
        self.entries.append((event_type, data))


def _pulse(agents: list[Agent], clock: FakeClock, **kwargs: Any) -> MarketPulse:
    store = EconomyStore(":memory:")
    engine = MarketEngine(store, initial_reserve=100_000, initial_arena=100_000, fee_bps=100)
    with store.transaction() as tx:
        for agent in agents:
            tx.insert_agent(agent)
    return MarketPulse(engine, rng=random.Random(7), clock_ms=clock, **kwargs)


def test_archetype_tables_have_fallbacks() -> None:
    assert buy_probability("SHARK", trend=1.0) == 0.35
    assert buy_probability("shark", trend=-1.0) == 0.75
    assert buy_probability("unknown", trend=0.0) == buy_probability("CHAMELEON", trend=0.0)
    assert size_fraction("DEGEN") == 0.06
    assert size_fraction(None) == size_fraction("ROCK")


def test_jitter_stays_within_fifteen_percent() -> None:
    rng = random.Random(3)
    for _ in range(200):
        value = jitter(100.0, rng)
        assert 85.0 <= value <= 115.0


def test_reserve_only_agents_buy_arena() -> None:
    clock = FakeClock(1_000)
    agents = [Agent(id=f"a{i}", name=f"A{i}", archetype="ROCK", reserve_balance=10_000) for i in range(3)]
    pulse = _pulse(agents, clock)

    trades = pulse.tick(trades_per_tick=5)
    assert len(trades) == 3
    assert all(trade.side is SwapSide.BUY_ARENA for trade in trades)
    assert all(trade.amount_in >= pulse.min_trade_in for trade in trades)
    assert len({trade.agent_id for trade in trades}) == 3


def test_cooldown_blocks_repeat_trades_until_elapsed() -> None:
    clock = FakeClock(1_000)
    agents = [Agent(id=f"a{i}", name=f"A{i}", archetype="DEGEN", reserve_balance=20_000) for i in range(2)]
    pulse = _pulse(agents, clock, agent_cooldown_ms=3_500)

    assert len(pulse.tick(trades_per_tick=4)) == 2
    clock.now_ms += 1_000
    assert pulse.tick(trades_per_tick=4) == []
    clock.now_ms += 2_500
    assert len(pulse.tick(trades_per_tick=4)) == 2


def test_trades_per_tick_caps_the_number_of_swaps() -> None:
    clock = FakeClock()
    agents = [Agent(id=f"a{i}", name=f"A{i}", archetype="GRINDER", reserve_balance=10_000) for i in range(5)]
    pulse = _pulse(agents, clock)
    assert len(pulse.tick(trades_per_tick=2)) == 2
    assert pulse.tick(trades_per_tick=0) == []


def test_broke_and_inactive_agents_are_skipped() -> None:
    clock = FakeClock()
    agents = [
        Agent(id="broke", name="Broke", archetype="ROCK", bankroll=10, reserve_balance=50),
        Agent(id="idle", name="Idle", archetype="ROCK", reserve_balance=10_000, is_active=False),
    ]
    pulse = _pulse(agents, clock)
    assert pulse.tick(trades_per_tick=5) == []

    # A skipped agent is not put on cooldown.
    with pulse.engine.store.transaction() as tx:
        tx.adjust_agent_balances("broke", reserve_balance=10_000)
    assert [trade.agent_id for trade in pulse.tick(trades_per_tick=5)] == ["broke"]


def test_pulse_tick_is_logged_only_when_trades_run() -> None:
    clock = FakeClock()
    logger = RecordingLogger()
    pulse = _pulse([Agent(id="a1", name="A1", archetype="SHARK", reserve_balance=10_000)], clock, logger=logger)

    pulse.tick(trades_per_tick=1)
    pulse.tick(trades_per_tick=1)

    pulse_entries = [data for event_type, data in logger.entries if event_type == "pulse_tick"]
    assert len(pulse_entries) == 1
    assert pulse_entries[0]["trades"][0]["agent_id"] == "a1"


def test_start_ticks_immediately_and_stop_cancels() -> None:
    clock = FakeClock()
    pulse = _pulse([Agent(id="a1", name="A1", archetype="ROCK", reserve_balance=10_000)], clock)

    async def scenario() -> tuple[bool, bool, int]:
        pulse.start(interval_ms=1, trades_per_tick=1)
        running = pulse.is_running
        swaps = len(pulse.engine.list_recent_swaps())
        pulse.stop()
        await asyncio.sleep(0)
        return running, pulse.is_running, swaps

    running, still_running, swaps = asyncio.run(scenario())
    assert running is True
    assert still_running is False
    assert swaps == 1


def test_unexpected_tick_failure_is_logged_and_loop_continues() -> None:
    clock = FakeClock()
    logger = RecordingLogger()
    pulse = _pulse([Agent(id="a1", name="A1", archetype="ROCK", reserve_balance=10_000)], clock, logger=logger)

    def explode(trades_per_tick: int | None = None) -> list:
        raise RuntimeError("store went away")

    async def scenario() -> bool:
        pulse.start(interval_ms=250, trades_per_tick=1)
        pulse.tick = explode  # type: ignore[method-assign]
        await asyncio.sleep(0.6)
        running = pulse.is_running
        pulse.stop()
        return running

    assert asyncio.run(scenario()) is True
    failures = [data for event_type, data in logger.entries if event_type == "pulse_tick_failed"]
    assert len(failures) >= 2
    assert failures[0]["error"] == "RuntimeError: store went away"
