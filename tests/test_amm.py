from __future__ import annotations

import pytest

from town_economy.errors import (
    AgentNotFound,
    InsufficientBalance,
    InvalidAmount,
    SlippageExceeded,
)
from town_economy.market.amm import MAX_AMOUNT, MarketEngine
from town_economy.records import Agent, LedgerType, SwapSide
from town_economy.store import EconomyStore


def _engine(reserve: int = 10_000, arena: int = 10_000, fee_bps: int = 100) -> MarketEngine:
    store = EconomyStore(":memory:")
    engine = MarketEngine(store, initial_reserve=reserve, initial_arena=arena, fee_bps=fee_bps)
    with store.transaction() as tx:
        tx.insert_agent(Agent(id="a1", name="Alice", archetype="SHARK", bankroll=0, reserve_balance=5_000))
        tx.insert_agent(Agent(id="a2", name="Bob", archetype="ROCK", bankroll=2_000, reserve_balance=0))
    return engine


def _agent(engine: MarketEngine, agent_id: str) -> Agent:
    with engine.store.session() as session:
        agent = session.get_agent(agent_id)
    assert agent is not None
    return agent


def test_pool_is_created_lazily_with_clamped_parameters() -> None:
    store = EconomyStore(":memory:")
    engine = MarketEngine(store, initial_reserve=5, initial_arena=MAX_AMOUNT * 2, fee_bps=5_000)
    summary = engine.get_pool_summary()
    assert summary["reserve_balance"] == 1_000
    assert summary["arena_balance"] == MAX_AMOUNT
    assert summary["fee_bps"] == 1_000
    assert engine.get_pool_summary()["id"] == summary["id"]


def test_quote_buy_matches_constant_product() -> None:
    engine = _engine()
    quote = engine.quote("BUY_ARENA", 1_000)
    assert quote.fee_amount == 10
    assert quote.amount_in_after_fee == 990
    assert quote.amount_out == 990 * 10_000 // (10_000 + 990)
    assert quote.price_before == pytest.approx(1.0)
    assert quote.price_after is not None and quote.price_after > quote.price_before


@pytest.mark.parametrize("amount", [0, -5, True, 1.5, "100", MAX_AMOUNT + 1])
def test_quote_rejects_invalid_amounts(amount) -> None:
    engine = _engine()
    with pytest.raises(InvalidAmount):
        engine.quote(SwapSide.BUY_ARENA, amount)


def test_quote_rejects_dust_that_rounds_to_zero_output() -> None:
    engine = _engine(reserve=1_000_000, arena=1_000_000)
    with pytest.raises(InvalidAmount):
        engine.quote(SwapSide.BUY_ARENA, 1)


def test_quote_rejects_unknown_side() -> None:
    engine = _engine()
    with pytest.raises(InvalidAmount):
        engine.quote("HOLD", 100)


def test_buy_moves_price_up_and_sell_moves_it_down() -> None:
    engine = _engine()
    start = engine.spot_price()
    engine.swap("a1", SwapSide.BUY_ARENA, 1_000)
    after_buy = engine.spot_price()
    engine.swap("a2", SwapSide.SELL_ARENA, 1_500)
    after_sell = engine.spot_price()
    assert start is not None and after_buy is not None and after_sell is not None
    assert after_buy > start
    assert after_sell < after_buy


def test_round_trip_is_never_profitable() -> None:
    engine = _engine()
    bought = engine.swap("a1", SwapSide.BUY_ARENA, 2_000)
    sold = engine.swap("a1", SwapSide.SELL_ARENA, bought.swap.amount_out)
    assert sold.swap.amount_out < 2_000
    agent = _agent(engine, "a1")
    assert agent.reserve_balance < 5_000
    assert agent.bankroll == 0


def test_end_to_end_fees_on_million_pool() -> None:
    engine = _engine(reserve=1_000_000, arena=1_000_000, fee_bps=100)

    buy = engine.swap("a1", "BUY_ARENA", 1_000)
    assert buy.swap.fee_amount == 10
    assert buy.swap.amount_out == 989

    sell = engine.swap("a1", "SELL_ARENA", 500)
    assert sell.swap.fee_amount == 5

    pool = engine.get_pool_summary()
    assert pool["cumulative_fees_reserve"] == 10
    assert pool["cumulative_fees_arena"] == 5
    assert pool["reserve_balance"] == 1_000_000 + 990 - sell.swap.amount_out
    assert pool["arena_balance"] == 1_000_000 - 989 + 495

    # ARENA fee splits 70/30 between insurance and ops; reserve fees are not split.
    assert pool["insurance_budget"] == 3
    assert pool["ops_budget"] == 2
    assert pool["insurance_budget"] + pool["ops_budget"] == pool["cumulative_fees_arena"]

    agent = _agent(engine, "a1")
    assert agent.bankroll == 989 - 500
    assert agent.reserve_balance == 5_000 - 1_000 + sell.swap.amount_out


def test_sell_fee_split_writes_ledger_rows() -> None:
    engine = _engine()
    engine.swap("a2", SwapSide.SELL_ARENA, 1_000)
    with engine.store.session() as session:
        rows = session.list_ledger(limit=10)
    assert {row.destination for row in rows} == {"POOL_OPS_BUDGET", "POOL_INSURANCE_BUDGET"}
    assert all(row.type is LedgerType.TRADE_FEE_SPLIT for row in rows)
    assert all(row.source == "AMM_SELL_FEE" and row.agent_id == "a2" for row in rows)
    assert sum(row.amount for row in rows) == 10


def test_buy_writes_no_ledger_rows() -> None:
    engine = _engine()
    engine.swap("a1", SwapSide.BUY_ARENA, 1_000)
    with engine.store.session() as session:
        assert session.list_ledger(limit=10) == []


def test_failed_swap_leaves_state_untouched() -> None:
    engine = _engine()
    before_pool = engine.get_pool_summary()
    before_agent = _agent(engine, "a1")

    with pytest.raises(SlippageExceeded):
        engine.swap("a1", SwapSide.BUY_ARENA, 1_000, min_amount_out=10_000)
    with pytest.raises(InsufficientBalance):
        engine.swap("a1", SwapSide.BUY_ARENA, 6_000)
    with pytest.raises(InsufficientBalance):
        engine.swap("a1", SwapSide.SELL_ARENA, 100)
    with pytest.raises(AgentNotFound):
        engine.swap("ghost", SwapSide.BUY_ARENA, 100)

    after_pool = engine.get_pool_summary()
    for key in ("reserve_balance", "arena_balance", "cumulative_fees_reserve", "cumulative_fees_arena"):
        assert after_pool[key] == before_pool[key]
    assert _agent(engine, "a1") == before_agent
    assert engine.list_recent_swaps() == []


def test_insufficient_balance_carries_details() -> None:
    engine = _engine()
    with pytest.raises(InsufficientBalance) as excinfo:
        engine.swap("a1", SwapSide.BUY_ARENA, 6_000)
    assert excinfo.value.details == {"required": 6_000, "available": 5_000}
    assert excinfo.value.retriable is True


def test_zero_min_amount_out_disables_slippage_check() -> None:
    engine = _engine()
    result = engine.swap("a1", SwapSide.BUY_ARENA, 500, min_amount_out=0)
    assert result.swap.amount_out > 0


def test_pool_balances_stay_non_negative_under_large_sells() -> None:
    engine = _engine(reserve=1_000, arena=1_000, fee_bps=0)
    with engine.store.transaction() as tx:
        tx.adjust_agent_balances("a2", bankroll=1_000_000)
    engine.swap("a2", SwapSide.SELL_ARENA, 1_000_000)
    pool = engine.get_pool_summary()
    assert pool["reserve_balance"] >= 0
    assert pool["arena_balance"] >= 0


def test_recent_swaps_are_newest_first_with_agent_info() -> None:
    engine = _engine()
    engine.swap("a1", SwapSide.BUY_ARENA, 300)
    engine.swap("a2", SwapSide.SELL_ARENA, 300)

    swaps = engine.list_recent_swaps()
    assert [row["agent_id"] for row in swaps] == ["a2", "a1"]
    assert swaps[0]["agent"] == {"id": "a2", "name": "Bob", "archetype": "ROCK"}
    assert swaps[0]["side"] == "SELL_ARENA"

    assert len(engine.list_recent_swaps(limit=0)) == 1
    assert len(engine.list_recent_swaps(limit="bogus")) == 1


def test_fractional_slippage_floor_rounds_up() -> None:
    engine = _engine(reserve=1_000_000, arena=1_000_000)
    with pytest.raises(SlippageExceeded) as excinfo:
        engine.swap("a1", SwapSide.BUY_ARENA, 1_000, min_amount_out=989.5)
    assert excinfo.value.details == {"min_amount_out": 990, "amount_out": 989}

    result = engine.swap("a1", SwapSide.BUY_ARENA, 1_000, min_amount_out=988.2)
    assert result.swap.amount_out == 989


@pytest.mark.parametrize("floor", ["not-a-number", "900", -1, True, float("nan"), float("inf")])
def test_malformed_slippage_floor_is_rejected(floor) -> None:
    engine = _engine()
    with pytest.raises(InvalidAmount):
        engine.swap("a1", SwapSide.BUY_ARENA, 1_000, min_amount_out=floor)
    assert engine.list_recent_swaps() == []
    assert _agent(engine, "a1").reserve_balance == 5_000
