from __future__ import annotations

import asyncio
import json

import pytest

from town_economy.cli import _effective_ticks, _load_runtime_config
from town_economy.config import AppConfig
from town_economy.errors import InsufficientBalance, PlotUnavailable
from town_economy.records import PlotStatus, TownStatus
from town_economy.simulation import SimulationRunner
from town_economy.skills.broker import BuySkillRequest
from town_economy.world import World
from town_economy.world.actions import BuySkillIntent
from town_economy.world.events import EventTemplate, EventType


def _make_config(tmp_path) -> AppConfig:
    cfg = AppConfig()
    cfg.principals.count = 2
    cfg.principals.starting_bankroll = 500
    cfg.principals.starting_reserve = 2000

    cfg.simulation.tick_interval_seconds = 0.0
    cfg.simulation.max_runtime_seconds = 10
    cfg.simulation.summary_interval_ticks = 2
    cfg.simulation.seed = 5

    cfg.llm.enabled = False
    cfg.logging.logs_dir = str(tmp_path / "logs")
    return cfg


def _bankroll(world: World, agent_id: str) -> int:
    with world.store.session() as session:
        agent = session.get_agent(agent_id)
    assert agent is not None
    return agent.bankroll


def test_world_bootstraps_agents_and_towns(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_bootstrap")
    assert world.agent_ids == ["agent_1", "agent_2"]

    with world.store.session() as session:
        town = session.get_town("town_1")
        plots = session.list_plots(town_id="town_1")
    assert town is not None and town.total_invested == 3 * 40
    assert len(plots) == 10
    assert [p.status for p in plots[:4]] == [PlotStatus.BUILT] * 3 + [PlotStatus.EMPTY]

    events = world.logger.read_recent(10)
    assert events[0]["event_type"] == "world_initialized"
    assert (tmp_path / "logs" / "latest").is_symlink()


def test_world_swap_query_and_error_actions(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_actions")

    bought = world.execute_action_data("agent_1", {"action_type": "buy_arena", "amount_in": 500})
    assert bought.success, bought.message
    assert bought.data is not None
    assert bought.data["agent"]["reserve_balance"] == 1500

    pool = world.execute_action_data("agent_1", {"action_type": "query_economy", "query_type": "pool"})
    assert pool.success
    assert pool.data is not None and pool.data["result"]["reserve_balance"] == 10_500

    too_big = world.execute_action_data("agent_2", {"action_type": "sell_arena", "amount_in": 10_000})
    assert not too_big.success
    assert too_big.error_code == "insufficient_balance"
    assert too_big.retriable is True

    invalid = world.execute_action_data("agent_2", {"action_type": "dance"})
    assert invalid.error_code == "invalid_action"

    actions = world.logger.read_recent(50, event_type="action")
    assert len(actions) == 4
    assert actions[0]["bankroll_after"] == _bankroll(world, "agent_1")


def test_claim_and_complete_split_contributions(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_plots")

    claimed = world.claim_plot("town_1_plot_5", "agent_1", 20)
    assert claimed["town_invested"] == 10
    assert claimed["budgets"] == {"ops_budget": 5, "pvp_budget": 3, "insurance_budget": 2}

    with pytest.raises(PlotUnavailable):
        world.claim_plot("town_1_plot_5", "agent_2", 20)
    with pytest.raises(PlotUnavailable):
        world.complete_plot("town_1_plot_5", "agent_2", 40)

    completed = world.complete_plot("town_1_plot_5", "agent_1", 40, building_type="bakery")
    assert completed["plot"]["building_type"] == "bakery"
    assert completed["bounty"] is None and completed["gold_rush"] is None

    pool = world.engine.get_pool_summary()
    assert (pool["ops_budget"], pool["pvp_budget"], pool["insurance_budget"]) == (15, 9, 6)
    assert _bankroll(world, "agent_1") == 500 - 20 - 40
    with world.store.session() as session:
        town = session.get_town("town_1")
        plot = session.get_plot("town_1_plot_5")
    assert town is not None and town.total_invested == 120 + 10 + 20
    assert town.status is TownStatus.BUILDING
    assert plot is not None and plot.status is PlotStatus.BUILT and plot.owner_id == "agent_1"


def test_claim_requires_bankroll(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_claim_broke")
    with pytest.raises(InsufficientBalance):
        world.claim_plot("town_1_plot_6", "agent_1", 501)
    with world.store.session() as session:
        plot = session.get_plot("town_1_plot_6")
    assert plot is not None and plot.status is PlotStatus.EMPTY
    assert world.engine.get_pool_summary()["ops_budget"] == 0


def test_last_build_completes_the_town(tmp_path) -> None:
    cfg = _make_config(tmp_path)
    cfg.towns.plots_per_town = 2
    cfg.towns.built_plots = 1
    world = World(cfg, run_id="test_town_complete")

    world.claim_plot("town_1_plot_1", "agent_2", 10)
    result = world.complete_plot("town_1_plot_1", "agent_2", 20)
    assert result["town"] is not None
    with world.store.session() as session:
        town = session.get_town("town_1")
    assert town is not None and town.status is TownStatus.COMPLETE


def test_pay_from_budget_full_refused_and_partial(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_payout")
    world.claim_plot("town_1_plot_5", "agent_1", 20)

    assert world.pay_from_budget("agent_2", "ops_budget", 3, reason="upkeep refund") == 3
    assert world.pay_from_budget("agent_2", "ops_budget", 5) == 0
    assert world.pay_from_budget("agent_2", "ops_budget", 5, allow_partial=True) == 2
    assert _bankroll(world, "agent_2") == 505
    assert world.engine.get_pool_summary()["ops_budget"] == 0

    payouts = world.logger.read_recent(10, event_type="budget_payout")
    assert [entry["paid"] for entry in payouts] == [3, 0, 2]


def _force_event(monkeypatch: pytest.MonkeyPatch, world: World, kind: EventType) -> None:
    world.config.world_events.event_chance = 1.0
    world.events.event_chance = 1.0
    monkeypatch.setattr(world.events, "_pick_template", lambda tick: EventTemplate(kind, 1, 0, True))
    for _ in range(5):
        world.advance_tick()


def test_completing_in_bounty_town_pays_bonus_once(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    world = World(_make_config(tmp_path), run_id="test_bounty")
    _force_event(monkeypatch, world, EventType.BOUNTY)
    assert world.events.get_active_bounty() is not None

    world.claim_plot("town_1_plot_5", "agent_1", 20)
    result = world.complete_plot("town_1_plot_5", "agent_1", 40)
    assert result["bounty"] is not None and result["bounty"]["bonus"] == 50
    assert _bankroll(world, "agent_1") == 500 - 20 - 40 + 50
    assert world.events.get_active_bounty() is None

    world.claim_plot("town_1_plot_6", "agent_1", 20)
    assert world.complete_plot("town_1_plot_6", "agent_1", 40)["bounty"] is None


def test_gold_rush_doubles_yield_for_matching_zone(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    world = World(_make_config(tmp_path), run_id="test_gold_rush")
    _force_event(monkeypatch, world, EventType.GOLD_RUSH)
    rush = world.events.get_gold_rush_zone()
    assert rush is not None

    with world.store.session() as session:
        target = next(
            plot
            for plot in session.list_plots(town_id="town_1")
            if plot.status is PlotStatus.EMPTY and plot.zone.value == rush["zone"]
        )
    world.claim_plot(target.id, "agent_2", 20)
    result = world.complete_plot(target.id, "agent_2", 40)
    assert result["gold_rush"] is not None
    assert result["plot"]["yield_multiplier"] == 2.0
    assert world.events.get_gold_rush_zone() is None


def test_state_summary_and_snapshot(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_summary")
    world.execute_action_data("agent_1", {"action_type": "buy_arena", "amount_in": 300})
    world.drain_activity()

    summary = world.get_state_summary()
    assert summary["tick"] == 0
    assert len(summary["recent_swaps"]) == 1
    assert summary["recent_activity"][0]["message"]["kind"] == "swap"

    snapshot = world.log_summary_snapshot()
    assert snapshot.swap_count == 1
    assert snapshot.agent_count == 2
    lines = world.logger.summary_path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["swap_count"] == 1


def test_runner_advances_ticks_and_logs(tmp_path) -> None:
    cfg = _make_config(tmp_path)
    cfg.market_pulse.interval_ms = 250
    world = World(cfg, run_id="test_runner")
    runner = SimulationRunner(world)

    asyncio.run(runner.run(ticks=5))

    assert world.current_tick == 5
    assert not runner.is_running
    assert not world.pulse.is_running

    event_types = {entry.get("event_type") for entry in world.logger.read_recent(500)}
    assert {"simulation_started", "simulation_stopped", "tick", "activity"} <= event_types

    summaries = world.logger.summary_path.read_text(encoding="utf-8").splitlines()
    assert len(summaries) == 3

    status = runner.get_status()
    assert status.tick == 5 and status.summary["ticks_run"] == 5


def test_runner_without_pulse_or_events(tmp_path) -> None:
    cfg = _make_config(tmp_path)
    cfg.market_pulse.enabled = False
    cfg.world_events.enabled = False
    world = World(cfg, run_id="test_quiet_runner")

    asyncio.run(SimulationRunner(world).run(ticks=3))

    assert world.current_tick == 3
    assert world.engine.list_recent_swaps() == []
    assert world.events.get_active_events() == []


def test_cli_runtime_config_overrides(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = tmp_path / "config.yaml"
    cfg.write_text("simulation:\n  default_ticks: 7\n", encoding="utf-8")
    monkeypatch.setenv("ECONOMY_FEE_BPS", "250")

    config = _load_runtime_config(str(cfg), 3, 42)
    assert config.principals.count == 3
    assert config.simulation.seed == 42
    assert config.pool.fee_bps == 250
    assert _effective_ticks(config, None) == 7
    assert _effective_ticks(config, 2) == 2

    with pytest.raises(ValueError):
        _load_runtime_config(str(cfg), 0, None)
    with pytest.raises(ValueError):
        _effective_ticks(config, 0)


def test_file_store_carries_state_across_worlds(tmp_path) -> None:
    cfg = _make_config(tmp_path)
    cfg.store.database_path = str(tmp_path / "economy.db")

    first = World(cfg, run_id="first_run")
    bought = first.execute_action_data("agent_1", {"action_type": "buy_arena", "amount_in": 500})
    assert bought.success, bought.message
    first.claim_plot("town_1_plot_5", "agent_1", 20)
    pool_before = first.engine.get_pool_summary()
    bankroll_before = _bankroll(first, "agent_1")

    second = World(cfg, run_id="second_run")
    assert second.agent_ids == ["agent_1", "agent_2"]
    assert _bankroll(second, "agent_1") == bankroll_before
    pool_after = second.engine.get_pool_summary()
    assert pool_after["id"] == pool_before["id"]
    assert pool_after["reserve_balance"] == 10_500
    assert pool_after["ops_budget"] == pool_before["ops_budget"] == 5
    with second.store.session() as session:
        plots = session.list_plots(town_id="town_1")
        town = session.get_town("town_1")
    assert len(plots) == 10
    assert town is not None and town.total_invested == 120 + 10
    assert second.logger.read_recent(1, event_type="world_initialized")[0]["resumed"] is True


def test_buy_skill_intent_without_request_fails_cleanly(tmp_path) -> None:
    world = World(_make_config(tmp_path), run_id="test_empty_skill")
    intent = BuySkillIntent("agent_1", BuySkillRequest.from_dict({"skill": "SCOUT_REPORT"}))
    intent.request = None

    result = world.execute_intent(intent)
    assert not result.success
    assert result.error_code == "invalid_action"
    assert world.logger.read_recent(1, event_type="action")[0]["result"]["success"] is False
