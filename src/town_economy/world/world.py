"""World orchestration for the town economy."""

from __future__ import annotations

import json
import random
from datetime import datetime, timezone
from typing import Any, Callable

from ..config import AppConfig, SplitConfig
from ..errors import AgentNotFound, InsufficientBalance, InvalidAmount, PlotUnavailable
from ..market.accounting import (
    AGENT_BANKROLL,
    LedgerContext,
    SplitBps,
    credit_pool_budgets,
    debit_pool_budget,
    normalize_split_bps,
    split_build_contribution,
    split_claim_contribution,
)
from ..market.amm import MAX_AMOUNT, MarketEngine
from ..market.pulse import MarketPulse
from ..records import ZONES, Agent, LedgerType, Plot, PlotStatus, PlotZone, Town, TownStatus
from ..skills.broker import SkillBroker, SkillPurchaseContext
from ..skills.inference import InferenceClient, LiteLLMInference
from ..store import EconomyStore, StoreSession
from .action_executor import ActionExecutor
from .actions import ActionIntent, ActionResult, parse_intent_from_json
from .channel import EventChannel
from .events import WorldEvent, WorldEventGenerator
from .logger import EventLogger, SummarySnapshot
from .queries import EconomyQueryHandler


def _split_from_config(cfg: SplitConfig) -> SplitBps:
    return normalize_split_bps(cfg.town_bps, cfg.ops_bps, cfg.pvp_bps, cfg.insurance_bps)


def _positive_amount(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0 or value > MAX_AMOUNT:
        raise InvalidAmount(f"{label} must be a positive integer", details={label: value})
    return value


class World:
    """Economy runtime state and action execution orchestration."""

    def __init__(
        self,
        config: AppConfig,
        run_id: str | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], int] | None = None,
        inference: InferenceClient | None = None,
    ) -> None:
        self.config = config
        self.run_id = run_id or datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S")
        self.current_tick = 0
        self.rng = rng or random.Random(config.simulation.seed)

        self.logger = EventLogger(
            logs_dir=config.logging.logs_dir,
            run_id=self.run_id,
            event_file_name=config.logging.event_file_name,
            summary_file_name=config.logging.summary_file_name,
        )
        self.channel = EventChannel(maxlen=config.logging.channel_maxlen)
        self.store = EconomyStore(config.store.database_path)

        self.claim_split = _split_from_config(config.accounting.claim_split)
        self.build_split = _split_from_config(config.accounting.build_split)

        self.engine = MarketEngine(
            self.store,
            initial_reserve=config.pool.initial_reserve,
            initial_arena=config.pool.initial_arena,
            fee_bps=config.pool.fee_bps,
            fee_insurance_bps=config.accounting.fee_insurance_bps,
            logger=self.logger,
            channel=self.channel,
        )
        self.pulse = MarketPulse(
            self.engine,
            interval_ms=config.market_pulse.interval_ms,
            trades_per_tick=config.market_pulse.trades_per_tick,
            min_trade_in=config.market_pulse.min_trade_in,
            max_trade_in=config.market_pulse.max_trade_in,
            agent_cooldown_ms=config.market_pulse.agent_cooldown_ms,
            rng=self.rng,
            clock_ms=clock,
            logger=self.logger,
        )
        self.events = WorldEventGenerator(
            self.store,
            rng=self.rng,
            event_cooldown_ticks=config.world_events.event_cooldown_ticks,
            event_chance=config.world_events.event_chance,
            max_active_events=config.world_events.max_active_events,
            bounty_bonus=config.world_events.bounty_bonus,
            tax_rate=config.world_events.tax_rate,
            logger=self.logger,
            channel=self.channel,
        )

        if inference is None and config.llm.enabled:
            inference = LiteLLMInference(config.llm.default_model, config.llm.timeout_seconds)
        self.broker = SkillBroker(
            self.store,
            self.engine,
            inference=inference,
            timeout_seconds=config.llm.timeout_seconds,
            global_min_ticks_between_purchases=config.skills.global_min_ticks_between_purchases,
            max_purchases_per_window=config.skills.max_purchases_per_window,
            window_ticks=config.skills.window_ticks,
            logger=self.logger,
            channel=self.channel,
        )

        self.query_handler = EconomyQueryHandler(self)
        self.action_executor = ActionExecutor(self)

        # A file-backed store keeps its agents and towns across runs.
        with self.store.transaction() as tx:
            self.engine.get_or_create_pool(tx)
            resumed = bool(tx.list_agents() or tx.list_towns())
            if not tx.list_agents():
                self._bootstrap_principals(tx)
            if not tx.list_towns():
                self._bootstrap_towns(tx)

        self.logger.log(
            "world_initialized",
            {
                "tick": self.current_tick,
                "run_id": self.run_id,
                "agent_count": len(self.agent_ids),
                "pool": self.engine.get_pool_summary(),
                "llm_enabled": inference is not None,
                "resumed": resumed,
            },
        )

    @property
    def agent_ids(self) -> list[str]:
        with self.store.session() as session:
            return [agent.id for agent in session.list_agents()]

    def now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    # ---- bootstrap ----

    def _bootstrap_principals(self, tx: StoreSession) -> None:
        cfg = self.config.principals
        archetypes = cfg.archetypes or ["CHAMELEON"]
        for idx in range(cfg.count):
            tx.insert_agent(
                Agent(
                    id=f"{cfg.id_prefix}{idx + 1}",
                    name=f"Agent {idx + 1}",
                    archetype=archetypes[idx % len(archetypes)],
                    bankroll=cfg.starting_bankroll,
                    reserve_balance=cfg.starting_reserve,
                )
            )

    def _bootstrap_towns(self, tx: StoreSession) -> None:
        cfg = self.config.towns
        owners = [agent.id for agent in tx.list_agents()]
        names = cfg.names or ["Town"]
        for t in range(cfg.count):
            town_id = f"{cfg.id_prefix}{t + 1}"
            tx.insert_town(Town(id=town_id, name=names[t % len(names)], theme=cfg.theme, level=cfg.level))
            invested = 0
            for idx in range(cfg.plots_per_town):
                built = idx < cfg.built_plots
                tx.insert_plot(
                    Plot(
                        id=f"{town_id}_plot_{idx}",
                        town_id=town_id,
                        plot_index=idx,
                        zone=PlotZone(ZONES[idx % len(ZONES)]),
                        status=PlotStatus.BUILT if built else PlotStatus.EMPTY,
                        building_type="founding_structure" if built else None,
                        build_cost_arena=cfg.built_cost_arena if built else 0,
                        owner_id=owners[idx % len(owners)] if built and owners else None,
                    )
                )
                if built:
                    invested += cfg.built_cost_arena
            if invested:
                tx.update_town(town_id, total_invested=invested)

    # ---- registry ----

    def register_agent(
        self,
        agent_id: str,
        name: str,
        *,
        archetype: str = "CHAMELEON",
        bankroll: int = 0,
        reserve_balance: int = 0,
    ) -> Agent:
        with self.store.transaction() as tx:
            return tx.insert_agent(
                Agent(id=agent_id, name=name, archetype=archetype, bankroll=bankroll, reserve_balance=reserve_balance)
            )

    def register_town(self, town_id: str, name: str, *, theme: str = "", level: int = 1) -> Town:
        with self.store.transaction() as tx:
            return tx.insert_town(Town(id=town_id, name=name, theme=theme, level=level))

    def add_plot(self, town_id: str, plot_index: int, zone: PlotZone | str) -> Plot:
        plot_zone = zone if isinstance(zone, PlotZone) else PlotZone(str(zone).upper())
        with self.store.transaction() as tx:
            if tx.get_town(town_id) is None:
                raise PlotUnavailable(f"town {town_id} not found", details={"town_id": town_id})
            return tx.insert_plot(
                Plot(id=f"{town_id}_plot_{plot_index}", town_id=town_id, plot_index=plot_index, zone=plot_zone)
            )

    def _load_agent(self, tx: StoreSession, agent_id: str) -> Agent:
        agent = tx.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(f"agent {agent_id} not found", details={"agent_id": agent_id})
        return agent

    def _load_plot(self, tx: StoreSession, plot_id: str, allowed: tuple[PlotStatus, ...]) -> Plot:
        plot = tx.get_plot(plot_id)
        if plot is None:
            raise PlotUnavailable(f"plot {plot_id} not found", details={"plot_id": plot_id})
        if plot.status not in allowed:
            raise PlotUnavailable(
                f"plot {plot_id} is {plot.status.value}",
                details={"plot_id": plot_id, "status": plot.status.value},
            )
        return plot

    def claim_plot(self, plot_id: str, agent_id: str, cost: int) -> dict[str, Any]:
        """Claim an empty plot, paying `cost` ARENA split between town and pool budgets."""
        amount = _positive_amount(cost, "cost")
        with self.store.transaction() as tx:
            agent = self._load_agent(tx, agent_id)
            plot = self._load_plot(tx, plot_id, (PlotStatus.EMPTY,))
            if agent.bankroll < amount:
                raise InsufficientBalance(
                    "insufficient ARENA to claim plot",
                    details={"required": amount, "bankroll": agent.bankroll},
                )
            pool = self.engine.get_or_create_pool(tx)
            split = split_claim_contribution(amount, self.claim_split)

            tx.adjust_agent_balances(agent_id, bankroll=-amount)
            town = tx.get_town(plot.town_id)
            if town is not None and split.town_invested:
                tx.update_town(town.id, total_invested=town.total_invested + split.town_invested)
            credits = credit_pool_budgets(
                tx,
                pool.id,
                split.budgets(),
                LedgerContext(
                    LedgerType.CLAIM_CONTRIBUTION,
                    agent_id=agent_id,
                    town_id=plot.town_id,
                    tick=self.current_tick,
                    source=AGENT_BANKROLL,
                    metadata={"plot_id": plot_id, "cost": amount},
                ),
            )
            plot = tx.update_plot(plot_id, status=PlotStatus.CLAIMED.value, owner_id=agent_id)

        result = {"plot": plot.to_dict(), "cost": amount, "town_invested": split.town_invested, "budgets": credits}
        self.logger.log("plot_claimed", {"tick": self.current_tick, "agent_id": agent_id, **result})
        self.channel.publish("plot_claimed", {"agent_id": agent_id, "plot_id": plot_id, "cost": amount})
        return result

    def complete_plot(
        self,
        plot_id: str,
        agent_id: str,
        build_cost: int,
        *,
        building_type: str | None = None,
    ) -> dict[str, Any]:
        """Settle a finished structure and claim any matching gold rush or bounty."""
        amount = _positive_amount(build_cost, "build_cost")
        with self.store.transaction() as tx:
            agent = self._load_agent(tx, agent_id)
            plot = self._load_plot(tx, plot_id, (PlotStatus.CLAIMED, PlotStatus.UNDER_CONSTRUCTION))
            if plot.owner_id is not None and plot.owner_id != agent_id:
                raise PlotUnavailable(
                    f"plot {plot_id} is owned by another agent",
                    details={"plot_id": plot_id, "owner_id": plot.owner_id},
                )
            if agent.bankroll < amount:
                raise InsufficientBalance(
                    "insufficient ARENA to complete build",
                    details={"required": amount, "bankroll": agent.bankroll},
                )
            pool = self.engine.get_or_create_pool(tx)
            split = split_build_contribution(amount, self.build_split)

            tx.adjust_agent_balances(agent_id, bankroll=-amount)
            town = tx.get_town(plot.town_id)
            if town is not None and split.town_invested:
                town = tx.update_town(town.id, total_invested=town.total_invested + split.town_invested)
            credits = credit_pool_budgets(
                tx,
                pool.id,
                split.budgets(),
                LedgerContext(
                    LedgerType.BUILD_CONTRIBUTION,
                    agent_id=agent_id,
                    town_id=plot.town_id,
                    tick=self.current_tick,
                    source=AGENT_BANKROLL,
                    metadata={"plot_id": plot_id, "build_cost": amount},
                ),
            )

            yield_multiplier = plot.yield_multiplier
            rush = self.events.get_gold_rush_zone()
            gold_rush = rush is not None and rush["zone"] == plot.zone.value and rush["town_id"] == plot.town_id
            if gold_rush:
                yield_multiplier *= 2

            fields: dict[str, Any] = {
                "status": PlotStatus.BUILT.value,
                "build_cost_arena": amount,
                "owner_id": agent_id,
                "yield_multiplier": yield_multiplier,
            }
            if building_type:
                fields["building_type"] = building_type
            plot = tx.update_plot(plot_id, **fields)

            bounty = self.events.get_active_bounty()
            bounty_bonus = 0
            if bounty is not None and bounty["town_id"] == plot.town_id:
                bounty_bonus = int(bounty["bonus"])
                tx.adjust_agent_balances(agent_id, bankroll=bounty_bonus)

            if town is not None and all(p.status is PlotStatus.BUILT for p in tx.list_plots(town_id=town.id)):
                town = tx.update_town(town.id, status=TownStatus.COMPLETE.value)

            # In-memory claims last; any store error above leaves both events open.
            gold_rush_claim = self.events.claim_gold_rush() if gold_rush else None
            bounty_claim = self.events.claim_bounty() if bounty_bonus else None

        result = {
            "plot": plot.to_dict(),
            "town": town.to_dict() if town is not None else None,
            "build_cost": amount,
            "town_invested": split.town_invested,
            "budgets": credits,
            "gold_rush": gold_rush_claim,
            "bounty": bounty_claim,
        }
        self.logger.log("plot_completed", {"tick": self.current_tick, "agent_id": agent_id, **result})
        self.channel.publish(
            "plot_completed",
            {"agent_id": agent_id, "plot_id": plot_id, "build_cost": amount, "bounty_bonus": bounty_bonus},
        )
        return result

    def pay_from_budget(
        self,
        agent_id: str,
        bucket: str,
        amount: int,
        *,
        allow_partial: bool = False,
        minimum_payout: int = 0,
        town_id: str | None = None,
        reason: str = "",
    ) -> int:
        """Pay an agent out of one pool budget; returns the amount paid (0 when it cannot)."""
        requested = _positive_amount(amount, "amount")
        with self.store.transaction() as tx:
            self._load_agent(tx, agent_id)
            pool = self.engine.get_or_create_pool(tx)
            paid = debit_pool_budget(
                tx,
                pool.id,
                bucket,
                requested,
                LedgerContext(
                    LedgerType.BUDGET_PAYOUT,
                    agent_id=agent_id,
                    town_id=town_id,
                    tick=self.current_tick,
                    metadata={"reason": reason} if reason else None,
                ),
                allow_partial=allow_partial,
                minimum_payout=minimum_payout,
            )
            if paid:
                tx.adjust_agent_balances(agent_id, bankroll=paid)

        self.logger.log(
            "budget_payout",
            {
                "tick": self.current_tick,
                "agent_id": agent_id,
                "bucket": bucket,
                "requested": requested,
                "paid": paid,
                "reason": reason,
            },
        )
        return paid

    # ---- ticks ----

    def advance_tick(self) -> WorldEvent | None:
        self.current_tick += 1
        event = None
        if self.config.world_events.enabled:
            event = self.events.tick(self.current_tick)
        self.logger.log(
            "tick",
            {
                "tick": self.current_tick,
                "new_event": event.id if event is not None else None,
                "active_events": [e.id for e in self.events.get_active_events()],
            },
        )
        return event

    def drain_activity(self, limit: int | None = None) -> int:
        messages = self.channel.drain(limit)
        for message in messages:
            self.logger.log("activity", {"tick": self.current_tick, "message": message.to_dict()})
        return len(messages)

    # ---- actions ----

    def build_skill_context(self, agent_id: str, town_id: str | None = None) -> SkillPurchaseContext:
        with self.store.session() as session:
            town = session.get_town(town_id) if town_id else None
            if town is None:
                towns = session.list_towns()
                town = towns[0] if towns else None
        return SkillPurchaseContext(
            agent_id=agent_id,
            current_tick=self.current_tick,
            town_id=town.id if town is not None else None,
            town_name=town.name if town is not None else "",
            town_theme=town.theme if town is not None else "",
            town_level=town.level if town is not None else 1,
            recent_events=[
                {"title": f"{event.emoji} {event.name}", "description": event.description}
                for event in self.events.get_active_events()
            ],
        )

    def execute_intent(self, intent: ActionIntent) -> ActionResult:
        return self.action_executor.execute(intent)

    def execute_action_data(self, agent_id: str, payload: dict[str, Any] | str) -> ActionResult:
        json_payload = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=True)
        parsed = parse_intent_from_json(agent_id, json_payload)
        if isinstance(parsed, str):
            result = ActionResult(
                success=False,
                message=parsed,
                error_code="invalid_action",
                error_category="validation",
                retriable=True,
            )
            self.logger.log(
                "action",
                {"tick": self.current_tick, "principal_id": agent_id, "intent": None, "result": result.to_dict()},
            )
            return result
        return self.execute_intent(parsed)

    # ---- summaries ----

    def get_state_summary(self) -> dict[str, Any]:
        with self.store.session() as session:
            agents = [agent.to_dict() for agent in session.list_agents()]
            towns = [town.to_dict() for town in session.list_towns()]
        return {
            "tick": self.current_tick,
            "pool": self.engine.get_pool_summary(),
            "active_events": [event.to_dict() for event in self.events.get_active_events()],
            "recent_swaps": self.engine.list_recent_swaps(10),
            "agents": agents,
            "towns": towns,
            "recent_activity": self.logger.read_recent(20, event_type="activity"),
        }

    def log_summary_snapshot(self) -> SummarySnapshot:
        pool = self.engine.get_pool_summary()
        with self.store.session() as session:
            swap_count = session.count_swaps()
            agent_count = len(session.list_agents())
        snapshot = SummarySnapshot(
            timestamp=self.now_iso(),
            tick=self.current_tick,
            reserve_balance=pool["reserve_balance"],
            arena_balance=pool["arena_balance"],
            spot_price=pool["spot_price"],
            cumulative_fees_reserve=pool["cumulative_fees_reserve"],
            cumulative_fees_arena=pool["cumulative_fees_arena"],
            swap_count=swap_count,
            active_events=[event.id for event in self.events.get_active_events()],
            agent_count=agent_count,
        )
        self.logger.log_summary(snapshot)
        return snapshot
