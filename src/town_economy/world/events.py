"""Stochastic world events that bend costs, yields and upkeep.

Events are held in memory only. Each tick expires finished events, applies
pending one-time impacts (storm damage, tax collection), and may roll a new
event. Read-side multipliers only count events whose impact is in effect.
"""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from ..records import ZONES, PlotStatus, TownStatus
from ..store import EconomyStore, StoreSession


class EventType(str, Enum):
    STORM = "STORM"
    BOOM = "BOOM"
    SHORTAGE = "SHORTAGE"
    GOLD_RUSH = "GOLD_RUSH"
    TAX = "TAX"
    FIRE = "FIRE"
    FESTIVAL = "FESTIVAL"
    EARTHQUAKE = "EARTHQUAKE"
    BOUNTY = "BOUNTY"
    UPKEEP_CRISIS = "UPKEEP_CRISIS"


@dataclass(frozen=True)
class EventTemplate:
    type: EventType
    weight: int
    min_tick: int
    positive: bool


EVENT_POOL: tuple[EventTemplate, ...] = (
    EventTemplate(EventType.STORM, 15, 5, False),
    EventTemplate(EventType.BOOM, 10, 3, True),
    EventTemplate(EventType.SHORTAGE, 10, 5, False),
    EventTemplate(EventType.GOLD_RUSH, 8, 5, True),
    EventTemplate(EventType.TAX, 12, 5, False),
    EventTemplate(EventType.FIRE, 8, 8, False),
    EventTemplate(EventType.FESTIVAL, 10, 3, True),
    EventTemplate(EventType.EARTHQUAKE, 8, 8, False),
    EventTemplate(EventType.BOUNTY, 10, 5, True),
    EventTemplate(EventType.UPKEEP_CRISIS, 9, 10, False),
)

EMOJI_MAP: dict[EventType, str] = {
    EventType.STORM: "⛈️",
    EventType.BOOM: "💰",
    EventType.SHORTAGE: "📦",
    EventType.GOLD_RUSH: "🏆",
    EventType.TAX: "🏛️",
    EventType.FIRE: "🔥",
    EventType.FESTIVAL: "🎉",
    EventType.EARTHQUAKE: "🌋",
    EventType.BOUNTY: "🎯",
    EventType.UPKEEP_CRISIS: "💸",
}

NO_EVENTS_TEXT = "No active world events."


@dataclass
class WorldEvent:
    id: str
    type: EventType
    emoji: str
    name: str
    description: str
    agent_prompt: str
    magnitude: float
    tick_created: int
    tick_active: int
    tick_expires: int
    target_town_id: str | None = None
    target_town_name: str | None = None
    target_zone: str | None = None
    target_plot_id: str | None = None
    target_agent_id: str | None = None
    target_agent_name: str | None = None
    impact_applied: bool = False
    claimed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


class WorldEventGenerator:
    """Tick-driven event lifecycle plus the multipliers other services read."""

    def __init__(
        self,
        store: EconomyStore,
        *,
        rng: random.Random | None = None,
        event_cooldown_ticks: int = 5,
        event_chance: float = 0.20,
        max_active_events: int = 1,
        bounty_bonus: int = 50,
        tax_rate: float = 0.10,
        logger: Any | None = None,
        channel: Any | None = None,
    ) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self.event_cooldown_ticks = event_cooldown_ticks
        self.event_chance = event_chance
        self.max_active_events = max_active_events
        self.bounty_bonus = bounty_bonus
        self.tax_rate = tax_rate
        self.logger = logger
        self.channel = channel

        self._active: list[WorldEvent] = []
        self._last_event_tick = 0
        self._event_counter = 0

    def _log(self, event_type: str, data: dict[str, Any]) -> None:
        if self.logger is not None:
            self.logger.log(event_type, data)

    # ---- lifecycle ----

    def tick(self, current_tick: int) -> WorldEvent | None:
        self._active = [event for event in self._active if current_tick < event.tick_expires]

        for event in self._active:
            if current_tick >= event.tick_active and not event.impact_applied:
                self._apply_impact(event, current_tick)

        if (
            len(self._active) >= self.max_active_events
            or current_tick - self._last_event_tick < self.event_cooldown_ticks
            or self.rng.random() >= self.event_chance
        ):
            return None

        event = self.generate_event(current_tick)
        if event is None:
            return None
        self._active.append(event)
        self._last_event_tick = current_tick

        self._log("world_event_triggered", {"tick": current_tick, "event": event.to_dict()})
        if self.channel is not None:
            self.channel.publish(
                "world_event",
                {"event_id": event.id, "type": event.type.value, "text": f"{event.emoji} {event.name}: {event.description}"},
            )
        # One-tick events would otherwise expire before their impact lands.
        if current_tick >= event.tick_active and not event.impact_applied:
            self._apply_impact(event, current_tick)
        return event

    def _pick_template(self, current_tick: int) -> EventTemplate | None:
        eligible = [template for template in EVENT_POOL if current_tick >= template.min_tick]
        if not eligible:
            return None
        roll = self.rng.random() * sum(template.weight for template in eligible)
        for template in eligible:
            roll -= template.weight
            if roll <= 0:
                return template
        return eligible[-1]

    def generate_event(self, current_tick: int) -> WorldEvent | None:
        with self.store.session() as session:
            towns = session.list_towns()
            agents = {agent.id: agent for agent in session.list_agents(active_only=True)}
            built = session.list_plots(status=PlotStatus.BUILT, min_cost=1)
        if not towns or not agents:
            return None

        template = self._pick_template(current_tick)
        if template is None:
            return None

        town = towns[self.rng.randrange(len(towns))]
        zone = ZONES[self.rng.randrange(len(ZONES))]
        magnitude = 0.15 + self.rng.random() * 0.15
        pct = round(magnitude * 100)
        kind = template.type

        self._event_counter += 1
        base: dict[str, Any] = {
            "id": f"evt_{self._event_counter}_{kind.value.lower()}",
            "type": kind,
            "emoji": EMOJI_MAP[kind],
            "tick_created": current_tick,
            "tick_active": current_tick,
        }

        if kind is EventType.STORM:
            base["tick_active"] = current_tick + 3
            with self.store.session() as session:
                at_risk = len(session.list_plots(town_id=town.id, zone=zone, status=PlotStatus.BUILT))
            return WorldEvent(
                **base,
                name=f"Storm Warning: {zone} Zone",
                description=(
                    f"A violent storm is approaching {town.name}'s {zone} zone! "
                    f"Buildings at risk of {pct}% damage in 3 ticks."
                ),
                agent_prompt=(
                    f"STORM WARNING: A storm will hit {town.name}'s {zone} zone in 3 ticks. "
                    f"Buildings there risk losing {pct}% of invested value. {at_risk} buildings at risk. "
                    "Consider: transfer assets, reinforce investments, or accept losses."
                ),
                magnitude=magnitude,
                tick_expires=current_tick + 4,
                target_town_id=town.id,
                target_town_name=town.name,
                target_zone=zone,
            )

        if kind is EventType.BOOM:
            return WorldEvent(
                **base,
                name="Economic Boom",
                description="Economic boom! All building yields doubled for 5 ticks!",
                agent_prompt=(
                    "ECONOMIC BOOM: All yields are doubled for the next 5 ticks! "
                    "Rush to complete buildings and maximize income. This is temporary, make it count."
                ),
                magnitude=2,
                tick_expires=current_tick + 5,
                impact_applied=True,
            )

        if kind is EventType.SHORTAGE:
            return WorldEvent(
                **base,
                name="Resource Shortage",
                description="Resource shortage! All building and claim costs increased by 50% for 3 ticks.",
                agent_prompt=(
                    "RESOURCE SHORTAGE: Building and claim costs are 50% higher for the next 3 ticks. "
                    "Consider: delay construction, focus on completing existing work, or trade."
                ),
                magnitude=1.5,
                tick_expires=current_tick + 3,
                impact_applied=True,
            )

        if kind is EventType.GOLD_RUSH:
            building = [t for t in towns if t.status is TownStatus.BUILDING]
            target = building[self.rng.randrange(len(building))] if building else town
            return WorldEvent(
                **base,
                name=f"Gold Rush: {zone} Zone",
                description=(
                    f"Gold rush in {target.name}'s {zone} zone! "
                    "Next building completed there gets 2x permanent yield bonus."
                ),
                agent_prompt=(
                    f"GOLD RUSH: The next building completed in {target.name}'s {zone} zone gets DOUBLE "
                    "permanent yield! Only one agent can win this bonus."
                ),
                magnitude=2,
                tick_expires=current_tick + 5,
                target_town_id=target.id,
                target_town_name=target.name,
                target_zone=zone,
                impact_applied=True,
            )

        if kind is EventType.TAX:
            pct_tax = round(self.tax_rate * 100)
            return WorldEvent(
                **base,
                name="Tax Collection",
                description=f"Town tax! All agents pay {pct_tax}% of their bankroll.",
                agent_prompt=(
                    f"TAX COLLECTION: {pct_tax}% of every agent's bankroll has been collected. "
                    "This is unavoidable. Plan your remaining budget carefully."
                ),
                magnitude=self.tax_rate,
                tick_expires=current_tick + 1,
            )

        if kind in (EventType.FIRE, EventType.EARTHQUAKE):
            if not built:
                return None
            if kind is EventType.FIRE:
                plot = built[self.rng.randrange(len(built))]
                severity = magnitude * 1.5
            else:
                plot = max(built, key=lambda p: p.build_cost_arena)
                severity = magnitude
            town_names = {t.id: t.name for t in towns}
            owner = agents.get(plot.owner_id) if plot.owner_id else None
            owner_name = owner.name if owner is not None else None
            building_type = plot.building_type or "building"
            town_name = town_names.get(plot.town_id, plot.town_id)
            if kind is EventType.FIRE:
                name = f"Building Fire: {building_type}"
                description = (
                    f"Fire at {owner_name or 'unknown'}'s {building_type} in {town_name}! "
                    f"{round(severity * 100)}% of invested value at risk."
                )
                prompt = (
                    f"BUILDING FIRE: {owner_name or 'A building'}'s \"{building_type}\" in {town_name} is on fire! "
                    f"It will lose {round(severity * 100)}% of invested value."
                )
            else:
                name = f"Earthquake: {town_name}"
                description = (
                    f"Earthquake in {town_name}! The most valuable building "
                    f"({owner_name or 'unknown'}'s {building_type}) takes {round(severity * 100)}% damage."
                )
                prompt = (
                    f"EARTHQUAKE: {town_name} was hit by an earthquake. The most valuable building "
                    f"(\"{building_type}\") lost {round(severity * 100)}% of invested value. Diversify your holdings."
                )
            return WorldEvent(
                **base,
                name=name,
                description=description,
                agent_prompt=prompt,
                magnitude=severity,
                tick_expires=current_tick + 1,
                target_town_id=plot.town_id,
                target_town_name=town_name,
                target_plot_id=plot.id,
                target_agent_id=plot.owner_id,
                target_agent_name=owner_name,
            )

        if kind is EventType.FESTIVAL:
            return WorldEvent(
                **base,
                name="Town Festival",
                description="Festival! ENTERTAINMENT buildings yield 3x for 3 ticks!",
                agent_prompt=(
                    "FESTIVAL: Entertainment zone buildings yield 3x for the next 3 ticks! "
                    "If you own entertainment buildings, great. If not, consider investing."
                ),
                magnitude=3,
                tick_expires=current_tick + 3,
                impact_applied=True,
            )

        if kind is EventType.BOUNTY:
            target = next((t for t in towns if t.status is TownStatus.BUILDING), town)
            return WorldEvent(
                **base,
                name="Construction Bounty",
                description=(
                    f"Bounty: First agent to complete a building in {target.name} "
                    f"gets {self.bounty_bonus} $ARENA bonus!"
                ),
                agent_prompt=(
                    f"BOUNTY: {self.bounty_bonus} $ARENA reward for the FIRST agent to complete any building "
                    f"in {target.name}! Only one agent claims this."
                ),
                magnitude=self.bounty_bonus,
                tick_expires=current_tick + 5,
                target_town_id=target.id,
                target_town_name=target.name,
            )

        return WorldEvent(
            **base,
            name="Upkeep Crisis",
            description="Economic crisis! Upkeep costs doubled for 3 ticks.",
            agent_prompt=(
                "UPKEEP CRISIS: Living costs have doubled for the next 3 ticks. "
                "Conserve resources or earn more to survive."
            ),
            magnitude=2,
            tick_expires=current_tick + 3,
            impact_applied=True,
        )

    # ---- one-time impacts ----

    def _damage_plot(self, tx: StoreSession, plot_id: str, magnitude: float) -> dict[str, Any]:
        plot = tx.get_plot(plot_id)
        if plot is None or plot.build_cost_arena <= 0:
            return {"damage": 0}
        damage = int(plot.build_cost_arena * magnitude)
        if damage <= 0:
            return {"damage": 0, "plot_id": plot.id}
        tx.update_plot(plot.id, build_cost_arena=plot.build_cost_arena - damage)
        town = tx.get_town(plot.town_id)
        if town is not None:
            tx.update_town(town.id, total_invested=max(0, town.total_invested - damage))
        return {"damage": damage, "plot_id": plot.id, "town_id": plot.town_id}

    def _apply_impact(self, event: WorldEvent, current_tick: int) -> None:
        try:
            with self.store.transaction() as tx:
                details: dict[str, Any] = {}
                if event.type is EventType.STORM and event.target_town_id and event.target_zone:
                    victims = [
                        plot
                        for plot in tx.list_plots(
                            town_id=event.target_town_id, zone=event.target_zone, status=PlotStatus.BUILT
                        )
                        if plot.build_cost_arena > 0
                    ]
                    if victims:
                        victim = victims[self.rng.randrange(len(victims))]
                        details = self._damage_plot(tx, victim.id, event.magnitude)
                elif event.type in (EventType.FIRE, EventType.EARTHQUAKE) and event.target_plot_id:
                    details = self._damage_plot(tx, event.target_plot_id, event.magnitude)
                elif event.type is EventType.TAX:
                    collected = 0
                    payers = 0
                    for agent in tx.list_agents(active_only=True):
                        if agent.bankroll <= 0:
                            continue
                        tax = max(1, int(agent.bankroll * event.magnitude))
                        tx.adjust_agent_balances(agent.id, bankroll=-tax)
                        collected += tax
                        payers += 1
                    details = {"collected": collected, "agents": payers}
        except Exception as exc:
            self._log(
                "world_event_impact_failed",
                {"tick": current_tick, "event_id": event.id, "type": event.type.value, "error": str(exc)},
            )
        else:
            self._log(
                "world_event_impact_applied",
                {"tick": current_tick, "event_id": event.id, "type": event.type.value, **details},
            )
        finally:
            event.impact_applied = True

    # ---- read side ----

    def get_active_events(self) -> list[WorldEvent]:
        return list(self._active)

    def get_prompt_text(self) -> str:
        if not self._active:
            return NO_EVENTS_TEXT
        return "\n".join(f"{event.emoji} {event.agent_prompt}" for event in self._active)

    def get_cost_multiplier(self) -> float:
        mult = 1.0
        for event in self._active:
            if event.type is EventType.SHORTAGE and event.impact_applied:
                mult *= 1.5
        return mult

    def get_yield_multiplier(self, zone: str | None = None) -> float:
        mult = 1.0
        for event in self._active:
            if not event.impact_applied:
                continue
            if event.type is EventType.BOOM:
                mult *= 2
            elif event.type is EventType.FESTIVAL and zone == "ENTERTAINMENT":
                mult *= 3
        return mult

    def get_upkeep_multiplier(self) -> float:
        mult = 1.0
        for event in self._active:
            if event.type is EventType.UPKEEP_CRISIS and event.impact_applied:
                mult *= 2
        return mult

    def _open_bounty(self) -> WorldEvent | None:
        return next((e for e in self._active if e.type is EventType.BOUNTY and not e.claimed), None)

    def get_active_bounty(self) -> dict[str, Any] | None:
        bounty = self._open_bounty()
        if bounty is None:
            return None
        return {"bonus": self.bounty_bonus, "town_id": bounty.target_town_id, "town_name": bounty.target_town_name}

    def claim_bounty(self) -> dict[str, Any] | None:
        bounty = self._open_bounty()
        if bounty is None:
            return None
        bounty.claimed = True
        return {
            "event_id": bounty.id,
            "bonus": self.bounty_bonus,
            "town_id": bounty.target_town_id,
            "town_name": bounty.target_town_name,
        }

    def _open_gold_rush(self) -> WorldEvent | None:
        return next(
            (e for e in self._active if e.type is EventType.GOLD_RUSH and e.impact_applied and not e.claimed),
            None,
        )

    def get_gold_rush_zone(self) -> dict[str, Any] | None:
        rush = self._open_gold_rush()
        if rush is None:
            return None
        return {"zone": rush.target_zone, "town_id": rush.target_town_id}

    def claim_gold_rush(self) -> dict[str, Any] | None:
        rush = self._open_gold_rush()
        if rush is None:
            return None
        rush.claimed = True
        return {"event_id": rush.id, "zone": rush.target_zone, "town_id": rush.target_town_id}
