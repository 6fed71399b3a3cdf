"""Paid informational skills, priced in ARENA and throttled per agent.

Buyers get the full structured output; spectators only ever see the short
public summary published on the event channel. A purchase has to carry a
narrative justification and clear a stake threshold so that buying reads as
deliberate tool use rather than noise.
"""

from __future__ import annotations

import json
import math
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import (
    AgentNotFound,
    InsufficientBalance,
    SkillCacheStillValid,
    SkillThrottled,
    SkillValidationFailed,
)
from ..market.amm import MarketEngine, clamp_int
from ..records import ZONES, SwapSide
from ..store import EconomyStore
from .inference import InferenceClient, complete_with_timeout, parse_json_object

MIN_PRICE_ARENA = 1
MAX_PRICE_ARENA = 250


class SkillName(str, Enum):
    MARKET_DEPTH = "MARKET_DEPTH"
    BLUEPRINT_INDEX = "BLUEPRINT_INDEX"
    SCOUT_REPORT = "SCOUT_REPORT"


@dataclass(frozen=True)
class SkillConfig:
    base_price_reserve: int
    ttl_ticks: int
    min_ticks_between_buys: int


SKILL_CONFIG: dict[SkillName, SkillConfig] = {
    SkillName.MARKET_DEPTH: SkillConfig(base_price_reserve=6, ttl_ticks=2, min_ticks_between_buys=2),
    SkillName.BLUEPRINT_INDEX: SkillConfig(base_price_reserve=18, ttl_ticks=20, min_ticks_between_buys=5),
    SkillName.SCOUT_REPORT: SkillConfig(base_price_reserve=12, ttl_ticks=5, min_ticks_between_buys=3),
}

_WHITESPACE = re.compile(r"\s+")


def safe_trim(value: Any, max_len: int) -> str:
    """Collapse whitespace, strip, and truncate."""
    text = "" if value is None else str(value)
    return _WHITESPACE.sub(" ", text).strip()[:max_len]


def canonical_key(skill: SkillName | str, params: dict[str, Any]) -> str:
    name = skill.value if isinstance(skill, SkillName) else str(skill)
    return f"{name}:{json.dumps(params, sort_keys=True, default=str)}"


def estimate_skill_price(
    skill: SkillName | str,
    spot_price: float | None,
    config: dict[SkillName, SkillConfig] = SKILL_CONFIG,
) -> int:
    """ARENA price for a skill pegged to a reserve-denominated base price."""
    cfg = config[SkillName(skill)]
    if spot_price is None or not math.isfinite(spot_price) or spot_price <= 0:
        return clamp_int(math.ceil(cfg.base_price_reserve / 2), MIN_PRICE_ARENA, MAX_PRICE_ARENA)
    return clamp_int(math.ceil(cfg.base_price_reserve / spot_price), MIN_PRICE_ARENA, MAX_PRICE_ARENA)


def max_spend_per_window(town_level: int) -> int:
    """Runway-based cap on ARENA spent on skills inside one window."""
    claim_cost = 10 + max(0, town_level - 1) * 5
    typical_build_cost = 20 * max(1, town_level)
    return clamp_int(math.ceil((claim_cost + typical_build_cost) * 0.25), 10, 2500)


@dataclass
class IfThenPlan:
    if_: str
    then: str
    else_: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> IfThenPlan:
        if isinstance(data, IfThenPlan):
            return data
        if not isinstance(data, dict):
            return cls(if_="", then="")
        return cls(
            if_=str(data.get("if", "") or ""),
            then=str(data.get("then", "") or ""),
            else_=str(data.get("else", "") or ""),
        )


@dataclass
class BuySkillRequest:
    skill: str
    question: str
    why_now: str
    expected_next_action: str
    if_then: IfThenPlan
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuySkillRequest:
        params = data.get("params")
        return cls(
            skill=str(data.get("skill", "") or ""),
            question=str(data.get("question", "") or ""),
            why_now=str(data.get("why_now", "") or ""),
            expected_next_action=str(data.get("expected_next_action", "") or ""),
            if_then=IfThenPlan.from_dict(data.get("if_then")),
            params=dict(params) if isinstance(params, dict) else {},
        )


@dataclass
class SkillPurchaseContext:
    agent_id: str
    current_tick: int
    town_id: str | None = None
    town_name: str = ""
    town_theme: str = ""
    town_level: int = 1
    recent_events: list[dict[str, str]] = field(default_factory=list)


@dataclass
class BuySkillResult:
    skill: SkillName
    cached: bool
    price_arena: int
    spot_price_used: float | None
    output: dict[str, Any]
    public_summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill": self.skill.value,
            "cached": self.cached,
            "price_arena": self.price_arena,
            "spot_price_used": self.spot_price_used,
            "output": self.output,
            "public_summary": self.public_summary,
        }


@dataclass
class PurchaseWindow:
    last_purchase_tick: int = -1
    window_start_tick: int = 0
    purchases_in_window: int = 0
    spent_arena_in_window: int = 0
    last_skill_tick: dict[SkillName, int] = field(default_factory=dict)


@dataclass
class _CacheEntry:
    created_tick: int
    result: BuySkillResult


@dataclass
class _SkillRun:
    output: dict[str, Any]
    public_summary: str
    model_used: str = "OFFCHAIN"
    api_calls: int = 0
    api_cost_cents: float = 0.0
    response_time_ms: int = 0


_BLUEPRINT_FALLBACK: dict[str, Any] = {
    "plan_steps": [
        "Draft an exterior concept",
        "Draft an interior concept",
        "Add staff/roles",
        "Write a short lore hook",
    ],
    "risks": ["Tool output was unavailable; treat this as a rough template"],
    "quality_checks": ["Keep it coherent with the town theme"],
    "uncertainty": "This plan is approximate because the planning model did not answer.",
    "confidence": "LOW",
}

_SCOUT_FALLBACK: dict[str, Any] = {
    "risk": "MED",
    "signals": ["Report generation failed; treat this as low-confidence"],
    "suggested_questions": ["What changed recently in this zone?"],
    "uncertainty": "Low confidence because the scouting model did not answer.",
    "confidence": "LOW",
}


class SkillBroker:
    """Validate, throttle, execute and settle skill purchases."""

    def __init__(
        self,
        store: EconomyStore,
        engine: MarketEngine,
        *,
        inference: InferenceClient | None = None,
        timeout_seconds: float = 30.0,
        global_min_ticks_between_purchases: int = 3,
        max_purchases_per_window: int = 2,
        window_ticks: int = 10,
        skill_config: dict[SkillName, SkillConfig] | None = None,
        logger: Any | None = None,
        channel: Any | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.inference = inference
        self.timeout_seconds = timeout_seconds
        self.global_min_ticks_between_purchases = global_min_ticks_between_purchases
        self.max_purchases_per_window = max_purchases_per_window
        self.window_ticks = window_ticks
        self.skill_config = skill_config or dict(SKILL_CONFIG)
        self.logger = logger
        self.channel = channel

        self._windows: dict[str, PurchaseWindow] = {}
        self._cache: dict[str, dict[str, _CacheEntry]] = {}
        self._agent_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _agent_lock(self, agent_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._agent_locks.setdefault(agent_id, threading.Lock())

    def get_window(self, agent_id: str) -> PurchaseWindow:
        return self._windows.setdefault(agent_id, PurchaseWindow())

    def estimate_price(self, skill: SkillName | str, spot_price: float | None) -> int:
        return estimate_skill_price(skill, spot_price, self.skill_config)

    # ---- validation ----

    @staticmethod
    def _parse_skill(raw: str) -> SkillName:
        name = safe_trim(raw, 32).upper()
        if not name:
            raise SkillValidationFailed("buy_skill missing skill")
        try:
            return SkillName(name)
        except ValueError as exc:
            raise SkillValidationFailed(f"Unknown skill: {name}") from exc

    @staticmethod
    def _assert_meaningful(request: BuySkillRequest) -> None:
        if not safe_trim(request.question, 1):
            raise SkillValidationFailed("buy_skill missing question")
        if not safe_trim(request.why_now, 1):
            raise SkillValidationFailed("buy_skill missing why_now")
        if not safe_trim(request.expected_next_action, 1):
            raise SkillValidationFailed("buy_skill missing expected_next_action")
        if not safe_trim(request.if_then.if_, 1) or not safe_trim(request.if_then.then, 1):
            raise SkillValidationFailed("buy_skill missing if_then plan")

    @staticmethod
    def _assert_stake(
        skill: SkillName,
        request: BuySkillRequest,
        *,
        bankroll: int,
        reserve: int,
        town_level: int,
    ) -> None:
        next_action = safe_trim(request.expected_next_action, 32)
        params = request.params

        if skill is SkillName.MARKET_DEPTH:
            side = safe_trim(params.get("side"), 16).upper()
            if side not in (SwapSide.BUY_ARENA.value, SwapSide.SELL_ARENA.value):
                raise SkillValidationFailed("MARKET_DEPTH requires params.side BUY_ARENA|SELL_ARENA")
            try:
                amount_in = float(params.get("amount_in"))
            except (TypeError, ValueError):
                amount_in = math.nan
            if not math.isfinite(amount_in) or amount_in <= 0:
                raise SkillValidationFailed("MARKET_DEPTH requires params.amount_in > 0")
            relevant = reserve if side == SwapSide.BUY_ARENA.value else bankroll
            threshold = max(500, int(relevant * 0.25))
            if amount_in < threshold:
                raise SkillValidationFailed(
                    f"MARKET_DEPTH not justified for small trade (need >= {threshold})",
                    details={"threshold": threshold},
                )
            if next_action not in ("buy_arena", "sell_arena"):
                raise SkillValidationFailed("MARKET_DEPTH expected_next_action must be buy_arena or sell_arena")
            return

        if skill is SkillName.BLUEPRINT_INDEX:
            if next_action not in ("start_build", "do_work"):
                raise SkillValidationFailed("BLUEPRINT_INDEX expected_next_action must be start_build or do_work")
            if not safe_trim(params.get("building_type"), 48):
                raise SkillValidationFailed("BLUEPRINT_INDEX requires params.building_type")
            zone = safe_trim(params.get("zone"), 24).upper()
            if zone and zone not in ZONES:
                raise SkillValidationFailed("BLUEPRINT_INDEX params.zone invalid")
            core_build = max(10, 20 * max(1, town_level))
            if bankroll < max(5, int(core_build * 0.15)):
                raise SkillValidationFailed("BLUEPRINT_INDEX not justified when too broke to build")
            return

        if next_action not in ("claim_plot", "start_build"):
            raise SkillValidationFailed("SCOUT_REPORT expected_next_action must be claim_plot or start_build")
        zone = safe_trim(params.get("zone"), 24).upper()
        if not zone:
            raise SkillValidationFailed("SCOUT_REPORT requires params.zone")
        if zone not in ZONES:
            raise SkillValidationFailed("SCOUT_REPORT params.zone invalid")

    # ---- throttling ----

    def _check_cache(self, agent_id: str, skill: SkillName, key: str, tick: int) -> None:
        entry = self._cache.get(agent_id, {}).get(key)
        ttl = self.skill_config[skill].ttl_ticks
        if entry is not None and tick - entry.created_tick <= ttl:
            wait = ttl - (tick - entry.created_tick) + 1
            raise SkillCacheStillValid(
                f"Cached result still valid for {skill.value}; wait {wait} ticks before repurchasing",
                wait_ticks=wait,
            )

    def _effective_window(self, window: PurchaseWindow, tick: int) -> tuple[int, int, int]:
        if tick - window.window_start_tick >= self.window_ticks:
            return tick, 0, 0
        return window.window_start_tick, window.purchases_in_window, window.spent_arena_in_window

    def _check_throttle(self, agent_id: str, skill: SkillName, tick: int, price: int, town_level: int) -> None:
        window = self.get_window(agent_id)
        _, purchases, spent = self._effective_window(window, tick)

        gap = self.global_min_ticks_between_purchases
        if window.last_purchase_tick >= 0 and tick - window.last_purchase_tick < gap:
            raise SkillThrottled(f"Too soon to buy another skill (wait {gap} ticks)", kind=SkillThrottled.GLOBAL_COOLDOWN)

        skill_gap = self.skill_config[skill].min_ticks_between_buys
        last_skill = window.last_skill_tick.get(skill)
        if last_skill is not None and tick - last_skill < skill_gap:
            raise SkillThrottled(
                f"Skill cooldown: wait {skill_gap} ticks before buying {skill.value} again",
                kind=SkillThrottled.SKILL_COOLDOWN,
            )

        if purchases >= self.max_purchases_per_window:
            raise SkillThrottled(
                f"Purchase cap reached (max {self.max_purchases_per_window} per {self.window_ticks} ticks)",
                kind=SkillThrottled.WINDOW_COUNT,
            )

        cap = max_spend_per_window(town_level)
        if spent + price > cap:
            raise SkillThrottled(
                f"Skill spend cap reached ({spent}/{cap} $ARENA in window)",
                kind=SkillThrottled.WINDOW_SPEND,
                details={"spent": spent, "cap": cap, "price": price},
            )

    # ---- execution ----

    def _run_market_depth(self, params: dict[str, Any]) -> _SkillRun:
        side = SwapSide(safe_trim(params.get("side"), 16).upper())
        amount_in = int(float(params.get("amount_in")))
        q = self.engine.quote(side, amount_in)
        spot = q.price_before
        if side is SwapSide.BUY_ARENA:
            execution_price = q.amount_in / q.amount_out
        else:
            execution_price = q.amount_out / q.amount_in
        slippage_bps = round((execution_price - spot) / spot * 10_000) if spot else 0
        if spot and q.price_after is not None:
            price_impact_pct = round((q.price_after - spot) / spot * 1000) / 10
        else:
            price_impact_pct = 0.0
        return _SkillRun(
            output={
                "quote": q.to_dict(),
                "execution_price": execution_price,
                "slippage_bps": slippage_bps,
                "price_impact_pct": price_impact_pct,
            },
            public_summary=f"paid for MarketDepth (slippage ~{slippage_bps} bps)",
        )

    def _generate(
        self,
        skill: SkillName,
        messages: list[dict[str, str]],
        temperature: float,
        fallback: dict[str, Any],
        agent_id: str,
    ) -> tuple[dict[str, Any], str, int, float, int]:
        if self.inference is None:
            self._log_fallback(agent_id, skill, "no inference client configured")
            return dict(fallback), "FALLBACK", 0, 0.0, 0

        start = time.monotonic()
        api_calls = 0
        cost_cents = 0.0
        try:
            response = complete_with_timeout(
                self.inference,
                messages,
                temperature=temperature,
                timeout_seconds=self.timeout_seconds,
            )
            api_calls = 1
            cost_cents = response.cost_cents
            output = parse_json_object(response.content)
            return output, response.model, api_calls, cost_cents, response.latency_ms
        except Exception as exc:
            self._log_fallback(agent_id, skill, f"{type(exc).__name__}: {exc}")
            elapsed_ms = int((time.monotonic() - start) * 1000)
            return dict(fallback), "FALLBACK", api_calls, cost_cents, elapsed_ms

    def _log_fallback(self, agent_id: str, skill: SkillName, reason: str) -> None:
        if self.logger is not None:
            self.logger.log(
                "skill_inference_fallback",
                {"agent_id": agent_id, "skill": skill.value, "reason": safe_trim(reason, 300)},
            )

    def _run_blueprint_index(self, context: SkillPurchaseContext, params: dict[str, Any]) -> _SkillRun:
        zone = safe_trim(params.get("zone"), 24).upper() or "RESIDENTIAL"
        building_type = safe_trim(params.get("building_type"), 48).upper()
        messages = [
            {
                "role": "system",
                "content": (
                    "You are BlueprintIndex, a paid planning tool for an AI town.\n"
                    "Return STRICT JSON only (no markdown).\n"
                    "You produce a short plan that helps an agent build, without telling them what maximizes profit."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Town: {context.town_name}\nTheme: {context.town_theme}\nZone: {zone}\n"
                    f"BuildingType: {building_type}\n\n"
                    "Return JSON with keys:\n"
                    "- plan_steps: string[] (3-6 steps)\n"
                    "- risks: string[] (0-4)\n"
                    "- quality_checks: string[] (0-4)\n"
                    "- uncertainty: string (one sentence)\n"
                ),
            },
        ]
        output, model, calls, cost, latency = self._generate(
            SkillName.BLUEPRINT_INDEX, messages, 0.4, _BLUEPRINT_FALLBACK, context.agent_id
        )
        return _SkillRun(
            output=output,
            public_summary=f"bought BlueprintIndex for {building_type}",
            model_used=model,
            api_calls=calls,
            api_cost_cents=cost,
            response_time_ms=latency,
        )

    def _run_scout_report(self, context: SkillPurchaseContext, params: dict[str, Any]) -> _SkillRun:
        zone = safe_trim(params.get("zone"), 24).upper() or "COMMERCIAL"
        events = "\n".join(
            f"- {safe_trim(e.get('title'), 80)}: {safe_trim(e.get('description'), 200)}"
            for e in context.recent_events[:8]
        )
        messages = [
            {
                "role": "system",
                "content": (
                    "You are ScoutReport, a paid intel tool for an AI town.\n"
                    "Return STRICT JSON only (no markdown).\n"
                    "You provide partial, uncertain information. Do NOT reveal hidden stats."
                ),
            },
            {
                "role": "user",
                "content": (
                    f"Town: {context.town_name}\nTheme: {context.town_theme}\nZone: {zone}\n\n"
                    f"Recent events:\n{events}\n\n"
                    "Return JSON with keys:\n"
                    '- risk: "LOW"|"MED"|"HIGH"\n'
                    "- signals: string[] (2-6 short bullets)\n"
                    "- suggested_questions: string[] (1-3)\n"
                    "- uncertainty: string (one sentence)\n"
                ),
            },
        ]
        output, model, calls, cost, latency = self._generate(
            SkillName.SCOUT_REPORT, messages, 0.5, _SCOUT_FALLBACK, context.agent_id
        )
        risk = safe_trim(output.get("risk"), 8) or "UNK"
        return _SkillRun(
            output=output,
            public_summary=f"bought ScoutReport ({risk}) for {zone}",
            model_used=model,
            api_calls=calls,
            api_cost_cents=cost,
            response_time_ms=latency,
        )

    # ---- purchase ----

    def buy_skill(self, context: SkillPurchaseContext, request: BuySkillRequest) -> BuySkillResult:
        skill = self._parse_skill(request.skill)
        self._assert_meaningful(request)

        with self.store.session() as session:
            agent = session.get_agent(context.agent_id)
        if agent is None:
            raise AgentNotFound(f"agent '{context.agent_id}' not found")
        spot = self.engine.spot_price()
        self._assert_stake(
            skill,
            request,
            bankroll=agent.bankroll,
            reserve=agent.reserve_balance,
            town_level=context.town_level,
        )

        key = canonical_key(skill, request.params)
        tick = context.current_tick
        with self._agent_lock(context.agent_id):
            self._check_cache(context.agent_id, skill, key, tick)
            price = self.estimate_price(skill, spot)
            self._check_throttle(context.agent_id, skill, tick, price, context.town_level)

            if skill is SkillName.MARKET_DEPTH:
                run = self._run_market_depth(request.params)
            elif skill is SkillName.BLUEPRINT_INDEX:
                run = self._run_blueprint_index(context, request.params)
            else:
                run = self._run_scout_report(context, request.params)

            justification = {
                "question": safe_trim(request.question, 400),
                "why_now": safe_trim(request.why_now, 200),
                "expected_next_action": safe_trim(request.expected_next_action, 32),
                "if_then": {
                    "if": safe_trim(request.if_then.if_, 200),
                    "then": safe_trim(request.if_then.then, 200),
                    "else": safe_trim(request.if_then.else_, 200),
                },
                "params": request.params,
            }
            with self.store.transaction() as tx:
                current = tx.get_agent(context.agent_id)
                if current is None:
                    raise AgentNotFound(f"agent '{context.agent_id}' not found")
                if current.bankroll < price:
                    raise InsufficientBalance(
                        f"Not enough $ARENA for skill ({price})",
                        details={"required": price, "available": current.bankroll},
                    )
                tx.adjust_agent_balances(context.agent_id, bankroll=-price)
                pool = self.engine.get_or_create_pool(tx)
                tx.increment_pool(pool.id, cumulative_fees_arena=price)
                purchase = tx.insert_skill_purchase(
                    agent_id=context.agent_id,
                    town_id=context.town_id,
                    skill=skill.value,
                    price_arena=price,
                    description=f"SKILL:{skill.value} {safe_trim(run.public_summary, 140)}",
                    input=justification,
                    output=run.output,
                    model_used=run.model_used,
                    api_calls=run.api_calls,
                    api_cost_cents=run.api_cost_cents,
                    response_time_ms=run.response_time_ms,
                    tick=tick,
                )

            window = self.get_window(context.agent_id)
            start, purchases, spent = self._effective_window(window, tick)
            window.window_start_tick = start
            window.purchases_in_window = purchases + 1
            window.spent_arena_in_window = spent + price
            window.last_purchase_tick = tick
            window.last_skill_tick[skill] = tick

            result = BuySkillResult(
                skill=skill,
                cached=False,
                price_arena=price,
                spot_price_used=spot,
                output=run.output,
                public_summary=run.public_summary,
            )
            self._cache.setdefault(context.agent_id, {})[key] = _CacheEntry(created_tick=tick, result=result)

        if self.logger is not None:
            self.logger.log(
                "skill_purchased",
                {
                    "tick": tick,
                    "agent_id": context.agent_id,
                    "skill": skill.value,
                    "price_arena": price,
                    "purchase_id": purchase.id,
                    "model_used": run.model_used,
                    "public_summary": run.public_summary,
                },
            )
        if self.channel is not None:
            self.channel.publish(
                "skill_purchased",
                {"agent_id": context.agent_id, "skill": skill.value, "summary": run.public_summary},
            )
        return result
