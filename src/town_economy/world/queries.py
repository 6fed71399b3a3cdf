"""Read-only economy queries for the `query_economy` action."""

from __future__ import annotations

from typing import Any

from ..market.amm import clamp_int
from ..skills.broker import SkillName


class EconomyQueryHandler:
    def __init__(self, world: Any) -> None:
        self.world = world

    def execute(self, query_type: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        params = params or {}
        handler = getattr(self, f"_query_{query_type}", None)
        if handler is None:
            return {
                "success": False,
                "error": f"unknown query_type '{query_type}'",
                "error_code": "invalid_query_type",
            }
        return handler(params)

    def _query_pool(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"success": True, "query_type": "pool", "result": self.world.engine.get_pool_summary()}

    def _query_swaps(self, params: dict[str, Any]) -> dict[str, Any]:
        swaps = self.world.engine.list_recent_swaps(params.get("limit", 30))
        return {"success": True, "query_type": "swaps", "returned": len(swaps), "results": swaps}

    def _query_events(self, params: dict[str, Any]) -> dict[str, Any]:
        events = [event.to_dict() for event in self.world.events.get_active_events()]
        return {"success": True, "query_type": "events", "returned": len(events), "results": events}

    def _query_prompt(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"success": True, "query_type": "prompt", "result": self.world.events.get_prompt_text()}

    def _query_multipliers(self, params: dict[str, Any]) -> dict[str, Any]:
        zone = params.get("zone")
        events = self.world.events
        return {
            "success": True,
            "query_type": "multipliers",
            "result": {
                "cost": events.get_cost_multiplier(),
                "yield": events.get_yield_multiplier(zone if isinstance(zone, str) else None),
                "upkeep": events.get_upkeep_multiplier(),
                "bounty": events.get_active_bounty(),
                "gold_rush": events.get_gold_rush_zone(),
            },
        }

    def _query_agent(self, params: dict[str, Any]) -> dict[str, Any]:
        agent_id = params.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id:
            return {"success": False, "error": "agent_id required", "error_code": "missing_param"}
        with self.world.store.session() as session:
            agent = session.get_agent(agent_id)
        if agent is None:
            return {"success": False, "error": "agent not found", "error_code": "not_found"}
        return {"success": True, "query_type": "agent", "result": agent.to_dict()}

    def _query_ledger(self, params: dict[str, Any]) -> dict[str, Any]:
        limit = clamp_int(params.get("limit", 50), 1, 200)
        agent_id = params.get("agent_id") if params.get("scope") != "all" else None
        with self.world.store.session() as session:
            rows = session.list_ledger(limit=limit, agent_id=agent_id if isinstance(agent_id, str) else None)
        return {
            "success": True,
            "query_type": "ledger",
            "returned": len(rows),
            "results": [row.to_dict() for row in rows],
        }

    def _query_skill_price(self, params: dict[str, Any]) -> dict[str, Any]:
        spot = self.world.engine.spot_price()
        skill = params.get("skill")
        if isinstance(skill, str) and skill.strip():
            try:
                names = [SkillName(skill.strip().upper())]
            except ValueError:
                return {"success": False, "error": f"unknown skill '{skill}'", "error_code": "invalid_argument"}
        else:
            names = list(SkillName)
        return {
            "success": True,
            "query_type": "skill_price",
            "spot_price": spot,
            "results": {name.value: self.world.broker.estimate_price(name, spot) for name in names},
        }
