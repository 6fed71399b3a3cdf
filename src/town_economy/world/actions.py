"""Action intent definitions and JSON parsing."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..skills.broker import BuySkillRequest, IfThenPlan


class ActionType(str, Enum):
    NOOP = "noop"
    BUY_ARENA = "buy_arena"
    SELL_ARENA = "sell_arena"
    QUOTE = "quote"
    BUY_SKILL = "buy_skill"
    QUERY_ECONOMY = "query_economy"


KNOWN_QUERY_TYPES: set[str] = {
    "pool",
    "swaps",
    "events",
    "prompt",
    "multipliers",
    "agent",
    "ledger",
    "skill_price",
}


@dataclass
class ActionIntent:
    action_type: ActionType
    principal_id: str
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "principal_id": self.principal_id,
            "reasoning": self.reasoning,
        }


@dataclass
class NoopIntent(ActionIntent):
    def __init__(self, principal_id: str, reasoning: str = "") -> None:
        super().__init__(ActionType.NOOP, principal_id, reasoning)


@dataclass
class SwapIntent(ActionIntent):
    amount_in: int = 0
    min_amount_out: int | None = None

    def __init__(
        self,
        principal_id: str,
        action_type: ActionType,
        amount_in: int,
        min_amount_out: int | None = None,
        reasoning: str = "",
    ) -> None:
        super().__init__(action_type, principal_id, reasoning)
        self.amount_in = amount_in
        self.min_amount_out = min_amount_out

    @property
    def side(self) -> str:
        return "BUY_ARENA" if self.action_type is ActionType.BUY_ARENA else "SELL_ARENA"

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"amount_in": self.amount_in, "min_amount_out": self.min_amount_out})
        return d


@dataclass
class QuoteIntent(ActionIntent):
    side: str = ""
    amount_in: int = 0

    def __init__(self, principal_id: str, side: str, amount_in: int, reasoning: str = "") -> None:
        super().__init__(ActionType.QUOTE, principal_id, reasoning)
        self.side = side
        self.amount_in = amount_in

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"side": self.side, "amount_in": self.amount_in})
        return d


@dataclass
class BuySkillIntent(ActionIntent):
    request: BuySkillRequest | None = None

    def __init__(self, principal_id: str, request: BuySkillRequest, reasoning: str = "") -> None:
        super().__init__(ActionType.BUY_SKILL, principal_id, reasoning)
        self.request = request

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        if self.request is not None:
            d.update(
                {
                    "skill": self.request.skill,
                    "question": self.request.question,
                    "expected_next_action": self.request.expected_next_action,
                    "params": self.request.params,
                }
            )
        return d


@dataclass
class QueryEconomyIntent(ActionIntent):
    query_type: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def __init__(
        self,
        principal_id: str,
        query_type: str,
        params: dict[str, Any] | None = None,
        reasoning: str = "",
    ) -> None:
        super().__init__(ActionType.QUERY_ECONOMY, principal_id, reasoning)
        self.query_type = query_type
        self.params = params or {}

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({"query_type": self.query_type, "params": self.params})
        return d


@dataclass
class ActionResult:
    success: bool
    message: str
    data: dict[str, Any] | None = None
    error_code: str | None = None
    error_category: str | None = None
    retriable: bool = False
    error_details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "data": self.data,
        }
        if self.error_code:
            payload["error_code"] = self.error_code
            payload["error_category"] = self.error_category
            payload["retriable"] = self.retriable
        if self.error_details is not None:
            payload["error_details"] = self.error_details
        return payload


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
    return None


def _infer_query_type(query_text: str, *, principal_id: str) -> tuple[str, dict[str, Any]]:
    lowered = query_text.strip().lower()
    if lowered in KNOWN_QUERY_TYPES:
        return lowered, {}

    if any(token in lowered for token in ("price", "skill", "cost of")):
        return "skill_price", {}
    if any(token in lowered for token in ("swap", "trade", "history")):
        return "swaps", {"limit": 20}
    if any(token in lowered for token in ("multiplier", "yield", "upkeep")):
        return "multipliers", {}
    if "prompt" in lowered:
        return "prompt", {}
    if any(token in lowered for token in ("event", "storm", "bounty", "world")):
        return "events", {}
    if "ledger" in lowered:
        return "ledger", {"agent_id": principal_id}
    if any(token in lowered for token in ("balance", "bankroll", "agent", "self", "me")):
        return "agent", {"agent_id": principal_id}
    return "pool", {}


def _normalize_payload(principal_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    data = dict(payload)

    parameters = data.get("parameters")
    if isinstance(parameters, dict):
        for key, value in parameters.items():
            data.setdefault(key, value)

    if "query_type" not in data and isinstance(data.get("queryType"), str):
        data["query_type"] = data["queryType"]
    if "amount_in" not in data and "amount" in data:
        data["amount_in"] = data["amount"]

    action_type_raw = str(data.get("action_type", "")).strip().lower()
    action_alias = data.get("action")
    if isinstance(action_alias, str):
        alias = action_alias.strip().lower()
        if alias and (not action_type_raw or action_type_raw == ActionType.NOOP.value) and alias != ActionType.NOOP.value:
            action_type_raw = alias
            data["action_type"] = alias

    if action_type_raw == ActionType.QUERY_ECONOMY.value:
        raw_params = data.get("params")
        params: dict[str, Any] = dict(raw_params) if isinstance(raw_params, dict) else {}
        if isinstance(parameters, dict):
            nested_params = parameters.get("params")
            if isinstance(nested_params, dict):
                params.update(nested_params)

        query_type = data.get("query_type")
        if not isinstance(query_type, str) or not query_type.strip():
            query_type = data.get("query") if isinstance(data.get("query"), str) else ""
        query_type = query_type.strip().lower()
        if query_type not in KNOWN_QUERY_TYPES:
            inferred_type, inferred_params = _infer_query_type(query_type, principal_id=principal_id)
            query_type = inferred_type
            for key, value in inferred_params.items():
                params.setdefault(key, value)

        data["query_type"] = query_type
        data["params"] = params

    return data


def parse_intent_from_dict(principal_id: str, data: dict[str, Any]) -> ActionIntent | str:
    data = _normalize_payload(principal_id, data)
    action_type_raw = str(data.get("action_type", "")).strip().lower()
    reasoning = str(data.get("reasoning", ""))

    if action_type_raw == ActionType.NOOP.value:
        return NoopIntent(principal_id, reasoning)

    if action_type_raw in (ActionType.BUY_ARENA.value, ActionType.SELL_ARENA.value):
        amount_in = _coerce_int(data.get("amount_in"))
        if amount_in is None or amount_in <= 0:
            return f"{action_type_raw} requires positive integer 'amount_in'"
        min_amount_out = None
        if data.get("min_amount_out") is not None:
            min_amount_out = _coerce_int(data.get("min_amount_out"))
            if min_amount_out is None or min_amount_out < 0:
                return f"{action_type_raw} 'min_amount_out' must be a non-negative integer"
        return SwapIntent(principal_id, ActionType(action_type_raw), amount_in, min_amount_out, reasoning)

    if action_type_raw == ActionType.QUOTE.value:
        side = str(data.get("side", "")).strip().upper()
        if side not in ("BUY_ARENA", "SELL_ARENA"):
            return "quote requires 'side' BUY_ARENA|SELL_ARENA"
        amount_in = _coerce_int(data.get("amount_in"))
        if amount_in is None or amount_in <= 0:
            return "quote requires positive integer 'amount_in'"
        return QuoteIntent(principal_id, side, amount_in, reasoning)

    if action_type_raw == ActionType.BUY_SKILL.value:
        skill = data.get("skill")
        if not isinstance(skill, str) or not skill.strip():
            return "buy_skill requires 'skill'"
        params = data.get("params", {})
        if not isinstance(params, dict):
            return "buy_skill params must be a dict"
        if_then = data.get("if_then")
        if if_then is not None and not isinstance(if_then, dict):
            return "buy_skill 'if_then' must be an object with 'if' and 'then'"
        request = BuySkillRequest(
            skill=skill,
            question=str(data.get("question", "") or ""),
            why_now=str(data.get("why_now", "") or ""),
            expected_next_action=str(data.get("expected_next_action", "") or ""),
            if_then=IfThenPlan.from_dict(if_then),
            params=dict(params),
        )
        return BuySkillIntent(principal_id, request, reasoning)

    if action_type_raw == ActionType.QUERY_ECONOMY.value:
        query_type = data.get("query_type")
        params = data.get("params", {})
        if not isinstance(query_type, str) or not query_type:
            return "query_economy requires 'query_type'"
        if not isinstance(params, dict):
            return "query_economy params must be a dict"
        return QueryEconomyIntent(principal_id, query_type, params, reasoning)

    return f"Unknown action_type: {action_type_raw or '<missing>'}"


def parse_intent_from_json(principal_id: str, json_str: str) -> ActionIntent | str:
    """Parse a model-produced JSON action into a typed intent."""
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as exc:
        return f"Invalid JSON: {exc}"

    if not isinstance(data, dict):
        return "Action payload must be a JSON object"
    return parse_intent_from_dict(principal_id, data)
