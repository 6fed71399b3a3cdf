"""Action execution against the economy services."""

from __future__ import annotations

from typing import Any

from ..errors import EconomyError
from .actions import (
    ActionIntent,
    ActionResult,
    BuySkillIntent,
    NoopIntent,
    QueryEconomyIntent,
    QuoteIntent,
    SwapIntent,
)


def _error_result(exc: EconomyError) -> ActionResult:
    return ActionResult(
        False,
        exc.message,
        error_code=exc.error_code,
        error_category=exc.error_category,
        retriable=exc.retriable,
        error_details=exc.details or None,
    )


class ActionExecutor:
    def __init__(self, world: Any) -> None:
        self.world = world

    def execute(self, intent: ActionIntent) -> ActionResult:
        try:
            if isinstance(intent, NoopIntent):
                result = ActionResult(True, "noop")
            elif isinstance(intent, SwapIntent):
                result = self._swap(intent)
            elif isinstance(intent, QuoteIntent):
                result = self._quote(intent)
            elif isinstance(intent, BuySkillIntent):
                result = self._buy_skill(intent)
            elif isinstance(intent, QueryEconomyIntent):
                result = self._query(intent)
            else:
                result = ActionResult(False, "unknown action", error_code="invalid_action", error_category="validation")
        except EconomyError as exc:
            result = _error_result(exc)

        self._log_action(intent, result)
        return result

    def _swap(self, intent: SwapIntent) -> ActionResult:
        swap = self.world.engine.swap(
            intent.principal_id,
            intent.side,
            intent.amount_in,
            min_amount_out=intent.min_amount_out,
        )
        verb = "bought" if intent.side == "BUY_ARENA" else "sold"
        asset_out = "$ARENA" if intent.side == "BUY_ARENA" else "reserve"
        return ActionResult(
            True,
            f"{verb} {swap.swap.amount_out} {asset_out} for {intent.amount_in} (fee {swap.swap.fee_amount})",
            data=swap.to_dict(),
        )

    def _quote(self, intent: QuoteIntent) -> ActionResult:
        quote = self.world.engine.quote(intent.side, intent.amount_in)
        return ActionResult(True, f"quote: {quote.amount_out} out for {quote.amount_in} in", data=quote.to_dict())

    def _buy_skill(self, intent: BuySkillIntent) -> ActionResult:
        request = intent.request
        if request is None:
            return ActionResult(
                False,
                "buy_skill requires a skill request",
                error_code="invalid_action",
                error_category="validation",
            )
        town_id = request.params.get("town_id")
        context = self.world.build_skill_context(intent.principal_id, town_id if isinstance(town_id, str) else None)
        result = self.world.broker.buy_skill(context, request)
        return ActionResult(
            True,
            f"bought {result.skill.value} for {result.price_arena} $ARENA",
            data=result.to_dict(),
        )

    def _query(self, intent: QueryEconomyIntent) -> ActionResult:
        params = dict(intent.params)
        params.setdefault("agent_id", intent.principal_id)
        payload = self.world.query_handler.execute(intent.query_type, params)
        if payload.get("success", False):
            return ActionResult(True, f"query '{intent.query_type}' succeeded", data=payload)
        return ActionResult(
            False,
            payload.get("error", "query failed"),
            data=payload,
            error_code=payload.get("error_code"),
            error_category="validation",
        )

    def _log_action(self, intent: ActionIntent, result: ActionResult) -> None:
        with self.world.store.session() as session:
            agent = session.get_agent(intent.principal_id)
        self.world.logger.log(
            "action",
            {
                "tick": self.world.current_tick,
                "intent": intent.to_dict(),
                "result": result.to_dict(),
                "bankroll_after": agent.bankroll if agent is not None else None,
                "reserve_after": agent.reserve_balance if agent is not None else None,
            },
        )
