"""Typed, caller-recoverable economy failures."""

from __future__ import annotations

from typing import Any


class EconomyError(Exception):
    """Base class for expected economy failures.

    Raising one of these inside a store transaction rolls the transaction back,
    so committed state is never partially updated.
    """

    error_code = "economy_error"
    error_category = "economy"
    retriable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "error_category": self.error_category,
            "retriable": self.retriable,
            "error_details": self.details,
        }


class InvalidAmount(EconomyError):
    error_code = "invalid_amount"
    error_category = "validation"


class InsufficientLiquidity(EconomyError):
    error_code = "insufficient_liquidity"
    error_category = "resource"
    retriable = True


class InsufficientBalance(EconomyError):
    error_code = "insufficient_balance"
    error_category = "resource"
    retriable = True


class SlippageExceeded(EconomyError):
    error_code = "slippage_exceeded"
    error_category = "market"
    retriable = True


class AgentNotFound(EconomyError):
    error_code = "not_found"
    error_category = "resource"


class SkillValidationFailed(EconomyError):
    error_code = "skill_validation_failed"
    error_category = "validation"


class SkillCacheStillValid(EconomyError):
    error_code = "skill_cache_still_valid"
    error_category = "throttle"
    retriable = True

    def __init__(self, message: str, *, wait_ticks: int, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"wait_ticks": wait_ticks, **(details or {})})
        self.wait_ticks = wait_ticks


class SkillThrottled(EconomyError):
    """Raised for global, per-skill, window-count and window-spend limits."""

    error_code = "skill_throttled"
    error_category = "throttle"
    retriable = True

    GLOBAL_COOLDOWN = "global_cooldown"
    SKILL_COOLDOWN = "skill_cooldown"
    WINDOW_COUNT = "window_count"
    WINDOW_SPEND = "window_spend"

    def __init__(self, message: str, *, kind: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details={"kind": kind, **(details or {})})
        self.kind = kind


class PlotUnavailable(EconomyError):
    """Plot is missing or not in the status the operation needs."""

    error_code = "plot_unavailable"
    error_category = "validation"
