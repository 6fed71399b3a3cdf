"""Skill marketplace exports."""

from .broker import (
    SKILL_CONFIG,
    BuySkillRequest,
    BuySkillResult,
    IfThenPlan,
    SkillBroker,
    SkillConfig,
    SkillName,
    SkillPurchaseContext,
    estimate_skill_price,
)
from .inference import InferenceClient, InferenceResponse, LiteLLMInference

__all__ = [
    "SKILL_CONFIG",
    "BuySkillRequest",
    "BuySkillResult",
    "IfThenPlan",
    "SkillBroker",
    "SkillConfig",
    "SkillName",
    "SkillPurchaseContext",
    "estimate_skill_price",
    "InferenceClient",
    "InferenceResponse",
    "LiteLLMInference",
]
