"""Market package exports."""

from .amm import MarketEngine, Quote, SwapResult
from .pulse import MarketPulse, PulseTrade

__all__ = ["MarketEngine", "Quote", "SwapResult", "MarketPulse", "PulseTrade"]
