"""World package exports."""

from .actions import ActionIntent, ActionResult, parse_intent_from_json
from .channel import EventChannel
from .events import WorldEvent, WorldEventGenerator
from .world import World

__all__ = [
    "World",
    "ActionIntent",
    "ActionResult",
    "parse_intent_from_json",
    "EventChannel",
    "WorldEvent",
    "WorldEventGenerator",
]
