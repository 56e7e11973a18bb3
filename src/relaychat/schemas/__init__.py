"""
Pydantic schemas for protocol data crossing the engine boundary.

These schemas validate what relays hand us and what we hand back to them.
"""

from .connection import ConnectionStatus
from .event import Event, EventDraft
from .interaction import InteractionCounts
from .profile import Profile

__all__ = [
    "ConnectionStatus",
    "Event", "EventDraft",
    "InteractionCounts",
    "Profile",
]
