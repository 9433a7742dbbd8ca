"""Event bus: typed client events and the router that dispatches them."""

from relaybot.bus.events import EventKind, InboundEvent, InboundMessage
from relaybot.bus.router import EventRouter

__all__ = ["EventKind", "EventRouter", "InboundEvent", "InboundMessage"]
