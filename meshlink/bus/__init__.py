"""In-process event bus between the core state machines and the presenter."""

from meshlink.bus.events import CoreEvent, EventKind
from meshlink.bus.queue import EventSubscription, MessageBus

__all__ = ["CoreEvent", "EventKind", "EventSubscription", "MessageBus"]
