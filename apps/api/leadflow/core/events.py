"""In-process publish/subscribe for buyer change notifications.

Events are published after the write has committed; subscribers (cache
invalidation, lifecycle logging) run synchronously in the publishing thread.
"""

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber of ``event_name``; returns how many were called."""
        handlers = list(self._subscribers.get(event_name, ()))
        event = InternalEvent(name=event_name, payload=payload)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
