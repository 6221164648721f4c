from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of domain events.

    Handlers subscribe either to an exact event name (``crm.deal.deleted``) or
    to a dotted prefix ending in ``*`` (``crm.deal.*``). Handler errors
    propagate to the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        matched = list(self._subscribers.get(event_name, []))
        for pattern, handlers in self._subscribers.items():
            if pattern.endswith("*") and event_name.startswith(pattern[:-1]):
                matched.extend(handler for handler in handlers if handler not in matched)
        return matched

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)

    def clear(self) -> None:
        self._subscribers.clear()


event_bus = InProcessEventBus()
