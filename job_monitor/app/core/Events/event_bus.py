"""
In-process publish/subscribe bus for monitor events.

Handlers are keyed by event class and receive instances of that class (or a
subclass). A failing handler is logged and never interrupts the emitter or the
remaining handlers.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Type

from loguru import logger

Handler = Callable[[Any], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[Type[Any], List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Any], handler: Handler) -> Callable[[], None]:
        """Register `handler` for `event_type`; returns an unsubscribe callable."""
        with self._lock:
            self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: Type[Any], handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: Any) -> int:
        """Deliver `event` to matching handlers; returns how many handled it without error."""
        with self._lock:
            targets = [
                handler
                for event_type, handlers in self._handlers.items()
                if isinstance(event, event_type)
                for handler in handlers
            ]
        delivered = 0
        for handler in targets:
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                logger.error(f"Event handler {getattr(handler, '__qualname__', handler)!s} failed for {type(event).__name__}: {exc}")
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    global _event_bus
    _event_bus = None
