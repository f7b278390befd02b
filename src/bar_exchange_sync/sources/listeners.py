from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class EventListenerRegistry:
    """Per-event multiset of callbacks with synchronous, failure-isolated delivery."""

    def __init__(self) -> None:
        self._listeners: dict[str, dict[int, EventCallback]] = {}
        self._tokens = itertools.count()

    def on(self, event_name: str, callback: EventCallback) -> Unsubscribe:
        token = next(self._tokens)
        self._listeners.setdefault(event_name, {})[token] = callback

        def unsubscribe() -> None:
            registrations = self._listeners.get(event_name)
            if registrations is None:
                return
            registrations.pop(token, None)
            if not registrations:
                self._listeners.pop(event_name, None)

        return unsubscribe

    def listener_count(self, event_name: str | None = None) -> int:
        if event_name is not None:
            return len(self._listeners.get(event_name, {}))
        return sum(len(registrations) for registrations in self._listeners.values())

    def event_names(self) -> tuple[str, ...]:
        return tuple(self._listeners)

    def emit(self, event_name: str, payload: Any) -> int:
        """Deliver ``payload`` to every current listener; returns how many raised."""
        registrations = self._listeners.get(event_name)
        if not registrations:
            return 0

        failures = 0
        # dicts keep insertion order, so token order is registration order
        for callback in list(registrations.values()):
            try:
                callback(payload)
            except Exception:
                failures += 1
                logger.exception("Event listener failed", extra={"event": event_name})
        return failures

    def clear(self) -> None:
        self._listeners.clear()
