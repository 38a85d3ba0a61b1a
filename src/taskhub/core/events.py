"""Synchronous publish/subscribe registry for lifecycle events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Any]


class EventName(str, Enum):
    """Events emitted by dispatchers and tasks."""

    JOB_START = "job:start"
    JOB_COMPLETE = "job:complete"
    JOB_FAILED = "job:failed"
    JOB_RETRY = "job:retry"
    RATE_LIMITED = "rate-limited"
    CONCURRENCY_CHANGE = "concurrency-change"
    PROGRESS = "progress"
    COMPLETED = "completed"


class EventBus:
    """Registry of handlers keyed by event name.

    Handlers run synchronously in registration order. A raising handler is
    logged and skipped; it never reaches the emitter or later handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[tuple[object, EventHandler]]] = {}

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` and return a callable removing that registration."""

        key = _event_key(event)
        registration = object()
        self._handlers.setdefault(key, []).append((registration, handler))

        def unsubscribe() -> None:
            self._discard(key, lambda entry: entry[0] is registration)

        return unsubscribe

    def off(self, event: str, handler: EventHandler) -> None:
        """Remove the most recent registration of ``handler``."""

        self._discard(_event_key(event), lambda entry: entry[1] == handler)

    def emit(self, event: str, *args: Any) -> None:
        key = _event_key(event)
        for _, handler in list(self._handlers.get(key, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Error in event handler for %r", key)

    def remove_all(self, event: str | None = None) -> None:
        if event is None:
            self._handlers.clear()
            return
        self._handlers.pop(_event_key(event), None)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(_event_key(event), ()))

    def _discard(self, key: str, matches: Callable[[tuple[object, EventHandler]], bool]) -> None:
        entries = self._handlers.get(key, [])
        for index in range(len(entries) - 1, -1, -1):
            if matches(entries[index]):
                del entries[index]
                return


def _event_key(event: str) -> str:
    # Enum members hash by name, so keys are normalized to the plain value.
    return event.value if isinstance(event, Enum) else event
