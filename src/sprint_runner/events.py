from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Literal

logger = logging.getLogger(__name__)

EventName = Literal[
    "phase:change",
    "issue:start",
    "issue:fail",
    "issue:succeed",
    "sprint:start",
    "sprint:planned",
    "sprint:paused",
    "sprint:resumed",
    "sprint:complete",
    "sprint:error",
    "log",
]
EventHandler = Callable[[dict[str, Any]], None]

MAX_EMIT_DEPTH = 8


class SprintEventBus:
    """Synchronous observer keyed by event name.

    Handlers run in registration order. A handler may emit further events;
    nested dispatch runs inline, and anything nested deeper than
    ``max_depth`` is logged and dropped. A failing handler is logged and
    does not stop the remaining handlers.
    """

    def __init__(self, max_depth: int = MAX_EMIT_DEPTH) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._depth = 0
        self.max_depth = max_depth

    def on(self, event: EventName, handler: EventHandler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: EventName, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: EventName) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: EventName, payload: dict[str, Any] | None = None) -> None:
        if self._depth >= self.max_depth:
            logger.error(
                "Dropping event %s: re-entrant emit depth %d reached", event, self.max_depth
            )
            return
        body = dict(payload or {})
        self._depth += 1
        try:
            for handler in list(self._handlers.get(event, [])):
                try:
                    handler(body)
                except Exception:
                    logger.exception("Event handler for %s failed", event)
        finally:
            self._depth -= 1
