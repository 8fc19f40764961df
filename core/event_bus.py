"""In-process event bus for trial lifecycle notifications."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("rankup.events")

EventHandler = Callable[[str, dict[str, Any]], None]

TRIAL_STARTED = "trial.started"
TRIAL_PASSED = "trial.passed"
TRIAL_FAILED = "trial.failed"
SESSION_RESERVED = "session.reserved"
SESSION_SETTLED = "session.settled"


class EventBus:
    """Dispatches committed state changes to subscribers by event name.

    Events are emitted after the owning transaction commits, so a failing
    subscriber is logged and skipped rather than reported as a failed
    operation.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register a callback for an event."""
        self._handlers[event_name].append(handler)

    def subscribe_many(self, event_names: list[str], handler: EventHandler) -> None:
        for name in event_names:
            self.subscribe(name, handler)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver an event to every subscriber."""
        for handler in self._handlers.get(event_name, []):
            try:
                handler(event_name, payload)
            except Exception:
                logger.exception("Handler for %s failed", event_name)
