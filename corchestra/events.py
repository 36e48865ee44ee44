"""
Lifecycle event fan-out.

Every state transition of every service instance becomes a LifecycleEvent
delivered to each subscribed sink. Sinks are plain callables; a sink that
raises is logged and skipped so one broken observer cannot stall
supervision.
"""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from corchestra.schemas import LifecycleEvent, ServiceState

logger = logging.getLogger(__name__)

EventSink = Callable[[LifecycleEvent], None]


class EventBus:
    """Delivers lifecycle events to subscribed sinks, in subscription order."""

    def __init__(self, sinks: Optional[list[EventSink]] = None):
        self._sinks: list[EventSink] = list(sinks or [])

    def subscribe(self, sink: EventSink) -> Callable[[], None]:
        """Add a sink. Returns a function that unsubscribes it."""
        self._sinks.append(sink)

        def unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return unsubscribe

    def emit(self, event: LifecycleEvent) -> None:
        for sink in list(self._sinks):
            try:
                sink(event)
            except Exception:
                logger.exception(f"Event sink {sink!r} failed on {event.service_name}")

    __call__ = emit


class LoggingEventSink:
    """Writes each event to the corchestra.events logger."""

    def __init__(self, logger_name: str = "corchestra.events"):
        self._logger = logging.getLogger(logger_name)

    def __call__(self, event: LifecycleEvent) -> None:
        level = logging.WARNING if event.to_state == ServiceState.FAILED else logging.INFO
        message = f"{event.service_name}: {event.from_state.value} -> {event.to_state.value}"
        if event.detail:
            message += f" ({event.detail})"
        self._logger.log(
            level,
            message,
            extra={"service": event.service_name, "event": event.to_dict()},
        )


class JsonlEventSink:
    """Appends each event as one JSON line to a file."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, event: LifecycleEvent) -> None:
        with open(self.path, "a") as f:
            f.write(json.dumps(event.to_dict()) + "\n")


class EventRecorder:
    """Keeps every event in memory, with per-service queries for inspection."""

    def __init__(self):
        self.events: list[LifecycleEvent] = []

    def __call__(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def for_service(self, name: str) -> list[LifecycleEvent]:
        return [e for e in self.events if e.service_name == name]

    def states(self, name: str) -> list[ServiceState]:
        """The sequence of states the service entered."""
        return [e.to_state for e in self.for_service(name)]

    def first_entry_order(self, state: ServiceState) -> list[str]:
        """Service names in the order they first entered state."""
        seen: list[str] = []
        for event in self.events:
            if event.to_state == state and event.service_name not in seen:
                seen.append(event.service_name)
        return seen
