"""
In-process event bus for phase events.
Handlers run synchronously in the publishing thread; a failing handler is
logged and never affects the publisher.
"""

import logging
from threading import Lock
from typing import Callable, List

from chartflow.processing.events.phase_events import PhaseEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[PhaseEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            if handler not in self._subscribers:
                self._subscribers.append(handler)
        logger.debug("Subscribed handler %s to phase events", _handler_name(handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

    def publish(self, event: PhaseEvent) -> None:
        logger.debug(
            "Publishing phase %s for chart %s (job %s)",
            event.phase.value,
            event.chart_number,
            event.job_id,
        )
        with self._lock:
            handlers = list(self._subscribers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Phase event handler {_handler_name(handler)} failed: {e}",
                    exc_info=True,
                )


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", type(handler).__name__)


def log_phase_event(event: PhaseEvent) -> None:
    """Default listener: write every phase transition to the log."""
    logger.info(
        "[%s] chart=%s job=%s attempt=%s %s",
        event.phase.value,
        event.chart_number,
        event.job_id,
        event.attempt,
        event.message,
    )


# Global instance used by the CLI worker and the API process
event_bus = EventBus()
