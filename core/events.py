"""Pipeline lifecycle events.

Events are plain dicts with a ``type`` key so they serialise straight to
JSON for the dashboard. Delivery is synchronous and fire-and-forget: a
handler that raises is logged and ignored.
"""

import logging
import threading

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "benchmark-start",
    "plugin-registered",
    "prompt-start",
    "setup-flow-start",
    "programmatic-flow-start",
    "attempt-start",
    "plugin-execution-start",
    "plugin-execution-complete",
    "attempt-complete",
    "prompt-complete",
    "benchmark-complete",
    "background-task-start",
    "background-task-progress",
    "background-task-complete",
)


def make_event(event_type, **fields):
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    return {"type": event_type, **fields}


def plugin_info(plugin):
    return {"id": plugin.id, "name": plugin.name, "description": plugin.description}


def emit(handler, event_type, **fields):
    """Deliver one event to ``handler`` (may be None)."""
    if handler is None:
        return
    event = make_event(event_type, **fields)
    try:
        handler(event)
    except Exception:
        logger.exception("Event handler failed on %s", event_type)


class EventLog:
    """Thread-safe event collector, usable directly as a handler."""

    def __init__(self, forward=None):
        self._events = []
        self._lock = threading.Lock()
        self._forward = forward

    def __call__(self, event):
        with self._lock:
            self._events.append(event)
        if self._forward:
            self._forward(event)

    @property
    def events(self):
        with self._lock:
            return list(self._events)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]

    def types(self):
        return [e["type"] for e in self.events]
