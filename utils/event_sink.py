"""
utils/event_sink.py
-------------------
Structured event stream for batch and per-subscription outcomes.

Events are JSON lines of the shape
``{timestamp, level, message, service, correlation_id, context}``.
They are handed to a QueueHandler and written by a background
QueueListener, so emitting never blocks the billing engine. A failure
while emitting is logged locally and swallowed: the event stream must
never abort processing.
"""

import json
import logging
import queue
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

from models.context import RunContext
from utils.logger import get_logger

logger = get_logger(__name__)

_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class EventSink:
    """
    Asynchronous JSON event emitter.

    Usage:
        sink = EventSink("subtrack")
        sink.start()
        sink.emit("INFO", "Processing 3 subscriptions", ctx, count=3)
        sink.stop()

    Args:
        service_name: Stamped on every event as ``service``.
        path: Optional file to append events to (stdout when None).
        handler: Explicit output handler; overrides ``path``.
    """

    def __init__(self, service_name: str, path: Optional[str] = None,
                 handler: Optional[logging.Handler] = None):
        self.service_name = service_name
        self._queue: queue.SimpleQueue = queue.SimpleQueue()

        if handler is None:
            handler = logging.FileHandler(path) if path else logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter("%(message)s"))

        self._events = logging.getLogger(f"events.{service_name}.{id(self)}")
        self._events.setLevel(logging.INFO)
        self._events.propagate = False
        self._events.addHandler(QueueHandler(self._queue))
        self._listener = QueueListener(self._queue, handler, respect_handler_level=True)
        self._running = False

    def start(self) -> None:
        if not self._running:
            self._listener.start()
            self._running = True

    def stop(self) -> None:
        """Flush pending events and stop the background writer."""
        if self._running:
            self._listener.stop()
            self._running = False

    def emit(self, level: str, message: str, ctx: Optional[RunContext] = None,
             **context) -> None:
        """
        Queue one structured event.

        Args:
            level: One of INFO, WARN, ERROR, CRITICAL.
            message: Human-readable summary.
            ctx: Run context supplying the correlation id.
            **context: Extra key/values placed under ``context``.
        """
        try:
            payload = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "message": message,
                "service": self.service_name,
                "correlation_id": ctx.correlation_id if ctx else None,
                "context": context,
            }
            self._events.log(_LEVELS.get(level, logging.INFO), json.dumps(payload, default=str))
        except Exception as e:
            logger.error(f"Failed to emit event '{message}': {e}")
