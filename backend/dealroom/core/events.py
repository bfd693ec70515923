"""
In-process publish/subscribe for domain events.

Events are persisted to the outbox table by EventService in the same
transaction as the change that produced them; the bus only fans committed
events out to in-process consumers (ledger summaries, settlement triggers).
External delivery reads the outbox.
"""
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from dealroom.core.logging_config import LoggingConfig

logger = LoggingConfig.get_logger(__name__)

Handler = Callable[[Session, Dict[str, Any]], None]


class EventBus:
    """Synchronous fan-out of committed domain events"""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: Handler):
        with self._lock:
            if handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Handler):
        with self._lock:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

    def handlers_for(self, event_type: str) -> List[Handler]:
        with self._lock:
            return list(self._handlers.get(event_type, []))

    def publish(self, db: Session, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Deliver one event to every subscriber.

        A failing subscriber is logged and does not stop the others; its
        uncommitted work is rolled back. Returns one entry per failure so the
        caller can record it on the outbox row for replay.
        """
        failures = []
        for handler in self.handlers_for(event["event_type"]):
            name = getattr(handler, "__qualname__", repr(handler))
            try:
                handler(db, event)
            except Exception as e:
                db.rollback()
                logger.error(
                    f"Subscriber {name} failed for {event['event_type']}",
                    exc_info=True,
                    extra={"event_id": str(event.get("id")), "event_type": event["event_type"]}
                )
                failures.append({"handler": name, "error": e.__class__.__name__, "message": str(e)})
        return failures


_bus: Optional[EventBus] = None
_bus_guard = threading.Lock()


def get_event_bus() -> EventBus:
    """Process-wide bus with the default subscribers attached"""
    global _bus
    with _bus_guard:
        if _bus is None:
            _bus = EventBus()
            from dealroom.services import register_default_subscribers
            register_default_subscribers(_bus)
        return _bus
