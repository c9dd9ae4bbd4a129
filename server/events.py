"""
Publish/subscribe channel keyed by vehicle id.

The engine publishes one event per committed state change; how events
reach live clients (WebSocket, SSE, polling) is up to the subscriber.
"""
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List
import logging

from .clock import utcnow

logger = logging.getLogger(__name__)

BID_PLACED = "bid_placed"
STATUS_CHANGED = "status_changed"


@dataclass
class AuctionEvent:
    vehicle_id: int
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class EventBus:
    def __init__(self):
        self._subscribers: Dict[int, List[Callable[[AuctionEvent], None]]] = defaultdict(list)
        self._lock = threading.RLock()

    def subscribe(self, vehicle_id: int, callback: Callable[[AuctionEvent], None]) -> Callable[[], None]:
        """Register callback for vehicle_id. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers[vehicle_id].append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(vehicle_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._subscribers[vehicle_id]

        return unsubscribe

    def publish(self, event: AuctionEvent) -> int:
        """Deliver event to the vehicle's subscribers. Returns how many got it."""
        with self._lock:
            callbacks = list(self._subscribers.get(event.vehicle_id, ()))

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber failed for {event.kind} on vehicle {event.vehicle_id}: {e}", exc_info=True)
        return delivered

    def subscriber_count(self, vehicle_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(vehicle_id, ()))


event_bus = EventBus()
