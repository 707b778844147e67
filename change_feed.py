"""
In-process change stream for the report tables.

The store publishes one event per committed insert/update; each subscriber
gets its own bounded queue and sees events in publish order.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from errors import RealtimeError

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


@dataclass
class ChangeEvent:
    table: str
    type: str
    record: Dict
    timestamp: float = field(default_factory=time.time)


class Subscription:
    def __init__(self, feed: "ChangeFeed", maxsize: int):
        self.feed = feed
        self.events: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None if nothing arrived within the timeout."""
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def unsubscribe(self) -> None:
        self.feed.unsubscribe(self)


class ChangeFeed:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self) -> Subscription:
        with self._lock:
            if self._closed:
                raise RealtimeError("Change feed is closed")
            sub = Subscription(self, self.queue_size)
            self._subscribers.append(sub)
        logger.debug(f"Change feed subscriber added ({len(self._subscribers)} total)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
            sub.closed = True

    def publish(self, event: ChangeEvent) -> int:
        """Fan an event out to every subscriber. Returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for sub in subscribers:
            try:
                sub.events.put_nowait(event)
                delivered += 1
            except queue.Full:
                sub.dropped += 1
                logger.warning(f"Subscriber queue full; dropped {event.type} on {event.table}")
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for sub in subscribers:
            sub.closed = True
