"""
Realtime status channel — in-process publish/subscribe keyed by record.

Lifecycle services publish after commit; the events blueprint streams a
record's channel as Server-Sent Events. Delivery is best effort: a viewer
that misses an event re-fetches the record and sees the same state.
"""

import json
import logging
import queue
import threading
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from uuid import uuid4

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
HISTORY_SIZE = 20
MAX_CHANNELS = 1000


@dataclass
class Event:
    id: str
    event_type: str
    record_type: str
    record_id: int
    data: dict
    timestamp: str

    def to_sse(self) -> str:
        """Format event as SSE message."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event_type}",
            f"data: {json.dumps(self.data, default=str)}",
        ]
        return "\n".join(lines) + "\n\n"

    def to_dict(self) -> dict:
        return asdict(self)


def _channel(record_type: str, record_id) -> tuple[str, int]:
    return record_type, int(record_id)


class EventBus:
    """Fan-out of events to per-record subscriber queues."""

    def __init__(self, history_size: int = HISTORY_SIZE, max_channels: int | None = None):
        self._subscribers: dict[tuple[str, int], set[queue.Queue]] = {}
        # Least recently published first
        self._history: OrderedDict[tuple[str, int], deque[Event]] = OrderedDict()
        self._history_size = history_size
        self._max_channels = max_channels or MAX_CHANNELS
        self._lock = threading.Lock()

    def subscribe(self, record_type: str, record_id) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        with self._lock:
            self._subscribers.setdefault(_channel(record_type, record_id), set()).add(q)
        return q

    def unsubscribe(self, record_type: str, record_id, q: queue.Queue) -> None:
        key = _channel(record_type, record_id)
        with self._lock:
            subs = self._subscribers.get(key)
            if subs is None:
                return
            subs.discard(q)
            if not subs:
                del self._subscribers[key]

    def subscriber_count(self, record_type: str, record_id) -> int:
        with self._lock:
            return len(self._subscribers.get(_channel(record_type, record_id), ()))

    def publish(self, record_type: str, record_id, event_type: str, data: dict) -> Event:
        key = _channel(record_type, record_id)
        event = Event(
            id=str(uuid4()),
            event_type=event_type,
            record_type=record_type,
            record_id=key[1],
            data=data,
            timestamp=datetime.now(UTC).isoformat(),
        )
        with self._lock:
            self._history.setdefault(key, deque(maxlen=self._history_size)).append(event)
            self._history.move_to_end(key)
            self._evict_idle_history()
            dead = []
            for q in self._subscribers.get(key, ()):
                try:
                    q.put_nowait(event)
                except queue.Full:
                    logger.warning("Event queue full for %s/%s, dropping subscriber", *key)
                    dead.append(q)
            for q in dead:
                self._subscribers[key].discard(q)
        return event

    def _evict_idle_history(self) -> None:
        """Drop the oldest histories nobody is watching once over the channel cap.

        Caller holds the lock. Channels with live subscribers are kept even
        past the cap; they are evicted after their last viewer leaves.
        """
        excess = len(self._history) - self._max_channels
        if excess <= 0:
            return
        for key in [k for k in self._history if k not in self._subscribers][:excess]:
            del self._history[key]

    def channel_count(self) -> int:
        with self._lock:
            return len(self._history)

    def history(self, record_type: str, record_id) -> list[Event]:
        with self._lock:
            return list(self._history.get(_channel(record_type, record_id), ()))


_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get or create the process-wide event bus."""
    global _event_bus
    with _bus_lock:
        if _event_bus is None:
            _event_bus = EventBus()
        return _event_bus


def publish_status(record_type: str, record_id, status: str, **extra) -> None:
    """Publish a status change; never raises into the caller."""
    try:
        get_event_bus().publish(record_type, record_id, "status_changed", {"status": status, **extra})
    except Exception:
        logger.exception("Realtime publish failed for %s/%s", record_type, record_id)
