"""
Live-update broker for server-sent events.

Each connected client gets its own queue. Publishing never blocks: a
client whose queue is full simply misses the event and refetches on its
next refresh.
"""
import json
import threading
import time
from queue import Queue, Empty, Full

from app_logging import app_logger

MAX_QUEUED_EVENTS = 100
KEEPALIVE_SECONDS = 15


class EventBroker:

    def __init__(self, max_queued=MAX_QUEUED_EVENTS):
        self._lock = threading.Lock()
        self._subscribers = []
        self._max_queued = max_queued

    def subscribe(self):
        q = Queue(maxsize=self._max_queued)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def publish(self, event_type, data):
        message = {"type": event_type, "data": data, "timestamp": time.time()}
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(message)
            except Full:
                app_logger.debug(f"Dropping {event_type} event for slow subscriber")
        return len(subscribers)

    def stream(self, q, keepalive=KEEPALIVE_SECONDS):
        """SSE generator for one subscriber; unsubscribes when the client goes away."""
        try:
            yield ": connected\n\n"
            while True:
                try:
                    message = q.get(timeout=keepalive)
                except Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {message['type']}\ndata: {json.dumps(message)}\n\n"
        finally:
            self.unsubscribe(q)


broker = EventBroker()


def send_file_refresh(file_ids):
    return broker.publish("file_refresh", {"file_ids": list(file_ids)})


def send_series_refresh(series_ids):
    return broker.publish("series_refresh", {"series_ids": list(series_ids)})


def send_metadata_change(scope, payload):
    """scope is 'file', 'series' or 'batch'."""
    return broker.publish("metadata_change", {"scope": scope, **payload})
