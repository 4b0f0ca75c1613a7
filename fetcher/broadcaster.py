import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class EventType(str, Enum):
    QUEUED = "queued"
    PROGRESS = "progress"
    INFO = "info"
    COMPLETE = "complete"
    ERROR = "error"
    USER_CANCELLED = "usercancelled"


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    job_id: str
    label: str | None = None
    progress: int | None = None
    error: str | None = None
    is_bulk: bool = False
    file: str | None = None
    message: str | None = None

    def to_dict(self):
        payload = {
            "type": EventType(self.type).value,
            "job_id": self.job_id,
            "label": self.label,
            "is_bulk": self.is_bulk,
        }
        for key in ("progress", "error", "file", "message"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


def format_sse(event, event_name="message"):
    data = json.dumps(event.to_dict() if isinstance(event, ProgressEvent) else event, default=str)
    return f"event: {event_name}\ndata: {data}\n\n"


def format_keepalive(now=None):
    now = now or datetime.now(timezone.utc)
    return f": keepalive {now.isoformat()}\n\n"


class ProgressBroadcaster:
    """Per-user fan-out of job events to live subscribers.

    Nothing is buffered: events published while a user has no subscriber
    are dropped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers = {}
        self._streams = {}

    def subscribe(self, user_id, handler):
        with self._lock:
            self._handlers.setdefault(user_id, set()).add(handler)

    def unsubscribe(self, user_id, handler):
        with self._lock:
            handlers = self._handlers.get(user_id)
            if not handlers:
                return
            handlers.discard(handler)
            if not handlers:
                del self._handlers[user_id]

    def register_stream(self, user_id, stream):
        with self._lock:
            previous = self._streams.get(user_id)
            self._streams[user_id] = stream
        if previous is not None and previous is not stream:
            logging.info("Replacing live stream for user %s", user_id)
        return previous

    def unregister_stream(self, user_id, stream=None):
        with self._lock:
            current = self._streams.get(user_id)
            if current is None:
                return False
            if stream is not None and current is not stream:
                return False
            del self._streams[user_id]
            return True

    def subscriber_count(self, user_id):
        with self._lock:
            count = len(self._handlers.get(user_id, ()))
            if user_id in self._streams:
                count += 1
            return count

    def publish(self, user_id, event):
        with self._lock:
            handlers = list(self._handlers.get(user_id, ()))
            stream = self._streams.get(user_id)
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                logging.warning("Progress subscriber for user %s failed: %s", user_id, exc)
        if stream is not None:
            try:
                stream.send(event)
                delivered += 1
            except Exception as exc:
                logging.warning("Live stream for user %s failed: %s", user_id, exc)
                self.unregister_stream(user_id, stream)
        return delivered


class QueueStream:
    """Thread-safe bridge from worker threads to an asyncio consumer."""

    def __init__(self, loop, maxsize=0):
        self.loop = loop
        self.queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, event):
        if self.closed or self.loop.is_closed():
            raise RuntimeError("stream closed")
        self.loop.call_soon_threadsafe(self._put, event)

    def _put(self, event):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logging.warning("Live stream queue full; dropping %s event for job %s", event.type, event.job_id)

    async def next_event(self, timeout):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self):
        self.closed = True
