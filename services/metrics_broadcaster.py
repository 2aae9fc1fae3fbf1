"""
Real-time metrics distribution.

Publishers (the sampling loop, the HTTP broadcast endpoint) push metric
events per session; subscribers (SSE dashboard connections) receive them in
publish order through their own bounded queue. A full queue drops its oldest
event, so a slow subscriber never blocks a publisher.

Event types: "connected", "metrics", "session_ended". Each event carries an
epoch-ms timestamp that never decreases within a session.
"""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import config

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_METRICS = "metrics"
EVENT_SESSION_ENDED = "session_ended"


@dataclass
class MetricsEvent:
    type: str
    session_id: str
    timestamp: int
    data: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        out = {"type": self.type, "sessionId": self.session_id, "timestamp": self.timestamp}
        if self.data is not None:
            out["data"] = self.data
        return out


def format_sse(event: MetricsEvent) -> str:
    """Frame an event as one Server-Sent Events message."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


class Subscription:
    """
    One subscriber's view of a session's events.

    Iterate it (or call get()) to receive events; cancel() detaches it. Iteration
    ends once the subscription is closed and its queue is drained.
    """

    def __init__(self, broadcaster: "MetricsBroadcaster", session_id: str, maxlen: int):
        self._broadcaster = broadcaster
        self.session_id = session_id
        self._queue: Deque[MetricsEvent] = deque(maxlen=maxlen)
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def _push(self, event: MetricsEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify_all()

    def _close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed and not self._queue

    def get(self, timeout: Optional[float] = None) -> Optional[MetricsEvent]:
        """Next event, or None on timeout or when closed and drained."""
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def cancel(self) -> None:
        self._broadcaster._unsubscribe(self)
        self._close()

    def __iter__(self):
        while True:
            event = self.get(timeout=1.0)
            if event is not None:
                yield event
            elif self.closed:
                return


class MetricsBroadcaster:
    """Session-keyed fan-out with the latest metrics cached per session."""

    def __init__(self, queue_size: int = config.REALTIME_QUEUE_SIZE, clock: Callable[[], float] = time.time):
        self.queue_size = max(1, int(queue_size))
        self._clock = clock
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._last_ts: Dict[str, int] = {}

    def _next_timestamp(self, session_id: str) -> int:
        ts = max(int(self._clock() * 1000), self._last_ts.get(session_id, 0))
        self._last_ts[session_id] = ts
        return ts

    def subscribe(self, session_id: str) -> Subscription:
        """
        Attach a subscriber. It first receives a "connected" event, then the
        latest cached metrics (if any), then live events.
        """
        sub = Subscription(self, session_id, self.queue_size)
        with self._lock:
            sub._push(MetricsEvent(EVENT_CONNECTED, session_id, self._next_timestamp(session_id)))
            latest = self._latest.get(session_id)
            if latest is not None:
                sub._push(MetricsEvent(EVENT_METRICS, session_id, self._next_timestamp(session_id), latest))
            self._subscribers.setdefault(session_id, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.session_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.session_id]
                    if sub.session_id not in self._latest:
                        self._last_ts.pop(sub.session_id, None)

    def publish(self, session_id: str, data: Dict[str, Any]) -> MetricsEvent:
        """Cache and fan out a metrics payload. Never blocks on subscribers."""
        with self._lock:
            self._latest[session_id] = data
            event = MetricsEvent(EVENT_METRICS, session_id, self._next_timestamp(session_id), data)
            for sub in self._subscribers.get(session_id, []):
                sub._push(event)
        return event

    def end_session(self, session_id: str) -> MetricsEvent:
        """Send "session_ended", close every subscriber and forget the cached metrics."""
        with self._lock:
            event = MetricsEvent(EVENT_SESSION_ENDED, session_id, self._next_timestamp(session_id))
            subs = self._subscribers.pop(session_id, [])
            self._latest.pop(session_id, None)
            self._last_ts.pop(session_id, None)
            for sub in subs:
                sub._push(event)
                sub._close()
        logger.debug("Session %s ended; closed %d subscriber(s)", session_id, len(subs))
        return event

    def get_latest(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._latest.get(session_id)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def active_sessions(self) -> List[str]:
        with self._lock:
            return sorted(set(self._latest) | set(self._subscribers))


_broadcaster: Optional[MetricsBroadcaster] = None
_broadcaster_lock = threading.Lock()


def get_metrics_broadcaster() -> MetricsBroadcaster:
    """Return the process-wide broadcaster, creating it on first call (lazy init)."""
    global _broadcaster
    with _broadcaster_lock:
        if _broadcaster is None:
            _broadcaster = MetricsBroadcaster()
        return _broadcaster


def set_metrics_broadcaster(broadcaster: Optional[MetricsBroadcaster]) -> None:
    global _broadcaster
    with _broadcaster_lock:
        _broadcaster = broadcaster
