"""
Real-time metrics distribution tests.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import unittest


class StepClock:
    """Returns the queued times in order, repeating the last one."""

    def __init__(self, *times):
        self.times = list(times)

    def __call__(self):
        if len(self.times) > 1:
            return self.times.pop(0)
        return self.times[0]


def drain(sub):
    events = []
    while True:
        event = sub.get(timeout=0)
        if event is None:
            return events
        events.append(event)


class TestMetricsBroadcaster(unittest.TestCase):
    """Fan-out, ordering and bounded queues."""

    def test_subscribe_sends_connected_then_latest(self):
        """A new subscriber gets "connected" and then the cached metrics."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster(queue_size=8)
        b.publish("s1", {"eyeContactPercentage": 50})
        sub = b.subscribe("s1")
        events = drain(sub)
        self.assertEqual([e.type for e in events], ["connected", "metrics"])
        self.assertEqual(events[1].data["eyeContactPercentage"], 50)

    def test_events_delivered_in_publish_order(self):
        """Metrics reach subscribers in the order published."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster(queue_size=16)
        sub = b.subscribe("s1")
        for i in range(5):
            b.publish("s1", {"n": i})
        events = [e for e in drain(sub) if e.type == "metrics"]
        self.assertEqual([e.data["n"] for e in events], [0, 1, 2, 3, 4])

    def test_full_queue_drops_oldest(self):
        """A slow subscriber loses the oldest events; publishers never block."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster(queue_size=3)
        sub = b.subscribe("s1")
        for i in range(10):
            b.publish("s1", {"n": i})
        events = drain(sub)
        self.assertEqual([e.data["n"] for e in events], [7, 8, 9])
        self.assertEqual(sub.dropped, 8)

    def test_sessions_are_isolated(self):
        """Subscribers only see their own session."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster()
        sub_a = b.subscribe("a")
        b.publish("b", {"n": 1})
        self.assertEqual([e.type for e in drain(sub_a)], ["connected"])

    def test_timestamps_never_decrease(self):
        """Per-session timestamps are monotonic even if the clock steps back."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster(clock=StepClock(10.0, 9.0, 11.0))
        first = b.publish("s1", {})
        second = b.publish("s1", {})
        third = b.publish("s1", {})
        self.assertLessEqual(first.timestamp, second.timestamp)
        self.assertLessEqual(second.timestamp, third.timestamp)
        self.assertEqual(second.timestamp, 10000)

    def test_end_session_closes_subscribers(self):
        """end_session sends session_ended, closes streams and clears the cache."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster()
        sub = b.subscribe("s1")
        b.publish("s1", {"n": 1})
        b.end_session("s1")
        events = list(sub)
        self.assertEqual(events[-1].type, "session_ended")
        self.assertTrue(sub.closed)
        self.assertIsNone(b.get_latest("s1"))
        self.assertEqual(b.subscriber_count("s1"), 0)

    def test_finished_sessions_leave_no_state(self):
        """Ended sessions and abandoned subscriptions are forgotten entirely."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster()
        for i in range(50):
            b.publish(f"s{i}", {"n": i})
            b.end_session(f"s{i}")
        b.subscribe("watch-only").cancel()
        self.assertEqual(b.active_sessions(), [])
        self.assertEqual(b._last_ts, {})

    def test_cancel_detaches(self):
        """A cancelled subscription no longer counts as a subscriber."""
        from services.metrics_broadcaster import MetricsBroadcaster
        b = MetricsBroadcaster()
        sub = b.subscribe("s1")
        self.assertEqual(b.subscriber_count("s1"), 1)
        sub.cancel()
        self.assertEqual(b.subscriber_count("s1"), 0)

    def test_format_sse(self):
        """Events are framed as a single SSE data line."""
        from services.metrics_broadcaster import MetricsEvent, format_sse
        text = format_sse(MetricsEvent("metrics", "s1", 123, {"a": 1}))
        self.assertTrue(text.startswith("data: "))
        self.assertTrue(text.endswith("\n\n"))
        payload = json.loads(text[len("data: "):].strip())
        self.assertEqual(payload, {"type": "metrics", "sessionId": "s1", "timestamp": 123, "data": {"a": 1}})


if __name__ == "__main__":
    unittest.main()
