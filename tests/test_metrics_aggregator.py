"""
Metrics aggregator tests.

Feeds hand-built FacialSignals with a fake clock; no video involved.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_signal(ts, eye_contact=True, confidence=0.8, emotion="happy"):
    from utils.signal_types import FacialSignal, HeadPose, normalize_emotions
    return FacialSignal(
        emotions=normalize_emotions({emotion: confidence}),
        eye_contact=eye_contact,
        head_pose=HeadPose(),
        confidence=confidence,
        timestamp=ts,
    )


class TestRealTimeMetrics(unittest.TestCase):
    """Live readout while collecting."""

    def setUp(self):
        from utils.metrics_aggregator import MetricsAggregator
        self.clock = FakeClock()
        self.agg = MetricsAggregator(history_limit=1000, mood_window=10, clock=self.clock)

    def test_empty_after_start(self):
        """Right after start the readout is zeroed with currentMood neutral."""
        self.agg.start_collection("s1")
        m = self.agg.get_real_time_metrics()
        self.assertEqual(m.eye_contact_percentage, 0)
        self.assertEqual(m.current_mood, "neutral")
        self.assertEqual(m.total_data_points, 0)
        self.assertEqual(m.engagement_score, 0)

    def test_seven_of_ten_eye_contact(self):
        """7 of 10 signals with eye contact gives exactly 70.0 percent."""
        self.agg.start_collection("s1")
        for i in range(10):
            self.agg.ingest(make_signal(i, eye_contact=i < 7))
        self.assertEqual(self.agg.get_real_time_metrics().eye_contact_percentage, 70.0)
        self.assertEqual(self.agg.stop_collection().eye_contact_percentage, 70.0)

    def test_scores_stay_in_range(self):
        """Engagement is within [0, 100] and ratios within [0, 1] for varied input."""
        self.agg.start_collection("s1")
        for i in range(50):
            self.agg.ingest(make_signal(i, eye_contact=i % 3 == 0, confidence=(i % 11) / 10.0, emotion="sad"))
            m = self.agg.get_real_time_metrics()
            self.assertGreaterEqual(m.engagement_score, 0.0)
            self.assertLessEqual(m.engagement_score, 100.0)
            self.assertGreaterEqual(m.response_quality, 0.0)
            self.assertLessEqual(m.response_quality, 1.0)
        final = self.agg.stop_collection()
        for value in (final.average_confidence, final.response_quality, final.overall_engagement):
            self.assertGreaterEqual(value, 0.0)
            self.assertLessEqual(value, 1.0)

    def test_current_mood_uses_recent_window(self):
        """currentMood reflects the last mood_window signals only."""
        self.agg.start_collection("s1")
        for i in range(20):
            self.agg.ingest(make_signal(i, emotion="sad"))
        for i in range(20, 30):
            self.agg.ingest(make_signal(i, emotion="happy"))
        self.assertEqual(self.agg.get_real_time_metrics().current_mood, "happy")

    def test_constant_confidence_is_stable(self):
        """Identical confidences give emotional stability 1."""
        self.agg.start_collection("s1")
        for i in range(5):
            self.agg.ingest(make_signal(i, confidence=0.6))
        self.assertAlmostEqual(self.agg.get_engagement_metrics().emotional_stability, 1.0)

    def test_session_duration_uses_clock(self):
        """sessionDuration is whole seconds since start."""
        self.agg.start_collection("s1")
        self.clock.now += 12.7
        self.assertEqual(self.agg.get_real_time_metrics().session_duration, 12)


class TestCollectionLifecycle(unittest.TestCase):
    """start / stop / ingest rules."""

    def setUp(self):
        from utils.metrics_aggregator import MetricsAggregator
        self.agg = MetricsAggregator(history_limit=5, clock=FakeClock())

    def test_ring_buffer_evicts_oldest(self):
        """History never exceeds its limit and drops the oldest first."""
        self.agg.start_collection("s1")
        for i in range(12):
            self.agg.ingest(make_signal(i))
        history = self.agg.export_metrics_data()["facialDataHistory"]
        self.assertEqual(len(history), 5)
        self.assertEqual([h["timestamp"] for h in history], [7, 8, 9, 10, 11])
        self.assertEqual(len(self.agg.get_snapshots()), 5)

    def test_lifetime_percentages_survive_eviction(self):
        """Eye contact percentage covers every signal, not just the retained ones."""
        self.agg.start_collection("s1")
        for i in range(10):
            self.agg.ingest(make_signal(i, eye_contact=i < 5))
        self.assertEqual(self.agg.get_real_time_metrics().eye_contact_percentage, 50.0)
        self.assertEqual(self.agg.total_signals, 10)

    def test_stop_is_idempotent(self):
        """A second stop returns the same metrics and later ingests are ignored."""
        self.agg.start_collection("s1")
        self.agg.ingest(make_signal(1))
        first = self.agg.stop_collection()
        self.assertIsNone(self.agg.ingest(make_signal(2, eye_contact=False)))
        second = self.agg.stop_collection()
        self.assertEqual(first, second)

    def test_stop_without_start_is_neutral(self):
        """Stopping before starting yields zeroed metrics."""
        from utils.signal_types import InterviewMetrics
        self.assertEqual(self.agg.stop_collection(), InterviewMetrics.neutral())

    def test_ingest_before_start_is_ignored(self):
        """Signals are dropped unless collecting."""
        self.assertIsNone(self.agg.ingest(make_signal(1)))
        self.assertEqual(self.agg.total_signals, 0)

    def test_undetected_counts_gap_only(self):
        """Undetected outcomes count as gaps and change no metric."""
        from utils.signal_types import Undetected, Observed
        self.agg.start_collection("s1")
        self.agg.ingest(Observed(make_signal(1, eye_contact=True)))
        self.agg.ingest(Undetected(timestamp=2))
        self.agg.ingest(Undetected(timestamp=3))
        self.assertEqual(self.agg.gap_count, 2)
        self.assertEqual(self.agg.total_signals, 1)
        self.assertEqual(self.agg.get_real_time_metrics().eye_contact_percentage, 100.0)

    def test_rejects_unknown_outcome(self):
        """Anything other than a signal or detection outcome raises TypeError."""
        self.agg.start_collection("s1")
        with self.assertRaises(TypeError):
            self.agg.ingest({"eyeContact": True})

    def test_restart_resets_state(self):
        """start_collection clears the previous session's data."""
        self.agg.start_collection("s1")
        self.agg.ingest(make_signal(1))
        self.agg.stop_collection()
        self.agg.start_collection("s2")
        self.assertEqual(self.agg.total_signals, 0)
        self.assertEqual(self.agg.export_metrics_data()["sessionId"], "s2")


class TestResponseWindows(unittest.TestCase):
    """Per-response engagement and consistency."""

    def test_snapshots_carry_response_index(self):
        """Signals inside a response window are tagged with its index."""
        from utils.metrics_aggregator import MetricsAggregator
        agg = MetricsAggregator(clock=FakeClock())
        agg.start_collection("s1")
        agg.ingest(make_signal(1))
        agg.mark_response_start()
        agg.ingest(make_signal(2))
        agg.mark_response_end()
        agg.mark_response_start()
        agg.ingest(make_signal(3))
        indexes = [s.response_index for s in agg.get_snapshots()]
        self.assertEqual(indexes, [None, 1, 2])

    def test_consistency_drops_with_uneven_responses(self):
        """Very different per-response engagement lowers responseConsistency below 1."""
        from utils.metrics_aggregator import MetricsAggregator
        agg = MetricsAggregator(clock=FakeClock())
        agg.start_collection("s1")
        agg.mark_response_start()
        for i in range(3):
            agg.ingest(make_signal(i, eye_contact=True, confidence=1.0))
        agg.mark_response_end()
        agg.mark_response_start()
        for i in range(3, 6):
            agg.ingest(make_signal(i, eye_contact=False, confidence=0.0, emotion="sad"))
        agg.mark_response_end()
        self.assertLess(agg.get_engagement_metrics().response_consistency, 1.0)

    def test_export_contains_all_sections(self):
        """export_metrics_data returns history, snapshots and derived metrics."""
        from utils.metrics_aggregator import MetricsAggregator
        agg = MetricsAggregator(clock=FakeClock())
        agg.start_collection("s1")
        agg.ingest(make_signal(1))
        data = agg.export_metrics_data()
        for key in ("sessionId", "facialDataHistory", "metricsSnapshots", "sessionDuration",
                    "finalMetrics", "engagementMetrics", "moodTimeline", "undetectedCount"):
            self.assertIn(key, data)
        self.assertEqual(len(data["moodTimeline"]), 1)


if __name__ == "__main__":
    unittest.main()
