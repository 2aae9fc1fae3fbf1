"""
Metrics Aggregator

Per-session rolling statistics over ingested facial signals. One instance per
live session; the lifecycle manager owns it.

Two kinds of state are kept:
  - a bounded history of recent signals and snapshots (FIFO ring buffers), used
    for the current mood and the mood timeline;
  - lifetime accumulators (count, eye-contact count, running mean/variance of
    confidence, per-response engagement sums), so final percentages cover every
    ingested signal even after the ring buffer has evicted old ones.

Formulas (N = observed signals since start_collection):
  eyeContactPercentage = 100 * eyeContactCount / N
  emotionalStability   = clamp(1 - 2 * populationVariance(confidence), 0, 1); 1 when N < 2
  engagementScore      = 100 * (0.4 * eyeFraction + 0.4 * avgConfidence + 0.2 * stability)
  responseQuality      = 0.5 * avgConfidence + 0.3 * eyeFraction + 0.2 * stability
  overallEngagement    = (eyePct + 100 * stability + 100 * responseConsistency) / 3 / 100
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import config
from utils.signal_types import (
    EMOTION_KEYS,
    EngagementBreakdown,
    FacialSignal,
    InterviewMetrics,
    MetricsSnapshot,
    MoodDataPoint,
    Observed,
    RealTimeMetrics,
    Undetected,
    dominant_emotion,
    mean_emotions,
)

logger = logging.getLogger(__name__)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _population_variance(values: List[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def engagement_level(signal: FacialSignal) -> float:
    """Per-snapshot engagement in [0, 1]: eye contact, confidence and positive affect."""
    e = signal.emotions
    positive = e.get("happy", 0.0) + e.get("surprised", 0.0)
    negative = e.get("sad", 0.0) + e.get("angry", 0.0) + e.get("fearful", 0.0)
    level = (
        0.4 * (1.0 if signal.eye_contact else 0.0)
        + 0.4 * signal.confidence
        + 0.2 * max(0.0, positive - negative)
    )
    return _clamp01(level)


class MetricsAggregator:
    """
    Thread-safe: the sampler thread ingests while HTTP handlers read.
    """

    def __init__(
        self,
        history_limit: int = config.METRICS_HISTORY_LIMIT,
        mood_window: int = config.MOOD_WINDOW_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.history_limit = max(1, int(history_limit))
        self.mood_window = max(1, int(mood_window))
        self._clock = clock
        self._lock = threading.RLock()
        self.session_id: Optional[str] = None
        self._history: Deque[FacialSignal] = deque(maxlen=self.history_limit)
        self._snapshots: Deque[MetricsSnapshot] = deque(maxlen=self.history_limit)
        self._reset_state()

    def _reset_state(self) -> None:
        self._history.clear()
        self._snapshots.clear()
        self._collecting = False
        self._start_time: Optional[float] = None
        self._stop_time: Optional[float] = None
        self._final: Optional[InterviewMetrics] = None
        # Lifetime accumulators (independent of the ring buffers)
        self._count = 0
        self._eye_count = 0
        self._conf_mean = 0.0
        self._conf_m2 = 0.0
        self._gap_count = 0
        # Response windows
        self._response_in_progress = False
        self._response_index = 0
        self._response_sums: Dict[int, List[float]] = {}

    # ------------------------------------------------------------------
    # Collection control
    # ------------------------------------------------------------------

    def start_collection(self, session_id: Optional[str] = None) -> None:
        """Reset all state and begin collecting."""
        with self._lock:
            self._reset_state()
            self.session_id = session_id
            self._collecting = True
            self._start_time = self._clock()
        logger.debug("Metrics collection started for session %s", session_id)

    def reset(self) -> None:
        """Clear everything without producing final metrics."""
        with self._lock:
            self._reset_state()

    @property
    def is_collecting(self) -> bool:
        with self._lock:
            return self._collecting

    def stop_collection(self) -> InterviewMetrics:
        """
        Freeze and return final metrics. Repeated calls return the same value.
        Without a prior start_collection the result is zeroed neutral metrics.
        """
        with self._lock:
            if self._final is not None:
                return self._final
            if self._start_time is None:
                return InterviewMetrics.neutral()
            self._collecting = False
            self._response_in_progress = False
            self._stop_time = self._clock()
            self._final = self._compute_final()
            logger.debug(
                "Metrics collection stopped for session %s (%d signals, %d gaps)",
                self.session_id, self._count, self._gap_count,
            )
            return self._final

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, outcome) -> Optional[MetricsSnapshot]:
        """
        Accept a FacialSignal, Observed or Undetected. No-op unless collecting.

        Undetected is counted as a gap and changes nothing else. Returns the new
        snapshot for observed signals.
        """
        if isinstance(outcome, Observed):
            outcome = outcome.signal
        with self._lock:
            if not self._collecting:
                return None
            if isinstance(outcome, Undetected):
                self._gap_count += 1
                return None
            if not isinstance(outcome, FacialSignal):
                raise TypeError(f"cannot ingest {type(outcome).__name__}")
            return self._add_signal(outcome)

    def _add_signal(self, signal: FacialSignal) -> MetricsSnapshot:
        self._history.append(signal)
        self._count += 1
        if signal.eye_contact:
            self._eye_count += 1
        # Welford running variance of confidence
        delta = signal.confidence - self._conf_mean
        self._conf_mean += delta / self._count
        self._conf_m2 += delta * (signal.confidence - self._conf_mean)

        level = engagement_level(signal)
        response_index = self._response_index if self._response_in_progress else None
        if response_index is not None:
            acc = self._response_sums.setdefault(response_index, [0.0, 0])
            acc[0] += level
            acc[1] += 1

        dominant, _ = dominant_emotion(signal.emotions)
        snapshot = MetricsSnapshot(
            timestamp=signal.timestamp,
            eye_contact=signal.eye_contact,
            dominant_emotion=dominant,
            emotion_confidence=signal.confidence,
            engagement_level=level,
            response_in_progress=self._response_in_progress,
            response_index=response_index,
        )
        self._snapshots.append(snapshot)
        return snapshot

    def mark_response_start(self) -> None:
        with self._lock:
            if not self._response_in_progress:
                self._response_index += 1
                self._response_in_progress = True

    def mark_response_end(self) -> None:
        with self._lock:
            self._response_in_progress = False

    @property
    def response_in_progress(self) -> bool:
        with self._lock:
            return self._response_in_progress

    # ------------------------------------------------------------------
    # Derived metrics
    # ------------------------------------------------------------------

    def _eye_fraction(self) -> float:
        return self._eye_count / self._count if self._count else 0.0

    def _emotional_stability(self) -> float:
        if self._count < 2:
            return 1.0
        variance = self._conf_m2 / self._count
        return _clamp01(1.0 - 2.0 * variance)

    def _response_consistency(self) -> float:
        means = [total / n for total, n in self._response_sums.values() if n > 0]
        if len(means) < 2:
            return self._emotional_stability()
        return _clamp01(1.0 - 2.0 * _population_variance(means))

    def _session_duration(self) -> int:
        if self._start_time is None:
            return 0
        end = self._stop_time if self._stop_time is not None else self._clock()
        return max(0, int(math.floor(end - self._start_time)))

    def _breakdown(self) -> EngagementBreakdown:
        eye_pct = 100.0 * self._eye_fraction()
        stability = self._emotional_stability()
        consistency = self._response_consistency()
        return EngagementBreakdown(
            eye_contact_score=eye_pct,
            emotional_stability=stability,
            response_consistency=consistency,
            overall_engagement=(eye_pct + stability * 100.0 + consistency * 100.0) / 3.0,
        )

    def _mood_timeline(self) -> List[MoodDataPoint]:
        timeline = []
        for signal in self._history:
            dominant, _ = dominant_emotion(signal.emotions)
            timeline.append(MoodDataPoint(
                timestamp=signal.timestamp,
                dominant_emotion=dominant,
                confidence=signal.confidence,
                emotions=dict(signal.emotions),
            ))
        return timeline

    def _compute_final(self) -> InterviewMetrics:
        if self._count == 0:
            return InterviewMetrics.neutral()
        eye_fraction = self._eye_fraction()
        stability = self._emotional_stability()
        return InterviewMetrics(
            eye_contact_percentage=100.0 * eye_fraction,
            mood_timeline=tuple(self._mood_timeline()),
            average_confidence=_clamp01(self._conf_mean),
            response_quality=_clamp01(0.5 * self._conf_mean + 0.3 * eye_fraction + 0.2 * stability),
            overall_engagement=_clamp01(self._breakdown().overall_engagement / 100.0),
        )

    def get_real_time_metrics(self) -> RealTimeMetrics:
        """Current readout; zeroed with currentMood 'neutral' before any signal."""
        with self._lock:
            duration = self._session_duration()
            if self._count == 0:
                return RealTimeMetrics(session_duration=duration)

            recent = list(self._history)[-self.mood_window:]
            mood, _ = dominant_emotion(mean_emotions([s.emotions for s in recent]))
            mood_confidence = sum(s.confidence for s in recent) / len(recent)

            eye_fraction = self._eye_fraction()
            avg_conf = _clamp01(self._conf_mean)
            stability = self._emotional_stability()
            return RealTimeMetrics(
                eye_contact_percentage=100.0 * eye_fraction,
                current_mood=mood,
                mood_confidence=mood_confidence,
                engagement_score=100.0 * _clamp01(0.4 * eye_fraction + 0.4 * avg_conf + 0.2 * stability),
                response_quality=_clamp01(0.5 * avg_conf + 0.3 * eye_fraction + 0.2 * stability),
                average_confidence=avg_conf,
                session_duration=duration,
                total_data_points=self._count,
            )

    def get_engagement_metrics(self) -> EngagementBreakdown:
        with self._lock:
            return self._breakdown()

    def get_mood_timeline(self) -> List[MoodDataPoint]:
        with self._lock:
            return self._mood_timeline()

    def get_snapshots(self) -> List[MetricsSnapshot]:
        with self._lock:
            return list(self._snapshots)

    @property
    def gap_count(self) -> int:
        with self._lock:
            return self._gap_count

    @property
    def total_signals(self) -> int:
        with self._lock:
            return self._count

    def export_metrics_data(self) -> Dict[str, Any]:
        """Full dump of the retained history plus derived metrics (does not stop collection)."""
        with self._lock:
            final = self._final if self._final is not None else self._compute_final()
            return {
                "sessionId": self.session_id,
                "facialDataHistory": [s.to_dict() for s in self._history],
                "metricsSnapshots": [s.to_dict() for s in self._snapshots],
                "sessionDuration": self._session_duration(),
                "finalMetrics": final.to_dict(),
                "engagementMetrics": self._breakdown().to_dict(),
                "moodTimeline": [p.to_dict() for p in self._mood_timeline()],
                "undetectedCount": self._gap_count,
                "emotionKeys": list(EMOTION_KEYS),
            }
