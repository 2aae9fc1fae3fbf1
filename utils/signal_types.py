"""
Signal and metrics record types.

Everything that flows between the frame analyzer, the metrics aggregator and the
HTTP layer is defined here as a dataclass. Each record has a to_dict() that
produces the camelCase wire form used by the API and the exports.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


# Fixed emotion order. Iteration order matters: ties in dominant_emotion go to the earlier key.
EMOTION_KEYS: Tuple[str, ...] = (
    "neutral",
    "happy",
    "sad",
    "angry",
    "fearful",
    "disgusted",
    "surprised",
)


def normalize_emotions(raw: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """
    Return a full 7-key emotion vector in fixed order.

    Missing keys become 0, negative or non-finite scores are clamped to 0 and
    unknown keys are ignored.
    """
    out: Dict[str, float] = {}
    for key in EMOTION_KEYS:
        value = 0.0
        if raw:
            try:
                value = float(raw.get(key, 0.0) or 0.0)
            except (TypeError, ValueError):
                value = 0.0
        if not math.isfinite(value) or value < 0:
            value = 0.0
        out[key] = value
    return out


def dominant_emotion(emotions: Mapping[str, float]) -> Tuple[str, float]:
    """Argmax over the fixed key order. An all-zero vector is ('neutral', 0.0)."""
    best_key, best_value = "neutral", 0.0
    for key in EMOTION_KEYS:
        value = emotions.get(key, 0.0)
        if value > best_value:
            best_key, best_value = key, value
    return best_key, best_value


def mean_emotions(vectors: List[Mapping[str, float]]) -> Dict[str, float]:
    if not vectors:
        return normalize_emotions(None)
    n = float(len(vectors))
    return {key: sum(v.get(key, 0.0) for v in vectors) / n for key in EMOTION_KEYS}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class HeadPose:
    """Heuristic head orientation in degrees (not a calibrated measurement)."""
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"pitch": self.pitch, "yaw": self.yaw, "roll": self.roll}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HeadPose":
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("headPose must be an object")
        try:
            return cls(
                pitch=float(data.get("pitch", 0.0) or 0.0),
                yaw=float(data.get("yaw", 0.0) or 0.0),
                roll=float(data.get("roll", 0.0) or 0.0),
            )
        except (TypeError, ValueError):
            raise ValueError("headPose angles must be numbers")


@dataclass(frozen=True)
class FacialSignal:
    """
    One observation derived from one frame.

    synthetic is True only for signals fabricated by the opt-in demo mode;
    real observations always carry False. emotions is a read-only mapping.
    """
    emotions: Mapping[str, float]
    eye_contact: bool
    head_pose: HeadPose
    confidence: float
    timestamp: int
    synthetic: bool = False

    def __post_init__(self):
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        object.__setattr__(self, "emotions", MappingProxyType(dict(self.emotions)))

    @property
    def dominant_emotion(self) -> str:
        return dominant_emotion(self.emotions)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emotions": dict(self.emotions),
            "eyeContact": self.eye_contact,
            "headPose": self.head_pose.to_dict(),
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "synthetic": self.synthetic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_timestamp: Optional[int] = None) -> "FacialSignal":
        """
        Build a signal from a client payload (browser-side detection).

        confidence defaults to the dominant emotion score when omitted.
        Raises ValueError on malformed input.
        """
        if not isinstance(data, dict):
            raise ValueError("signal must be a JSON object")
        if "emotions" in data and not isinstance(data["emotions"], dict):
            raise ValueError("emotions must be an object")
        emotions = normalize_emotions(data.get("emotions"))
        if "confidence" in data and data["confidence"] is not None:
            try:
                confidence = float(data["confidence"])
            except (TypeError, ValueError):
                raise ValueError("confidence must be a number")
        else:
            confidence = _clamp(dominant_emotion(emotions)[1])
        timestamp = data.get("timestamp", default_timestamp)
        if timestamp is None:
            raise ValueError("timestamp is required")
        try:
            timestamp = int(timestamp)
        except (TypeError, ValueError):
            raise ValueError("timestamp must be an integer")
        return cls(
            emotions=emotions,
            eye_contact=bool(data.get("eyeContact", False)),
            head_pose=HeadPose.from_dict(data.get("headPose")),
            confidence=confidence,
            timestamp=timestamp,
            synthetic=bool(data.get("synthetic", False)),
        )


@dataclass(frozen=True)
class Observed:
    signal: FacialSignal

    @property
    def timestamp(self) -> int:
        return self.signal.timestamp


@dataclass(frozen=True)
class Undetected:
    """A sampling tick that produced no face (or no readable frame)."""
    timestamp: int
    reason: str = "no_face"


DetectionOutcome = Union[Observed, Undetected]


@dataclass
class MetricsSnapshot:
    timestamp: int
    eye_contact: bool
    dominant_emotion: str
    emotion_confidence: float
    engagement_level: float
    response_in_progress: bool
    response_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "eyeContact": self.eye_contact,
            "dominantEmotion": self.dominant_emotion,
            "emotionConfidence": self.emotion_confidence,
            "engagementLevel": self.engagement_level,
            "responseInProgress": self.response_in_progress,
            "responseIndex": self.response_index,
        }


@dataclass
class RealTimeMetrics:
    eye_contact_percentage: float = 0.0
    current_mood: str = "neutral"
    mood_confidence: float = 0.0
    engagement_score: float = 0.0
    response_quality: float = 0.0
    average_confidence: float = 0.0
    session_duration: int = 0
    total_data_points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eyeContactPercentage": self.eye_contact_percentage,
            "currentMood": self.current_mood,
            "moodConfidence": self.mood_confidence,
            "engagementScore": self.engagement_score,
            "responseQuality": self.response_quality,
            "averageConfidence": self.average_confidence,
            "sessionDuration": self.session_duration,
            "totalDataPoints": self.total_data_points,
        }


@dataclass
class EngagementBreakdown:
    eye_contact_score: float = 0.0
    emotional_stability: float = 1.0
    response_consistency: float = 1.0
    overall_engagement: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "eyeContactScore": self.eye_contact_score,
            "emotionalStability": self.emotional_stability,
            "responseConsistency": self.response_consistency,
            "overallEngagement": self.overall_engagement,
        }


@dataclass
class MoodDataPoint:
    timestamp: int
    dominant_emotion: str
    confidence: float
    emotions: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "dominantEmotion": self.dominant_emotion,
            "confidence": self.confidence,
            "emotions": dict(self.emotions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MoodDataPoint":
        return cls(
            timestamp=int(data.get("timestamp", 0)),
            dominant_emotion=str(data.get("dominantEmotion", "neutral")),
            confidence=float(data.get("confidence", 0.0)),
            emotions=normalize_emotions(data.get("emotions")),
        )


# Wire names of every InterviewMetrics field; a persisted payload must carry all of them.
INTERVIEW_METRICS_FIELDS: Tuple[str, ...] = (
    "eyeContactPercentage",
    "moodTimeline",
    "averageConfidence",
    "responseQuality",
    "overallEngagement",
)


@dataclass(frozen=True)
class InterviewMetrics:
    """Final per-session metrics. Ratios are in [0, 1]; eye contact is a percentage."""
    eye_contact_percentage: float = 0.0
    mood_timeline: Tuple[MoodDataPoint, ...] = ()
    average_confidence: float = 0.0
    response_quality: float = 0.0
    overall_engagement: float = 0.0

    @classmethod
    def neutral(cls) -> "InterviewMetrics":
        """Zeroed metrics used when a session ends with nothing ingested or aggregation fails."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eyeContactPercentage": self.eye_contact_percentage,
            "moodTimeline": [p.to_dict() for p in self.mood_timeline],
            "averageConfidence": self.average_confidence,
            "responseQuality": self.response_quality,
            "overallEngagement": self.overall_engagement,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterviewMetrics":
        missing = [name for name in INTERVIEW_METRICS_FIELDS if name not in data]
        if missing:
            raise ValueError(f"metrics missing required fields: {', '.join(missing)}")
        return cls(
            eye_contact_percentage=float(data["eyeContactPercentage"]),
            mood_timeline=tuple(MoodDataPoint.from_dict(p) for p in data["moodTimeline"] or []),
            average_confidence=float(data["averageConfidence"]),
            response_quality=float(data["responseQuality"]),
            overall_engagement=float(data["overallEngagement"]),
        )
