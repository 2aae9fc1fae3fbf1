"""
Metrics persistence boundary.

Stores final InterviewMetrics per session (store / get / update / delete).
A stored payload must carry every InterviewMetrics field. Partial updates go
through MetricsUpdate, which names each mutable field and rejects anything
else. Also renders the metrics CSV and the summary used by reports.
"""

import copy
import io
import logging
import threading
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from services.session_store import StorageError, to_iso, utc_now
from utils.signal_types import INTERVIEW_METRICS_FIELDS, InterviewMetrics

logger = logging.getLogger(__name__)


class MetricsNotFoundError(LookupError):
    """No stored metrics for the given session."""


def validate_metrics_payload(metrics: Any) -> Dict[str, Any]:
    """Return the payload as a wire dict; raises ValueError if any required field is missing or malformed."""
    if isinstance(metrics, InterviewMetrics):
        return metrics.to_dict()
    if not isinstance(metrics, dict):
        raise ValueError("metrics must be an object")
    missing = [name for name in INTERVIEW_METRICS_FIELDS if name not in metrics]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    # Round-trip through the dataclass to check types.
    try:
        return InterviewMetrics.from_dict(metrics).to_dict()
    except (TypeError, ValueError, AttributeError) as e:
        raise ValueError(f"Invalid metrics payload: {e}")


@dataclass
class MetricsUpdate:
    """Partial update of stored metrics. Unset (None) fields are left unchanged."""
    eye_contact_percentage: Optional[float] = None
    mood_timeline: Optional[List[Dict[str, Any]]] = None
    average_confidence: Optional[float] = None
    response_quality: Optional[float] = None
    overall_engagement: Optional[float] = None

    _WIRE_NAMES = {
        "eyeContactPercentage": "eye_contact_percentage",
        "moodTimeline": "mood_timeline",
        "averageConfidence": "average_confidence",
        "responseQuality": "response_quality",
        "overallEngagement": "overall_engagement",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsUpdate":
        if not isinstance(data, dict):
            raise ValueError("updates must be an object")
        unknown = sorted(set(data) - set(cls._WIRE_NAMES))
        if unknown:
            raise ValueError(f"Unknown metrics fields: {', '.join(unknown)}")
        kwargs = {}
        for wire, attr in cls._WIRE_NAMES.items():
            if wire not in data:
                continue
            value = data[wire]
            if attr == "mood_timeline":
                if not isinstance(value, list):
                    raise ValueError("moodTimeline must be a list")
            elif isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{wire} must be a number")
            kwargs[attr] = value
        return cls(**kwargs)

    def to_patch(self) -> Dict[str, Any]:
        by_attr = {attr: wire for wire, attr in self._WIRE_NAMES.items()}
        return {
            by_attr[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


class MetricsStore:
    """In-process metrics store keyed by session id."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def store(self, session_id: str, metrics: Any, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not session_id:
            raise ValueError("sessionId is required")
        payload = validate_metrics_payload(metrics)
        now = to_iso(utc_now())
        with self._lock:
            existing = self._records.get(session_id)
            record = {
                "sessionId": session_id,
                "userId": user_id if user_id is not None else (existing or {}).get("userId"),
                "metrics": payload,
                "createdAt": (existing or {}).get("createdAt", now),
                "updatedAt": now,
            }
            self._records[session_id] = record
            return copy.deepcopy(record)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(session_id)
            return copy.deepcopy(record) if record else None

    def update(self, session_id: str, update: MetricsUpdate) -> Dict[str, Any]:
        if not isinstance(update, MetricsUpdate):
            raise TypeError("update must be a MetricsUpdate")
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise MetricsNotFoundError(session_id)
            merged = dict(record["metrics"])
            merged.update(update.to_patch())
            record["metrics"] = validate_metrics_payload(merged)
            record["updatedAt"] = to_iso(utc_now())
            return copy.deepcopy(record)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._records.pop(session_id, None) is not None


def metrics_to_csv(metrics: Dict[str, Any]) -> str:
    """
    Two CSV sections: "Metric,Value" rows, a blank line, then the mood timeline
    as "Timestamp,Dominant Emotion,Confidence".
    """
    summary = pd.DataFrame(
        [
            ("Eye Contact Percentage", metrics.get("eyeContactPercentage", 0)),
            ("Average Confidence", metrics.get("averageConfidence", 0)),
            ("Response Quality", metrics.get("responseQuality", 0)),
            ("Overall Engagement", metrics.get("overallEngagement", 0)),
        ],
        columns=["Metric", "Value"],
    )
    timeline = pd.DataFrame(
        [
            (
                to_iso(datetime.fromtimestamp(int(p.get("timestamp", 0)) / 1000.0, tz=timezone.utc)),
                p.get("dominantEmotion", "neutral"),
                p.get("confidence", 0),
            )
            for p in metrics.get("moodTimeline") or []
        ],
        columns=["Timestamp", "Dominant Emotion", "Confidence"],
    )
    buf = io.StringIO()
    summary.to_csv(buf, index=False, lineterminator="\n")
    buf.write("\n")
    timeline.to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()


def summarize_metrics(session_id: str, metrics: Dict[str, Any]) -> Dict[str, Any]:
    """Rounded percentages, most frequent mood and timeline span (seconds)."""
    timeline = metrics.get("moodTimeline") or []
    counts: Dict[str, int] = {}
    for point in timeline:
        mood = point.get("dominantEmotion", "neutral")
        counts[mood] = counts.get(mood, 0) + 1
    dominant_mood, best = "neutral", 0
    for mood, count in counts.items():
        if count > best:
            dominant_mood, best = mood, count
    duration = 0
    if timeline:
        duration = round((timeline[-1].get("timestamp", 0) - timeline[0].get("timestamp", 0)) / 1000.0)
    return {
        "sessionId": session_id,
        "eyeContactPercentage": round(metrics.get("eyeContactPercentage", 0)),
        "averageConfidence": round(metrics.get("averageConfidence", 0) * 100),
        "responseQuality": round(metrics.get("responseQuality", 0) * 100),
        "overallEngagement": round(metrics.get("overallEngagement", 0) * 100),
        "dominantMood": dominant_mood,
        "totalDataPoints": len(timeline),
        "sessionDuration": duration,
    }


_metrics_store: Optional[MetricsStore] = None
_metrics_store_lock = threading.Lock()


def get_metrics_store() -> MetricsStore:
    global _metrics_store
    with _metrics_store_lock:
        if _metrics_store is None:
            _metrics_store = MetricsStore()
        return _metrics_store


def set_metrics_store(store: Optional[MetricsStore]) -> None:
    global _metrics_store
    with _metrics_store_lock:
        _metrics_store = store


__all__ = [
    "MetricsStore",
    "MetricsUpdate",
    "MetricsNotFoundError",
    "StorageError",
    "get_metrics_store",
    "set_metrics_store",
    "metrics_to_csv",
    "summarize_metrics",
    "validate_metrics_payload",
]
