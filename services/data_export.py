"""
User data export: JSON, CSV and plain-text reports over stored session records.

Filtering by date range happens before serialisation. Given the same sessions
and options the output is byte-identical; the only clock dependence is the
date stamped into the filename.
"""

import io
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from services.session_store import parse_iso, utc_now

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv", "pdf")

CSV_COLUMNS = [
    "Session ID",
    "Date",
    "Status",
    "Interviewer",
    "Type",
    "Difficulty",
    "Overall Score",
    "Completion Rate",
    "Eye Contact %",
    "Avg Confidence",
    "Response Quality",
    "Engagement",
    "Duration (min)",
]

REPORT_SEPARATOR = "\n\n" + "=" * 80 + "\n\n"


class ExportError(ValueError):
    """Export options are invalid; nothing was produced."""


@dataclass
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DateRange"]:
        """
        {"from": iso, "to": iso}; either bound may be omitted. A date-only "to"
        covers that whole day. An empty or missing range means no filter.
        """
        if not data:
            return None
        if not isinstance(data, dict):
            raise ExportError("dateRange must be an object")
        start = cls._bound(data.get("from"), "from")
        end = cls._bound(data.get("to"), "to")
        if end is not None and isinstance(data.get("to"), str) and "T" not in data["to"]:
            end = end + timedelta(days=1) - timedelta(microseconds=1)
        if start is None and end is None:
            return None
        if start is not None and end is not None and start > end:
            raise ExportError("dateRange.from must not be after dateRange.to")
        return cls(start, end)

    @staticmethod
    def _bound(value: Any, name: str) -> Optional[datetime]:
        if value in (None, ""):
            return None
        parsed = parse_iso(value)
        if parsed is None:
            raise ExportError(f"Invalid dateRange.{name}: {value!r}")
        return parsed

    def contains(self, when: Optional[datetime]) -> bool:
        if when is None:
            return False
        if self.start is not None and when < self.start:
            return False
        if self.end is not None and when > self.end:
            return False
        return True


@dataclass
class ExportOptions:
    format: str = "json"
    include_metrics: bool = True
    include_responses: bool = True
    include_feedback: bool = True
    date_range: Optional[DateRange] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExportOptions":
        data = data or {}
        options = cls(
            format=data.get("format") or "json",
            include_metrics=data.get("includeMetrics") is not False,
            include_responses=data.get("includeResponses") is not False,
            include_feedback=data.get("includeFeedback") is not False,
            date_range=DateRange.from_dict(data.get("dateRange")),
        )
        options.validate()
        return options

    def validate(self) -> None:
        if self.format not in EXPORT_FORMATS:
            raise ExportError(f"Unsupported export format: {self.format}")
        dr = self.date_range
        if dr is not None and dr.start is not None and dr.end is not None and dr.start > dr.end:
            raise ExportError("dateRange.from must not be after dateRange.to")


def filter_sessions(sessions: List[Dict[str, Any]], date_range: Optional[DateRange]) -> List[Dict[str, Any]]:
    if date_range is None:
        return list(sessions)
    return [s for s in sessions if date_range.contains(parse_iso(s.get("startedAt")))]


def _settings(session: Dict[str, Any]) -> Dict[str, Any]:
    return (session.get("configuration") or {}).get("settings") or {}


def export_record(session: Dict[str, Any], options: ExportOptions) -> Dict[str, Any]:
    configuration = session.get("configuration") or {}
    settings = _settings(session)
    record = {
        "id": session.get("id"),
        "startedAt": session.get("startedAt"),
        "completedAt": session.get("completedAt"),
        "status": session.get("status"),
        "interviewer": configuration.get("interviewer"),
        "type": configuration.get("type"),
        "difficulty": settings.get("difficulty"),
        "topicFocus": settings.get("topicFocus"),
        "purpose": settings.get("purpose"),
    }
    if options.include_metrics and session.get("metrics"):
        record["metrics"] = session["metrics"]
    if options.include_responses and session.get("responses"):
        record["responses"] = [
            {
                "questionId": r.get("questionId"),
                "transcription": r.get("transcription"),
                "duration": r.get("duration"),
                "confidence": r.get("confidence"),
                "facialMetrics": r.get("facialMetrics"),
            }
            for r in session["responses"]
        ]
    if options.include_feedback and session.get("feedback"):
        record["feedback"] = session["feedback"]
    return record


def session_duration_seconds(session: Dict[str, Any], now: Optional[datetime] = None) -> int:
    """completedAt - startedAt; for open sessions, now - startedAt, or 0 without a clock."""
    started = parse_iso(session.get("startedAt"))
    if started is None:
        return 0
    ended = parse_iso(session.get("completedAt")) or now
    if ended is None:
        return 0
    return max(0, int((ended - started).total_seconds()))


def generate_session_analytics(session: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    questions = session.get("questions") or []
    responses = session.get("responses") or []
    total, answered = len(questions), len(responses)
    duration = session_duration_seconds(session, now)
    return {
        "totalQuestions": total,
        "answeredQuestions": answered,
        "completionRate": (answered / total * 100) if total else 0.0,
        "averageResponseTime": (sum(r.get("duration", 0) for r in responses) / answered) if answered else 0.0,
        "averageConfidence": (sum(r.get("confidence", 0) for r in responses) / answered) if answered else 0.0,
        "sessionDuration": duration,
        "questionsPerMinute": round(answered / (duration / 60.0), 2) if duration else 0.0,
    }


def sessions_to_csv(sessions: List[Dict[str, Any]]) -> str:
    rows = []
    for session in sessions:
        configuration = session.get("configuration") or {}
        metrics = session.get("metrics") or {}
        feedback = session.get("feedback") or {}
        analytics = generate_session_analytics(session)
        started = parse_iso(session.get("startedAt"))
        rows.append([
            session.get("id"),
            started.strftime("%Y-%m-%d") if started else "",
            session.get("status"),
            configuration.get("interviewer"),
            configuration.get("type"),
            _settings(session).get("difficulty"),
            float(feedback.get("overallScore", 0) or 0),
            float(analytics["completionRate"]),
            float(metrics.get("eyeContactPercentage", 0) or 0),
            float(metrics.get("averageConfidence", 0) or 0) * 100,
            float(metrics.get("responseQuality", 0) or 0) * 100,
            float(metrics.get("overallEngagement", 0) or 0) * 100,
            analytics["sessionDuration"] / 60.0,
        ])
    frame = pd.DataFrame(rows, columns=CSV_COLUMNS)
    buf = io.StringIO()
    frame.to_csv(buf, index=False, float_format="%.1f", lineterminator="\n")
    return buf.getvalue()


def _plain_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _fmt_pct(fraction: float) -> str:
    return f"{fraction * 100:.1f}"


def generate_session_report(session: Dict[str, Any]) -> str:
    """Human-readable report for one session. Open sessions report a 0:00 duration."""
    analytics = generate_session_analytics(session)
    configuration = session.get("configuration") or {}
    settings = _settings(session)
    metrics = session.get("metrics") or {}
    feedback = session.get("feedback") or {}
    started = parse_iso(session.get("startedAt"))
    duration = analytics["sessionDuration"]
    score = feedback.get("overallScore")

    lines = [
        "INTERVIEW SESSION REPORT",
        "========================",
        "",
        f"Session ID: {session.get('id')}",
        f"Date: {started.strftime('%Y-%m-%d') if started else ''}",
        f"Duration: {duration // 60}:{duration % 60:02d}",
        f"Status: {str(session.get('status', '')).upper()}",
        "",
        "CONFIGURATION",
        "-------------",
        f"Interviewer: {str(configuration.get('interviewer', '')).replace('-', ' ', 1)}",
        f"Type: {configuration.get('type', '')}",
        f"Difficulty: {settings.get('difficulty', '')}",
        f"Focus: {settings.get('topicFocus', '')}",
        f"Purpose: {settings.get('purpose', '')}",
        "",
        "PERFORMANCE SUMMARY",
        "-------------------",
        f"Overall Score: {_plain_number(score) if score is not None else 'N/A'}/10",
        f"Completion Rate: {analytics['completionRate']:.1f}%",
        f"Average Confidence: {_fmt_pct(analytics['averageConfidence'])}%",
        f"Eye Contact: {_plain_number(metrics.get('eyeContactPercentage', 0))}%",
        f"Response Quality: {_fmt_pct(metrics.get('responseQuality', 0))}%",
        f"Overall Engagement: {_fmt_pct(metrics.get('overallEngagement', 0))}%",
        "",
    ]
    for title, key in (("STRENGTHS", "strengths"), ("AREAS FOR IMPROVEMENT", "weaknesses"), ("SUGGESTIONS", "suggestions")):
        lines.append(title)
        lines.append("-" * len(title))
        lines.extend(f"• {item}" for item in feedback.get(key) or [])
        lines.append("")

    lines.append("QUESTIONS & RESPONSES")
    lines.append("---------------------")
    responses = {r.get("questionId"): r for r in session.get("responses") or []}
    for index, question in enumerate(session.get("questions") or [], start=1):
        lines.append(f"{index}. {question.get('text', '')}")
        lines.append(f"   Difficulty: {question.get('difficulty', '')}/10")
        response = responses.get(question.get("id"))
        if response:
            lines.append(f"   Response: {response.get('transcription', '')}")
            lines.append(f"   Duration: {int(response.get('duration', 0) // 1000)}s")
            lines.append(f"   Confidence: {_fmt_pct(response.get('confidence', 0))}%")
        else:
            lines.append("   Response: Not answered")
        lines.append("")
    return "\n".join(lines) + "\n"


def export_user_data(
    sessions: List[Dict[str, Any]],
    options: ExportOptions,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Serialise sessions per options. Returns {data, filename, mimeType}.
    Raises ExportError for an unsupported format or an inverted date range.
    """
    options.validate()
    selected = filter_sessions(sessions, options.date_range)
    stamp = (now or utc_now()).strftime("%Y-%m-%d")
    logger.info("Exporting %d of %d sessions as %s", len(selected), len(sessions), options.format)

    if options.format == "json":
        records = [export_record(s, options) for s in selected]
        return {
            "data": json.dumps(records, indent=2, ensure_ascii=False),
            "filename": f"interview-data-{stamp}.json",
            "mimeType": "application/json",
        }
    if options.format == "csv":
        return {
            "data": sessions_to_csv(selected),
            "filename": f"interview-data-{stamp}.csv",
            "mimeType": "text/csv",
        }
    return {
        "data": REPORT_SEPARATOR.join(generate_session_report(s) for s in selected),
        "filename": f"interview-reports-{stamp}.txt",
        "mimeType": "text/plain",
    }
