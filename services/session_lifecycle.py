"""
Session Lifecycle Manager

Owns every live interview session: its state machine, its metrics aggregator,
its sampling loop and the timing of question responses.

States:
    created -> in-progress <-> paused -> completed
    abandoned is terminal and reachable from any non-completed state.

Completion always ends in a completed record: a pending response is flushed,
sampling stops, final metrics are forced (neutral metrics if aggregation
fails) and storage errors are logged rather than raised.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from services.metrics_broadcaster import MetricsBroadcaster, get_metrics_broadcaster
from services.metrics_store import MetricsStore, get_metrics_store
from services.session_store import (
    SessionNotFoundError,
    SessionStore,
    StorageError,
    get_session_store,
    new_session_record,
    to_iso,
    utc_now,
)
from services.signal_sampler import SignalSampler, build_sampler
from utils.metrics_aggregator import MetricsAggregator
from utils.signal_types import (
    DetectionOutcome,
    FacialSignal,
    InterviewMetrics,
    MetricsSnapshot,
    Observed,
    RealTimeMetrics,
    Undetected,
)
from utils.video_source_handler import VideoSourceType

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CREATED = "created"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


_TRANSITIONS = {
    SessionState.CREATED: {SessionState.IN_PROGRESS, SessionState.ABANDONED},
    SessionState.IN_PROGRESS: {SessionState.PAUSED, SessionState.COMPLETED, SessionState.ABANDONED},
    SessionState.PAUSED: {SessionState.IN_PROGRESS, SessionState.COMPLETED, SessionState.ABANDONED},
    SessionState.COMPLETED: set(),
    SessionState.ABANDONED: set(),
}


class InvalidTransitionError(ValueError):
    """The requested operation is not allowed in the session's current state."""

    def __init__(self, session_id: str, current: SessionState, target: SessionState):
        super().__init__(f"Session {session_id}: cannot move from {current.value} to {target.value}")
        self.session_id = session_id
        self.current = current
        self.target = target


def _check_transition(session_id: str, current: SessionState, target: SessionState) -> None:
    if target not in _TRANSITIONS[current]:
        raise InvalidTransitionError(session_id, current, target)


def normalize_questions(questions: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """Accept question dicts or plain strings; fill in ids and defaults."""
    out = []
    for index, q in enumerate(questions or []):
        if isinstance(q, str):
            q = {"text": q}
        if not isinstance(q, dict):
            raise ValueError("each question must be an object or a string")
        out.append({
            "id": str(q.get("id") or f"q{index + 1}"),
            "text": str(q.get("text", "")),
            "difficulty": q.get("difficulty", 5),
            "expectedDuration": q.get("expectedDuration", 120),
        })
    return out


def normalize_feedback(feedback: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    feedback = feedback or {}
    if not isinstance(feedback, dict):
        raise ValueError("feedback must be an object")
    out = {}
    for key in ("strengths", "weaknesses", "suggestions"):
        items = feedback.get(key) or []
        if not isinstance(items, list):
            raise ValueError(f"feedback.{key} must be a list")
        out[key] = [str(i) for i in items]
    score = feedback.get("overallScore", 0)
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValueError("feedback.overallScore must be a number")
    out["overallScore"] = score
    return out


@dataclass
class LiveSession:
    """Runtime state of one started session."""
    record: Dict[str, Any]
    aggregator: MetricsAggregator
    sampler: Optional[SignalSampler] = None
    current_question_id: Optional[str] = None
    question_started_at: float = 0.0
    pending_response: str = ""
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def session_id(self) -> str:
        return self.record["id"]

    @property
    def state(self) -> SessionState:
        return SessionState(self.record["status"])


SamplerFactory = Callable[..., SignalSampler]


class SessionLifecycleManager:

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        metrics_store: Optional[MetricsStore] = None,
        broadcaster: Optional[MetricsBroadcaster] = None,
        sampler_factory: SamplerFactory = build_sampler,
        aggregator_factory: Callable[[], MetricsAggregator] = MetricsAggregator,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else get_session_store()
        self.metrics_store = metrics_store if metrics_store is not None else get_metrics_store()
        self.broadcaster = broadcaster if broadcaster is not None else get_metrics_broadcaster()
        self._sampler_factory = sampler_factory
        self._aggregator_factory = aggregator_factory
        self._clock = clock
        self._live: Dict[str, LiveSession] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def _live_session(self, session_id: str) -> Optional[LiveSession]:
        with self._lock:
            return self._live.get(session_id)

    def _require_live(self, session_id: str, target: SessionState) -> LiveSession:
        """The live session, or the error explaining why it is not live (unknown, not started, finished)."""
        live = self._live_session(session_id)
        if live is None:
            record = self.store.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            raise InvalidTransitionError(session_id, SessionState(record["status"]), target)
        return live

    def get_session(self, session_id: str) -> Dict[str, Any]:
        live = self._live_session(session_id)
        if live is not None:
            with live.lock:
                return copy.deepcopy(live.record)
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def list_live_sessions(self) -> List[str]:
        with self._lock:
            return list(self._live)

    def _persist(self, live: LiveSession) -> None:
        self.store.save(live.record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        owner_id: str,
        configuration: Optional[Dict[str, Any]] = None,
        questions: Optional[List[Any]] = None,
    ) -> Dict[str, Any]:
        if not owner_id or not isinstance(owner_id, str):
            raise ValueError("candidateId is required")
        if configuration is not None and not isinstance(configuration, dict):
            raise ValueError("configuration must be an object")
        record = new_session_record(owner_id, configuration, normalize_questions(questions))
        saved = self.store.save(record)
        logger.info("Session %s created for %s", saved["id"], owner_id)
        return saved

    def start_session(
        self,
        session_id: str,
        source_type: Optional[str] = None,
        source_path: Optional[str] = None,
        detection_method: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        created -> in-progress. Starts metrics collection and, when source_type
        is given, a sampling loop on that video source.
        """
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        _check_transition(session_id, SessionState(record["status"]), SessionState.IN_PROGRESS)

        aggregator = self._aggregator_factory()
        live = LiveSession(record=record, aggregator=aggregator)
        if source_type:
            live.sampler = self._sampler_factory(
                session_id,
                VideoSourceType.parse(source_type),
                source_path,
                lambda outcome: self._on_outcome(session_id, outcome),
                detection_method=detection_method,
            )

        with self._lock:
            if session_id in self._live:
                if live.sampler is not None:
                    live.sampler.stop()
                raise InvalidTransitionError(session_id, SessionState.IN_PROGRESS, SessionState.IN_PROGRESS)
            self._live[session_id] = live

        with live.lock:
            aggregator.start_collection(session_id)
            live.record["status"] = SessionState.IN_PROGRESS.value
            live.record["startedAt"] = to_iso(utc_now())
            questions = live.record.get("questions") or []
            live.current_question_id = questions[0]["id"] if questions else None
            live.question_started_at = self._clock()
            try:
                self._persist(live)
            except StorageError:
                with self._lock:
                    self._live.pop(session_id, None)
                if live.sampler is not None:
                    live.sampler.stop()
                raise
            if live.sampler is not None:
                live.sampler.start()
            logger.info("Session %s started (source=%s)", session_id, source_type or "client")
            return copy.deepcopy(live.record)

    def pause(self, session_id: str) -> Dict[str, Any]:
        """in-progress -> paused. Ends the response window and suspends sampling; history is kept."""
        live = self._require_live(session_id, SessionState.PAUSED)
        with live.lock:
            _check_transition(session_id, live.state, SessionState.PAUSED)
            live.aggregator.mark_response_end()
            if live.sampler is not None:
                live.sampler.pause()
            live.record["status"] = SessionState.PAUSED.value
            self._persist(live)
            return copy.deepcopy(live.record)

    def resume(self, session_id: str) -> Dict[str, Any]:
        """paused -> in-progress. Only the current question's timing reference is reset."""
        live = self._require_live(session_id, SessionState.IN_PROGRESS)
        with live.lock:
            _check_transition(session_id, live.state, SessionState.IN_PROGRESS)
            live.question_started_at = self._clock()
            if live.sampler is not None:
                live.sampler.resume()
            live.record["status"] = SessionState.IN_PROGRESS.value
            self._persist(live)
            return copy.deepcopy(live.record)

    def complete(self, session_id: str, feedback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Finish a started session. Always returns a completed record: metrics
        fall back to neutral values and storage failures are only logged.
        """
        normalized_feedback = normalize_feedback(feedback)
        live = self._live_session(session_id)
        if live is None:
            return self._complete_detached(session_id, normalized_feedback)
        with live.lock:
            _check_transition(session_id, live.state, SessionState.COMPLETED)
            if live.pending_response.strip():
                self._append_response(live, live.pending_response, None)
            metrics = self._teardown(live)
            live.record["status"] = SessionState.COMPLETED.value
            live.record["completedAt"] = to_iso(utc_now())
            live.record["metrics"] = metrics.to_dict()
            live.record["feedback"] = normalized_feedback
            self._finish(live, metrics, store_metrics=True)
            return copy.deepcopy(live.record)

    def _complete_detached(self, session_id: str, feedback: Dict[str, Any]) -> Dict[str, Any]:
        """
        Complete a started session that has no live state in this process
        (e.g. after a restart). Nothing was collected here, so metrics are neutral.
        """
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        _check_transition(session_id, SessionState(record["status"]), SessionState.COMPLETED)
        logger.warning("Session %s has no live state; completing with neutral metrics", session_id)
        live = LiveSession(record=record, aggregator=self._aggregator_factory())
        metrics = InterviewMetrics.neutral()
        live.record["status"] = SessionState.COMPLETED.value
        live.record["completedAt"] = to_iso(utc_now())
        live.record["metrics"] = metrics.to_dict()
        live.record["feedback"] = feedback
        self._finish(live, metrics, store_metrics=True)
        return copy.deepcopy(live.record)

    def abandon(self, session_id: str) -> Dict[str, Any]:
        """Any non-completed state -> abandoned."""
        live = self._live_session(session_id)
        if live is None:
            record = self.store.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            _check_transition(session_id, SessionState(record["status"]), SessionState.ABANDONED)
            record["status"] = SessionState.ABANDONED.value
            record["completedAt"] = to_iso(utc_now())
            return self.store.save(record)
        with live.lock:
            _check_transition(session_id, live.state, SessionState.ABANDONED)
            metrics = self._teardown(live)
            live.record["status"] = SessionState.ABANDONED.value
            live.record["completedAt"] = to_iso(utc_now())
            live.record["metrics"] = metrics.to_dict()
            self._finish(live, metrics, store_metrics=False)
            return copy.deepcopy(live.record)

    def _teardown(self, live: LiveSession) -> InterviewMetrics:
        if live.sampler is not None:
            try:
                live.sampler.stop()
            except Exception as e:
                logger.error("Stopping sampler for %s failed: %s", live.session_id, e)
        try:
            return live.aggregator.stop_collection()
        except Exception as e:
            logger.exception("Final metrics for %s failed, using neutral metrics: %s", live.session_id, e)
            return InterviewMetrics.neutral()

    def _finish(self, live: LiveSession, metrics: InterviewMetrics, store_metrics: bool) -> None:
        session_id = live.session_id
        with self._lock:
            self._live.pop(session_id, None)
        if store_metrics:
            try:
                self.metrics_store.store(session_id, metrics, user_id=live.record.get("candidateId"))
            except (StorageError, ValueError) as e:
                logger.error("Storing metrics for %s failed: %s", session_id, e)
        try:
            self._persist(live)
        except StorageError as e:
            logger.error("Saving session %s failed; keeping local result: %s", session_id, e)
        self.broadcaster.end_session(session_id)
        logger.info("Session %s %s", session_id, live.record["status"])

    def shutdown(self) -> None:
        """Complete every live session, best effort (process exit)."""
        for session_id in self.list_live_sessions():
            try:
                self.complete(session_id)
            except Exception as e:
                logger.error("Could not complete session %s at shutdown: %s", session_id, e)

    # ------------------------------------------------------------------
    # Signals and metrics
    # ------------------------------------------------------------------

    def _on_outcome(self, session_id: str, outcome: DetectionOutcome) -> None:
        """Sampler callback. Runs on the sampler thread; must not take the session lock."""
        live = self._live_session(session_id)
        if live is None:
            return
        live.aggregator.ingest(outcome)
        self.broadcaster.publish(session_id, live.aggregator.get_real_time_metrics().to_dict())

    def ingest(self, session_id: str, outcome) -> Optional[MetricsSnapshot]:
        """
        Client-pushed signal or detection gap. Ignored (None) while paused.
        """
        live = self._require_live(session_id, SessionState.IN_PROGRESS)
        if live.state != SessionState.IN_PROGRESS:
            return None
        if not isinstance(outcome, (FacialSignal, Observed, Undetected)):
            raise ValueError("outcome must be a signal or a detection result")
        snapshot = live.aggregator.ingest(outcome)
        self.broadcaster.publish(session_id, live.aggregator.get_real_time_metrics().to_dict())
        return snapshot

    def get_real_time_metrics(self, session_id: str) -> RealTimeMetrics:
        live = self._live_session(session_id)
        if live is not None:
            return live.aggregator.get_real_time_metrics()
        if self.store.get(session_id) is None:
            raise SessionNotFoundError(session_id)
        return RealTimeMetrics()

    def export_metrics_data(self, session_id: str) -> Dict[str, Any]:
        return self._require_live(session_id, SessionState.IN_PROGRESS).aggregator.export_metrics_data()

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _question_ids(self, live: LiveSession) -> List[str]:
        return [q["id"] for q in live.record.get("questions") or []]

    def begin_response(self, session_id: str, question_id: Optional[str] = None) -> Dict[str, Any]:
        """Open a response window. Switching question resets the timing reference."""
        live = self._require_live(session_id, SessionState.IN_PROGRESS)
        with live.lock:
            if live.state != SessionState.IN_PROGRESS:
                raise InvalidTransitionError(session_id, live.state, SessionState.IN_PROGRESS)
            if question_id is not None and question_id != live.current_question_id:
                if question_id not in self._question_ids(live):
                    raise ValueError(f"Unknown question: {question_id}")
                live.current_question_id = question_id
                live.question_started_at = self._clock()
            live.pending_response = ""
            live.aggregator.mark_response_start()
            return {"sessionId": session_id, "questionId": live.current_question_id, "responseInProgress": True}

    def update_pending_response(self, session_id: str, text: str) -> None:
        """Keep the in-flight transcription so completion can flush it."""
        live = self._require_live(session_id, SessionState.IN_PROGRESS)
        with live.lock:
            live.pending_response = text or ""

    def submit_response(
        self,
        session_id: str,
        transcription: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Close the response window, record the response and move to the next question."""
        live = self._require_live(session_id, SessionState.IN_PROGRESS)
        with live.lock:
            if live.state != SessionState.IN_PROGRESS:
                raise InvalidTransitionError(session_id, live.state, SessionState.IN_PROGRESS)
            text = transcription if transcription is not None else live.pending_response
            response = self._append_response(live, text, confidence)
            live.aggregator.mark_response_end()
            ids = self._question_ids(live)
            if live.current_question_id in ids:
                index = ids.index(live.current_question_id)
                live.current_question_id = ids[index + 1] if index + 1 < len(ids) else None
            live.question_started_at = self._clock()
            self._persist(live)
            return copy.deepcopy(response)

    def _append_response(self, live: LiveSession, text: str, confidence: Optional[float]) -> Dict[str, Any]:
        realtime = live.aggregator.get_real_time_metrics()
        if confidence is None:
            confidence = realtime.average_confidence
        elif isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            raise ValueError("confidence must be a number within [0, 1]")
        response = {
            "questionId": live.current_question_id,
            "transcription": text or "",
            "duration": max(0, int((self._clock() - live.question_started_at) * 1000)),
            "confidence": float(confidence),
            "facialMetrics": realtime.to_dict(),
            "submittedAt": to_iso(utc_now()),
        }
        live.record.setdefault("responses", []).append(response)
        live.pending_response = ""
        return response


_session_manager: Optional[SessionLifecycleManager] = None
_manager_lock = threading.Lock()


def get_session_manager() -> SessionLifecycleManager:
    """Return the process-wide manager, creating it on first call (lazy init)."""
    global _session_manager
    with _manager_lock:
        if _session_manager is None:
            _session_manager = SessionLifecycleManager()
        return _session_manager


def set_session_manager(manager: Optional[SessionLifecycleManager]) -> None:
    global _session_manager
    with _manager_lock:
        _session_manager = manager


def shutdown_session_manager() -> None:
    """Complete live sessions if a manager was ever created (process exit hook)."""
    with _manager_lock:
        manager = _session_manager
    if manager is not None:
        manager.shutdown()
