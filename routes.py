"""
Flask routes for the interview signal pipeline.

Session lifecycle (create/start/pause/resume/complete/abandon), client-pushed
signals and partner frames, real-time metrics (JSON and SSE), metrics
persistence and export, and data retention (cleanup, archive, export).

Errors are JSON {"error": ...}: 400 invalid input, 404 unknown session or
metrics, 409 illegal lifecycle transition, 500 storage failure.
"""

import logging
import time

from flask import Blueprint, Response, jsonify, request

import config
from services.data_export import ExportOptions
from services.metrics_broadcaster import format_sse, get_metrics_broadcaster
from services.metrics_store import (
    MetricsNotFoundError,
    MetricsUpdate,
    get_metrics_store,
    metrics_to_csv,
    summarize_metrics,
)
from services.retention import RetentionPolicy, get_retention_engine
from services.session_lifecycle import InvalidTransitionError, get_session_manager
from services.session_store import SessionNotFoundError, StorageError, to_iso, utc_now
from utils.face_detection_preference import get_face_detection_method
from utils.signal_types import FacialSignal, Undetected
from utils.video_source_handler import set_partner_frame_from_bytes

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

SSE_KEEPALIVE_SECONDS = 15.0


def register_routes(app) -> None:
    app.register_blueprint(api)


# ============================================================================
# Error mapping
# ============================================================================

@api.errorhandler(InvalidTransitionError)
def _invalid_transition(e):
    return jsonify({"error": str(e), "status": e.current.value}), 409


@api.errorhandler(SessionNotFoundError)
def _session_not_found(e):
    return jsonify({"error": f"Session not found: {e}"}), 404


@api.errorhandler(MetricsNotFoundError)
def _metrics_not_found(e):
    return jsonify({"error": "Metrics not found for this session"}), 404


@api.errorhandler(ValueError)
def _invalid_input(e):
    return jsonify({"error": str(e)}), 400


@api.errorhandler(StorageError)
def _storage_failure(e):
    logger.error("Storage failure: %s", e)
    return jsonify({"error": "Storage failure", "details": str(e)}), 500


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _require_param(data: dict, name: str, message: str = None):
    value = data.get(name)
    if not value:
        raise ValueError(message or f"Missing '{name}'")
    return value


# ============================================================================
# Health and configuration
# ============================================================================

@api.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "ok",
        "liveSessions": len(get_session_manager().list_live_sessions()),
        "timestamp": to_iso(utc_now()),
    })


@api.route("/config/all", methods=["GET"])
def get_all_config():
    """Non-secret configuration used by the frontend at startup."""
    return jsonify(config.build_config_response())


@api.route("/config/face-detection", methods=["GET"])
def face_detection_config():
    return jsonify({
        "method": get_face_detection_method(),
        "minConfidence": config.MIN_FACE_CONFIDENCE,
        "azureFaceApiEnabled": config.is_azure_face_api_enabled(),
    })


# ============================================================================
# Session lifecycle
# ============================================================================

@api.route("/sessions", methods=["POST"])
def create_session():
    """
    Create a session in the "created" state.

    Request Body:
        {
            "candidateId": "user-1",
            "configuration": {"interviewer": "...", "type": "...", "settings": {...}},
            "questions": ["text", {"id": "q1", "text": "...", "difficulty": 5}]
        }
    """
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = _json_body()
    record = get_session_manager().create_session(
        data.get("candidateId"),
        configuration=data.get("configuration"),
        questions=data.get("questions"),
    )
    return jsonify(record), 201


@api.route("/sessions", methods=["GET"])
def list_sessions():
    owner_id = _require_param(request.args, "candidateId")
    sessions = sorted(
        get_session_manager().store.list_by_owner(owner_id),
        key=lambda s: s.get("startedAt") or "",
    )
    return jsonify({"sessions": sessions, "total": len(sessions)})


@api.route("/sessions/<session_id>", methods=["GET"])
def get_session(session_id):
    return jsonify(get_session_manager().get_session(session_id))


@api.route("/sessions/<session_id>/start", methods=["POST"])
def start_session(session_id):
    """
    Start collecting metrics.

    Request Body (optional):
        {
            "sourceType": "webcam" | "file" | "stream" | "partner",
            "sourcePath": "path for file/stream sources",
            "detectionMethod": "mediapipe" | "azure_face_api"
        }

    Without sourceType no sampler runs; signals are pushed by the client
    to /sessions/<id>/signals instead.
    """
    data = _json_body()
    try:
        record = get_session_manager().start_session(
            session_id,
            source_type=data.get("sourceType"),
            source_path=data.get("sourcePath"),
            detection_method=data.get("detectionMethod"),
        )
    except StorageError:
        raise
    except RuntimeError as e:
        logger.error("Could not start session %s: %s", session_id, e)
        return jsonify({"error": "Failed to start session", "details": str(e)}), 500
    return jsonify(record)


@api.route("/sessions/<session_id>/pause", methods=["POST"])
def pause_session(session_id):
    return jsonify(get_session_manager().pause(session_id))


@api.route("/sessions/<session_id>/resume", methods=["POST"])
def resume_session(session_id):
    return jsonify(get_session_manager().resume(session_id))


@api.route("/sessions/<session_id>/complete", methods=["POST"])
def complete_session(session_id):
    """Body (optional): {"feedback": {strengths, weaknesses, suggestions, overallScore}}."""
    data = _json_body()
    return jsonify(get_session_manager().complete(session_id, feedback=data.get("feedback")))


@api.route("/sessions/<session_id>/abandon", methods=["POST"])
def abandon_session(session_id):
    return jsonify(get_session_manager().abandon(session_id))


# ============================================================================
# Signals, frames and responses
# ============================================================================

@api.route("/sessions/<session_id>/signals", methods=["POST"])
def push_signal(session_id):
    """
    Push one client-side detection result.

    Request Body:
        {"emotions": {...}, "eyeContact": true, "headPose": {...}, "confidence": 0.8, "timestamp": 1700000000000}
        or {"detected": false, "timestamp": 1700000000000, "reason": "no_face"}
    """
    if not request.is_json:
        return jsonify({"error": "Request must be JSON"}), 400
    data = _json_body()
    now_ms = int(time.time() * 1000)
    if data.get("detected") is False:
        outcome = Undetected(timestamp=int(data.get("timestamp") or now_ms), reason=data.get("reason") or "no_face")
    else:
        outcome = FacialSignal.from_dict(data, default_timestamp=now_ms)
    snapshot = get_session_manager().ingest(session_id, outcome)
    return jsonify({
        "accepted": snapshot is not None or isinstance(outcome, Undetected),
        "snapshot": snapshot.to_dict() if snapshot is not None else None,
    })


@api.route("/sessions/<session_id>/frame", methods=["POST"])
def partner_frame(session_id):
    """
    Receive a single frame for the "partner" video source.
    Expects raw JPEG body or multipart/form-data with an image file.
    """
    data = request.get_data()
    if not data and request.files:
        f = request.files.get("frame") or request.files.get("image") or next(iter(request.files.values()), None)
        if f:
            data = f.read()
    if not data:
        return jsonify({"error": "No image data"}), 400
    if not set_partner_frame_from_bytes(session_id, data):
        return jsonify({"error": "Invalid or unsupported image"}), 400
    return "", 204


@api.route("/sessions/<session_id>/responses/start", methods=["POST"])
def begin_response(session_id):
    data = _json_body()
    return jsonify(get_session_manager().begin_response(session_id, data.get("questionId")))


@api.route("/sessions/<session_id>/responses/pending", methods=["PUT"])
def update_pending_response(session_id):
    data = _json_body()
    text = data.get("text", "")
    if not isinstance(text, str):
        return jsonify({"error": "'text' must be a string"}), 400
    get_session_manager().update_pending_response(session_id, text)
    return "", 204


@api.route("/sessions/<session_id>/responses/end", methods=["POST"])
def submit_response(session_id):
    """Body (optional): {"transcription": "...", "confidence": 0.8}."""
    data = _json_body()
    response = get_session_manager().submit_response(
        session_id,
        transcription=data.get("transcription"),
        confidence=data.get("confidence"),
    )
    return jsonify(response), 201


@api.route("/sessions/<session_id>/metrics/realtime", methods=["GET"])
def session_realtime_metrics(session_id):
    return jsonify(get_session_manager().get_real_time_metrics(session_id).to_dict())


@api.route("/sessions/<session_id>/metrics/data", methods=["GET"])
def session_metrics_data(session_id):
    """Full in-flight collection: history, snapshots, engagement breakdown, mood timeline."""
    return jsonify(get_session_manager().export_metrics_data(session_id))


# ============================================================================
# Metrics persistence
# ============================================================================

@api.route("/interview/metrics", methods=["GET"])
def get_metrics():
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    record = get_metrics_store().get(session_id)
    if record is None:
        raise MetricsNotFoundError(session_id)
    return jsonify({"success": True, "data": record["metrics"]})


@api.route("/interview/metrics", methods=["POST"])
def store_metrics():
    data = _json_body()
    if not data.get("sessionId") or not data.get("metrics"):
        return jsonify({"error": "Session ID and metrics are required"}), 400
    get_metrics_store().store(data["sessionId"], data["metrics"], user_id=data.get("userId"))
    return jsonify({"success": True, "message": "Metrics stored successfully"})


@api.route("/interview/metrics", methods=["PUT"])
def update_metrics():
    data = _json_body()
    if not data.get("sessionId") or not data.get("metrics"):
        return jsonify({"error": "Session ID and metrics are required"}), 400
    record = get_metrics_store().update(data["sessionId"], MetricsUpdate.from_dict(data["metrics"]))
    return jsonify({"success": True, "message": "Metrics updated successfully", "data": record["metrics"]})


@api.route("/interview/metrics", methods=["DELETE"])
def delete_metrics():
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    if not get_metrics_store().delete(session_id):
        raise MetricsNotFoundError(session_id)
    return jsonify({"success": True, "message": "Metrics deleted successfully"})


@api.route("/interview/metrics/export", methods=["GET"])
def export_metrics():
    """?sessionId=...&format=json|csv"""
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    fmt = request.args.get("format", "json")
    if fmt not in ("json", "csv"):
        return jsonify({"error": f"Unsupported export format: {fmt}"}), 400
    record = get_metrics_store().get(session_id)
    if record is None:
        raise MetricsNotFoundError(session_id)
    if fmt == "csv":
        return Response(
            metrics_to_csv(record["metrics"]),
            mimetype="text/csv",
            headers={"Content-Disposition": f'attachment; filename="interview-metrics-{session_id}.csv"'},
        )
    return jsonify({
        "sessionId": session_id,
        "exportedAt": to_iso(utc_now()),
        "metrics": record["metrics"],
    })


@api.route("/interview/metrics/summary", methods=["GET"])
def metrics_summary():
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    record = get_metrics_store().get(session_id)
    if record is None:
        raise MetricsNotFoundError(session_id)
    return jsonify({"success": True, "data": summarize_metrics(session_id, record["metrics"])})


# ============================================================================
# Real-time metrics distribution
# ============================================================================

@api.route("/interview/metrics/realtime", methods=["GET"])
def subscribe_realtime():
    """
    Server-Sent Events stream for one session (?sessionId=...).

    Sends "connected", then the latest metrics if any, then every "metrics"
    event until "session_ended". Comment lines keep idle connections open.
    """
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    subscription = get_metrics_broadcaster().subscribe(session_id)

    def generate():
        try:
            while True:
                event = subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
                if event is not None:
                    yield format_sse(event)
                elif subscription.closed:
                    return
                else:
                    yield ": keepalive\n\n"
        finally:
            subscription.cancel()

    return Response(
        generate(),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'X-Accel-Buffering': 'no'
        }
    )


@api.route("/interview/metrics/realtime", methods=["POST"])
def broadcast_realtime():
    """Body: {"sessionId": "...", "metrics": {...}}. Caches and fans out to subscribers."""
    data = _json_body()
    session_id = _require_param(data, "sessionId", "Session ID is required")
    metrics = data.get("metrics")
    if not isinstance(metrics, dict):
        return jsonify({"error": "'metrics' must be an object"}), 400
    broadcaster = get_metrics_broadcaster()
    event = broadcaster.publish(session_id, metrics)
    return jsonify({
        "success": True,
        "timestamp": event.timestamp,
        "connectedClients": broadcaster.subscriber_count(session_id),
    })


@api.route("/interview/metrics/realtime", methods=["DELETE"])
def end_realtime():
    session_id = _require_param(request.args, "sessionId", "Session ID is required")
    get_metrics_broadcaster().end_session(session_id)
    return jsonify({"success": True, "message": "Session ended"})


# ============================================================================
# Data retention
# ============================================================================

def _owner_id(data: dict) -> str:
    return _require_param(data, "userId", "userId is required")


@api.route("/data-retention/cleanup", methods=["GET"])
def storage_stats():
    owner_id = _owner_id(request.args)
    return jsonify({"success": True, "data": get_retention_engine().get_user_storage_stats(owner_id)})


@api.route("/data-retention/cleanup", methods=["POST"])
def apply_retention():
    """Body: {"userId": "...", "policy": {maxAge, maxSessions, archiveAfter, deleteAfter}, "dryRun": false}."""
    data = _json_body()
    owner_id = _owner_id(data)
    policy = RetentionPolicy.from_dict(data.get("policy"))
    results = get_retention_engine().apply_retention_policy(owner_id, policy, dry_run=bool(data.get("dryRun")))
    return jsonify({"success": True, "data": results})


@api.route("/data-retention/global-cleanup", methods=["POST"])
def global_cleanup():
    data = _json_body()
    policy = RetentionPolicy.from_dict(data.get("policy"))
    results = get_retention_engine().run_global_cleanup(policy, dry_run=bool(data.get("dryRun")))
    return jsonify({"success": True, "data": results})


@api.route("/data-retention/archive", methods=["GET"])
def archive_stats():
    return jsonify({"success": True, "data": get_retention_engine().get_archive_stats()})


@api.route("/data-retention/archive", methods=["POST"])
def archive_action():
    """Body: {"userId": "...", "action": "restore" | "delete", "sessionIds": [...]}."""
    data = _json_body()
    owner_id = _owner_id(data)
    session_ids = data.get("sessionIds")
    if session_ids is not None and not isinstance(session_ids, list):
        return jsonify({"error": "'sessionIds' must be a list"}), 400
    engine = get_retention_engine()
    action = data.get("action")
    if action == "restore":
        results = engine.restore_archived_sessions(owner_id, session_ids)
    elif action == "delete":
        results = engine.delete_archived_sessions(owner_id, session_ids)
    else:
        return jsonify({"error": 'Invalid action. Use "restore" or "delete"'}), 400
    return jsonify({"success": True, "data": results})


@api.route("/data-retention/export", methods=["POST"])
def export_user_data():
    """
    Download a user's sessions.

    Request Body:
        {
            "userId": "...",
            "format": "json" | "csv" | "pdf",
            "includeMetrics": true, "includeResponses": true, "includeFeedback": true,
            "dateRange": {"from": "2024-01-01", "to": "2024-12-31"}
        }
    """
    data = _json_body()
    owner_id = _owner_id(data)
    result = get_retention_engine().export_user_data(owner_id, ExportOptions.from_dict(data))
    return Response(
        result["data"],
        mimetype=result["mimeType"],
        headers={"Content-Disposition": f'attachment; filename="{result["filename"]}"'},
    )
