"""
=============================================================================
CONFIGURATION FOR INTERVIEW SIGNAL PIPELINE (config.py)
=============================================================================

WHAT THIS FILE DOES (in plain language):
----------------------------------------
This file holds ALL configurable settings for the project in one place. Other
modules read from here. Nothing secret is stored in the code; values come from
the environment (your .env file or system variables), which app.py loads with
python-dotenv before this module is imported.

MAIN GROUPS OF SETTINGS:
------------------------
  1. Sampling        : How often frames are analyzed and how much history is kept.
  2. Face detection  : MediaPipe (local) or Azure Face API (cloud, with emotions).
  3. Session storage : In-memory or a JSON file on disk.
  4. Retention       : Default archive/delete thresholds for stored sessions.
  5. Server          : Host, port, debug mode and log level.

HOW VALUES ARE CHOSEN:
---------------------
  - Environment variables override everything.
  - If an env var is not set, we use a default where it's safe (e.g. port 5000).
  - We never put real API keys or secrets as defaults in code.
=============================================================================
"""

import os
import sys
from typing import Optional


# ============================================================================
# SAMPLING (how the video feed is turned into signals)
# ============================================================================
# One frame is analyzed per interval. A tick that falls due while the previous
# analysis is still running is skipped, never queued.
# ----------------------------------------------------------------------------
SAMPLING_INTERVAL_MS: int = max(50, int(os.getenv("SAMPLING_INTERVAL_MS", "1000")))

# Ring buffer size for per-session signal history and snapshots (FIFO eviction).
METRICS_HISTORY_LIMIT: int = max(1, int(os.getenv("METRICS_HISTORY_LIMIT", "1000")))

# Number of most recent signals used for the "current mood" readout.
MOOD_WINDOW_SIZE: int = max(1, int(os.getenv("MOOD_WINDOW_SIZE", "10")))

# Per-subscriber queue length for real-time metrics. Oldest events are dropped when full.
REALTIME_QUEUE_SIZE: int = max(1, int(os.getenv("REALTIME_QUEUE_SIZE", "32")))

# Demo only: fabricate a clearly flagged synthetic signal after repeated detection
# failures. Never enable this for real interviews.
SYNTHETIC_SIGNAL_FALLBACK: bool = os.getenv("SYNTHETIC_SIGNAL_FALLBACK", "false").lower() == "true"
SYNTHETIC_SIGNAL_SEED: Optional[int] = (
    int(os.getenv("SYNTHETIC_SIGNAL_SEED")) if os.getenv("SYNTHETIC_SIGNAL_SEED") else None
)

# ============================================================================
# AZURE FACE API (optional: cloud face and emotion detection)
# ============================================================================
AZURE_FACE_API_KEY: str = (os.getenv("AZURE_FACE_API_KEY") or "").strip()
AZURE_FACE_API_ENDPOINT: str = (os.getenv("AZURE_FACE_API_ENDPOINT") or "").strip().rstrip("/")
AZURE_FACE_API_REGION: str = os.getenv("AZURE_FACE_API_REGION", "centralindia")

# ============================================================================
# FACE DETECTION
# ============================================================================
#   "mediapipe"     : Local only. Landmarks from Face Mesh, emotions estimated from geometry.
#   "azure_face_api": Cloud. Landmarks and emotion scores from Azure Face.
# ----------------------------------------------------------------------------
FACE_DETECTION_METHOD: str = os.getenv("FACE_DETECTION_METHOD", "mediapipe")

# Minimum confidence for face detection (0.01-0.9). Lower = more permissive in suboptimal lighting.
MIN_FACE_CONFIDENCE: float = float(os.getenv("MIN_FACE_CONFIDENCE", "0.15"))

# ============================================================================
# SESSION STORAGE
# ============================================================================
# Path to a JSON file holding all session records. Empty = keep sessions in memory.
SESSION_STORE_PATH: str = (os.getenv("SESSION_STORE_PATH") or "").strip()

# ============================================================================
# RETENTION (defaults for cleanup runs; a policy file or request body can override)
# ============================================================================
RETENTION_MAX_AGE_DAYS: int = int(os.getenv("RETENTION_MAX_AGE_DAYS", "365"))
RETENTION_MAX_SESSIONS: int = int(os.getenv("RETENTION_MAX_SESSIONS", "100"))
RETENTION_ARCHIVE_AFTER_DAYS: int = int(os.getenv("RETENTION_ARCHIVE_AFTER_DAYS", "90"))
RETENTION_DELETE_AFTER_DAYS: int = int(os.getenv("RETENTION_DELETE_AFTER_DAYS", "730"))

# ============================================================================
# Application Configuration
# ============================================================================
FLASK_PORT: int = int(os.getenv("FLASK_PORT", "5000"))
FLASK_DEBUG: bool = os.getenv("FLASK_DEBUG", "false").lower() == "true"
FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
LOG_LEVEL: str = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

# ============================================================================
# Helper Functions
# ============================================================================

VALID_FACE_DETECTION_METHODS = ("mediapipe", "azure_face_api")


def warn_missing_config() -> None:
    """
    Print warnings when configuration is inconsistent (no secrets in code; set env vars).
    Call from app startup. Does not raise.
    """
    problems = []
    method = (FACE_DETECTION_METHOD or "").lower()
    if method not in VALID_FACE_DETECTION_METHODS:
        problems.append(f"FACE_DETECTION_METHOD={FACE_DETECTION_METHOD!r} (expected mediapipe or azure_face_api)")
    if method == "azure_face_api":
        if not AZURE_FACE_API_KEY:
            problems.append("AZURE_FACE_API_KEY")
        if not AZURE_FACE_API_ENDPOINT:
            problems.append("AZURE_FACE_API_ENDPOINT")
    if RETENTION_ARCHIVE_AFTER_DAYS >= RETENTION_DELETE_AFTER_DAYS:
        problems.append("RETENTION_ARCHIVE_AFTER_DAYS should be lower than RETENTION_DELETE_AFTER_DAYS")
    if SYNTHETIC_SIGNAL_FALLBACK:
        problems.append("SYNTHETIC_SIGNAL_FALLBACK is on (demo mode: signals may be fabricated)")
    if problems:
        print("Config warning:", "; ".join(problems), file=sys.stderr)


def is_azure_face_api_enabled() -> bool:
    """
    Check if Azure Face API is properly configured.

    Returns:
        bool: True if both key and endpoint are set
    """
    return bool(AZURE_FACE_API_KEY and AZURE_FACE_API_ENDPOINT)


def get_default_retention_policy() -> dict:
    """Retention defaults in the wire (camelCase) form accepted by RetentionPolicy.from_dict."""
    return {
        "maxAge": RETENTION_MAX_AGE_DAYS,
        "maxSessions": RETENTION_MAX_SESSIONS,
        "archiveAfter": RETENTION_ARCHIVE_AFTER_DAYS,
        "deleteAfter": RETENTION_DELETE_AFTER_DAYS,
    }


def build_config_response() -> dict:
    """
    Build the non-secret configuration view for GET /config/all.
    """
    return {
        "sampling": {
            "intervalMs": SAMPLING_INTERVAL_MS,
            "historyLimit": METRICS_HISTORY_LIMIT,
            "moodWindow": MOOD_WINDOW_SIZE,
            "realtimeQueueSize": REALTIME_QUEUE_SIZE,
            "syntheticFallback": SYNTHETIC_SIGNAL_FALLBACK,
        },
        "faceDetection": {
            "method": (FACE_DETECTION_METHOD or "mediapipe").lower(),
            "minFaceConfidence": MIN_FACE_CONFIDENCE,
            "azureFaceApiAvailable": is_azure_face_api_enabled(),
        },
        "storage": {
            "backend": "json_file" if SESSION_STORE_PATH else "memory",
        },
        "retention": get_default_retention_policy(),
    }
