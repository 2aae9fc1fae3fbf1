"""
Face detection backend selection.

Resolves which backend to use (explicit request or config.FACE_DETECTION_METHOD)
and builds the detector. Backends are imported lazily so mediapipe and the
Azure client load only when a sampler actually needs them.
"""

import logging
from typing import Optional

import config
from utils.face_detection_interface import FaceDetectorInterface

logger = logging.getLogger(__name__)


def get_face_detection_method(requested: Optional[str] = None) -> str:
    """Return the validated backend name (request, else config default)."""
    method = (requested or config.FACE_DETECTION_METHOD or "mediapipe").strip().lower()
    if method not in config.VALID_FACE_DETECTION_METHODS:
        raise ValueError("method must be 'mediapipe' or 'azure_face_api'")
    return method


def create_face_detector(requested: Optional[str] = None) -> FaceDetectorInterface:
    """
    Build the face detector for a new sampling loop.

    Azure Face API is only used when it is configured; otherwise MediaPipe is used
    and a warning is logged.
    """
    method = get_face_detection_method(requested)
    if method == "azure_face_api":
        if config.is_azure_face_api_enabled():
            from utils.azure_face_detector import AzureFaceAPIDetector
            detector = AzureFaceAPIDetector()
            if detector.is_available():
                return detector
        logger.warning("Azure Face API requested but not available; falling back to MediaPipe")
    from utils.mediapipe_detector import MediaPipeFaceDetector
    return MediaPipeFaceDetector(min_detection_confidence=config.MIN_FACE_CONFIDENCE)
