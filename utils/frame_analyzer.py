"""
Frame Analyzer

Turns one video frame into a DetectionOutcome: Observed(FacialSignal) when a
face is found, Undetected otherwise. Eye contact comes from the eye aspect
ratio (EAR), head pose from eye/nose/mouth geometry, emotions from the
detector (or a geometric estimate when the detector has no emotion model).

The analyzer never invents data. The only exception is the explicit demo
mode (synthetic_fallback=True): after repeated detection failures it emits a
random signal that is flagged synthetic=True.
"""

import logging
import math
import random
import time
from typing import Callable, Optional

import numpy as np

from utils.face_detection_interface import FaceDetectorInterface, FaceDetectionResult, FacialKeypoints
from utils.expression_estimator import ExpressionEstimator
from utils.signal_types import (
    EMOTION_KEYS,
    DetectionOutcome,
    FacialSignal,
    HeadPose,
    Observed,
    Undetected,
    dominant_emotion,
    normalize_emotions,
)

logger = logging.getLogger(__name__)

EYE_CONTACT_EAR_THRESHOLD = 0.2
YAW_SCALE_DEG = 45.0
PITCH_SCALE_DEG = 30.0
# Consecutive failed ticks before the demo mode starts fabricating signals.
SYNTHETIC_AFTER_FAILURES = 2


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """
    EAR over a 6-point eye contour [p0..p5]:
    (|p1 - p5| + |p2 - p4|) / (2 * |p0 - p3|).
    Returns 0.0 for fewer than 6 points or a degenerate eye width.
    """
    if eye is None or len(eye) < 6:
        return 0.0
    p = np.asarray(eye, dtype=np.float64)[:, :2]
    horizontal = np.linalg.norm(p[0] - p[3])
    if horizontal <= 1e-9:
        return 0.0
    vertical = np.linalg.norm(p[1] - p[5]) + np.linalg.norm(p[2] - p[4])
    return float(vertical / (2.0 * horizontal))


def has_eye_contact(keypoints: FacialKeypoints) -> bool:
    avg = (eye_aspect_ratio(keypoints.left_eye) + eye_aspect_ratio(keypoints.right_eye)) / 2.0
    return avg > EYE_CONTACT_EAR_THRESHOLD


def estimate_head_pose(keypoints: FacialKeypoints) -> HeadPose:
    """
    Heuristic pose from 2D landmarks.

    roll: angle of the line between eye centers.
    yaw: horizontal nose offset from the eye midpoint, scaled by inter-eye distance.
    pitch: vertical mouth offset from the eye midpoint, scaled the same way.
    """
    if len(keypoints.left_eye) == 0 or len(keypoints.right_eye) == 0:
        return HeadPose()
    left = np.asarray(keypoints.left_eye, dtype=np.float64)[:, :2].mean(axis=0)
    right = np.asarray(keypoints.right_eye, dtype=np.float64)[:, :2].mean(axis=0)
    dx, dy = right[0] - left[0], right[1] - left[1]
    roll = math.degrees(math.atan2(dy, dx))
    eye_dist = math.hypot(dx, dy)
    if eye_dist <= 1e-9:
        return HeadPose(pitch=0.0, yaw=0.0, roll=roll)

    mid = (left + right) / 2.0
    nose = np.asarray(keypoints.nose, dtype=np.float64)[:, :2].mean(axis=0) if len(keypoints.nose) else mid
    mouth = np.asarray(keypoints.mouth, dtype=np.float64)[:, :2].mean(axis=0) if len(keypoints.mouth) else mid
    yaw = (nose[0] - mid[0]) / eye_dist * YAW_SCALE_DEG
    pitch = (mouth[1] - mid[1]) / eye_dist * PITCH_SCALE_DEG
    return HeadPose(pitch=float(pitch), yaw=float(yaw), roll=float(roll))


class FrameAnalyzer:
    """
    Per-session frame analyzer. Owns its detector and closes it on close().
    """

    def __init__(
        self,
        detector: FaceDetectorInterface,
        expression_estimator: Optional[ExpressionEstimator] = None,
        synthetic_fallback: bool = False,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.detector = detector
        self.expression_estimator = expression_estimator or ExpressionEstimator()
        self.synthetic_fallback = synthetic_fallback
        self._rng = random.Random(seed)
        self._clock = clock
        self._consecutive_failures = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def analyze(self, frame: Optional[np.ndarray]) -> DetectionOutcome:
        timestamp = self._now_ms()
        if frame is None or getattr(frame, "size", 0) == 0:
            return self._gap(timestamp, "frame_unreadable")

        try:
            faces = self.detector.detect_faces(frame)
        except Exception as e:
            logger.warning("Face detector %s failed: %s", self.detector.get_name(), e)
            return self._gap(timestamp, "detector_error")

        if not faces:
            return self._gap(timestamp, "no_face")

        face = max(faces, key=lambda f: f.confidence)
        self._consecutive_failures = 0
        return Observed(self.signal_from_detection(face, timestamp))

    def signal_from_detection(self, face: FaceDetectionResult, timestamp: int) -> FacialSignal:
        if face.emotions is not None:
            emotions = normalize_emotions(face.emotions)
        else:
            emotions = normalize_emotions(self.expression_estimator.estimate(face.keypoints))
        _, confidence = dominant_emotion(emotions)
        return FacialSignal(
            emotions=emotions,
            eye_contact=has_eye_contact(face.keypoints),
            head_pose=estimate_head_pose(face.keypoints),
            confidence=max(0.0, min(1.0, confidence)),
            timestamp=timestamp,
        )

    def _gap(self, timestamp: int, reason: str) -> DetectionOutcome:
        self._consecutive_failures += 1
        if self.synthetic_fallback and self._consecutive_failures >= SYNTHETIC_AFTER_FAILURES:
            return Observed(self._synthetic_signal(timestamp))
        return Undetected(timestamp=timestamp, reason=reason)

    def _synthetic_signal(self, timestamp: int) -> FacialSignal:
        raw = {key: self._rng.random() for key in EMOTION_KEYS}
        total = sum(raw.values()) or 1.0
        emotions = {key: value / total for key, value in raw.items()}
        _, confidence = dominant_emotion(emotions)
        return FacialSignal(
            emotions=emotions,
            eye_contact=self._rng.random() > 0.3,
            head_pose=HeadPose(
                pitch=self._rng.uniform(-10, 10),
                yaw=self._rng.uniform(-15, 15),
                roll=self._rng.uniform(-5, 5),
            ),
            confidence=confidence,
            timestamp=timestamp,
            synthetic=True,
        )

    def close(self) -> None:
        try:
            self.detector.close()
        except Exception as e:
            logger.warning("Error closing face detector: %s", e)
