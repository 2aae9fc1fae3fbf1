"""
Geometric expression estimate for detectors without an emotion model.

Derives a coarse 7-key emotion vector from mouth and eye geometry: corner lift
(smile vs. frown), mouth opening and eye openness, all normalized by the
inter-eye distance so the estimate does not depend on face size. The result
sums to 1. This is a heuristic, not a trained classifier.
"""

import numpy as np
from typing import Dict

from utils.face_detection_interface import FacialKeypoints
from utils.signal_types import EMOTION_KEYS


def _clip01(x: float) -> float:
    return float(np.clip(x, 0.0, 1.0))


def _eye_openness(eye: np.ndarray) -> float:
    if len(eye) < 6:
        return 0.0
    horizontal = np.linalg.norm(eye[0] - eye[3])
    if horizontal <= 1e-6:
        return 0.0
    vertical = np.linalg.norm(eye[1] - eye[5]) + np.linalg.norm(eye[2] - eye[4])
    return float(vertical / (2.0 * horizontal))


class ExpressionEstimator:
    """Stateless; one instance can be shared across analyzers."""

    def estimate(self, keypoints: FacialKeypoints) -> Dict[str, float]:
        neutral_only = {key: (1.0 if key == "neutral" else 0.0) for key in EMOTION_KEYS}
        mouth = keypoints.mouth
        if len(mouth) < 6 or len(keypoints.left_eye) < 6 or len(keypoints.right_eye) < 6:
            return neutral_only

        left_center = keypoints.left_eye.mean(axis=0)
        right_center = keypoints.right_eye.mean(axis=0)
        eye_dist = float(np.linalg.norm(right_center - left_center))
        if eye_dist <= 1e-6:
            return neutral_only

        corner_l, corner_r, lip_top, lip_bottom, inner_top, inner_bottom = mouth[:6]
        mouth_width = float(np.linalg.norm(corner_r - corner_l)) / eye_dist
        mouth_open = float(np.linalg.norm(inner_bottom - inner_top)) / eye_dist
        # Image y grows downward: corners above the lip midline -> positive lift.
        lip_mid_y = (lip_top[1] + lip_bottom[1]) / 2.0
        corner_lift = float(lip_mid_y - (corner_l[1] + corner_r[1]) / 2.0) / eye_dist
        openness = (_eye_openness(keypoints.left_eye) + _eye_openness(keypoints.right_eye)) / 2.0

        scores = {
            "happy": _clip01(corner_lift * 4.0 + (mouth_width - 0.9) * 1.5),
            "sad": _clip01(-corner_lift * 4.0),
            "surprised": _clip01((mouth_open - 0.2) * 3.0) * _clip01((openness - 0.25) * 6.0),
            "fearful": _clip01((openness - 0.35) * 3.0) * _clip01(mouth_open * 2.0),
            "angry": _clip01((0.2 - openness) * 3.0) * _clip01((0.05 - mouth_open) * 10.0),
            "disgusted": _clip01((0.75 - mouth_width) * 2.0) * _clip01(-corner_lift * 2.0),
        }
        scores["neutral"] = max(0.1, 1.0 - max(scores.values()))

        total = sum(scores.values())
        return {key: scores[key] / total for key in EMOTION_KEYS}
