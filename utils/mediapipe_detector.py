"""
MediaPipe Face Detection Implementation

Local face detection with MediaPipe Face Mesh. Uses tracking mode for
continuous video and falls back to static mode when tracking loses the face.
MediaPipe has no emotion model, so results carry emotions=None.
"""

import logging

import cv2
import numpy as np
import mediapipe as mp
from typing import List

from utils.face_detection_interface import FaceDetectorInterface, FaceDetectionResult, FacialKeypoints

logger = logging.getLogger(__name__)

# Face Mesh indices, ordered [outer, upper, upper, inner, lower, lower] for the eye aspect ratio.
LEFT_EYE_INDICES = [33, 160, 158, 133, 153, 144]
RIGHT_EYE_INDICES = [263, 387, 385, 362, 380, 373]
NOSE_INDICES = [1, 2, 4, 5, 6, 19, 94, 168, 197]
# [left corner, right corner, upper lip top, lower lip bottom, upper inner, lower inner, inner corners]
MOUTH_INDICES = [61, 291, 0, 17, 13, 14, 78, 308]


def keypoints_from_mesh(landmarks: np.ndarray) -> FacialKeypoints:
    """Pick the keypoint subset out of a (468+, 2|3) Face Mesh landmark array."""
    pts = landmarks[:, :2]
    return FacialKeypoints(
        left_eye=pts[LEFT_EYE_INDICES].astype(np.float32),
        right_eye=pts[RIGHT_EYE_INDICES].astype(np.float32),
        nose=pts[NOSE_INDICES].astype(np.float32),
        mouth=pts[MOUTH_INDICES].astype(np.float32),
    )


class MediaPipeFaceDetector(FaceDetectorInterface):
    """
    MediaPipe-based face detector implementation.
    """

    def __init__(self, min_detection_confidence: float = 0.15, min_tracking_confidence: float = 0.15):
        self._det_conf = max(0.01, min(0.99, float(min_detection_confidence)))
        self._track_conf = max(0.01, min(0.99, float(min_tracking_confidence)))

        self.mp_face_mesh = mp.solutions.face_mesh
        self.face_mesh = self.mp_face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=1,
            refine_landmarks=False,
            min_detection_confidence=self._det_conf,
            min_tracking_confidence=self._track_conf,
        )
        # Created on first tracking miss
        self._face_mesh_static = None
        self._available = True

    def detect_faces(self, image: np.ndarray) -> List[FaceDetectionResult]:
        if image is None or image.size == 0:
            return []

        rgb_image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        height, width = image.shape[:2]

        results = self.face_mesh.process(rgb_image)
        if not results.multi_face_landmarks:
            results = self._get_face_mesh_static().process(rgb_image)
            if not results.multi_face_landmarks:
                return []
        return self._to_results(results, width, height)

    def _get_face_mesh_static(self):
        if self._face_mesh_static is None:
            self._face_mesh_static = self.mp_face_mesh.FaceMesh(
                static_image_mode=True,
                max_num_faces=1,
                refine_landmarks=False,
                min_detection_confidence=self._det_conf,
            )
        return self._face_mesh_static

    def _to_results(self, results, width: int, height: int) -> List[FaceDetectionResult]:
        face_results = []
        for face_landmarks in results.multi_face_landmarks:
            landmarks = np.array(
                [[lm.x * width, lm.y * height] for lm in face_landmarks.landmark],
                dtype=np.float32,
            )
            left, top = int(np.min(landmarks[:, 0])), int(np.min(landmarks[:, 1]))
            right, bottom = int(np.max(landmarks[:, 0])), int(np.max(landmarks[:, 1]))
            face_results.append(
                FaceDetectionResult(
                    keypoints=keypoints_from_mesh(landmarks),
                    bounding_box=(left, top, right - left, bottom - top),
                    confidence=1.0,  # Face Mesh has no per-face score
                    emotions=None,
                )
            )
        return face_results

    def is_available(self) -> bool:
        return self._available

    def get_name(self) -> str:
        return "mediapipe"

    def close(self) -> None:
        for mesh in (self.face_mesh, self._face_mesh_static):
            if mesh is None:
                continue
            try:
                mesh.close()
            except Exception as e:
                logger.debug("Face Mesh close failed: %s", e)
        self._face_mesh_static = None
        self._available = False
