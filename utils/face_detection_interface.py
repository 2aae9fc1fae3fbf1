"""
Face Detection Interface Module

This module defines an abstract interface for face detection implementations,
so the frame analyzer can work with different backends (MediaPipe, Azure Face
API) interchangeably. Every backend reduces its raw landmarks to the same small
set of keypoints the analyzer needs: two 6-point eye contours, nose points and
mouth points.
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Tuple
import numpy as np
from dataclasses import dataclass, field


def _empty_points() -> np.ndarray:
    return np.zeros((0, 2), dtype=np.float32)


@dataclass
class FacialKeypoints:
    """
    Landmark subset used for eye contact, head pose and expression estimates.

    Eye contours are ordered for the eye aspect ratio:
    [outer corner, upper-1, upper-2, inner corner, lower-2, lower-1].
    "left_eye" is the eye on the left side of the image.
    Mouth points start with [left corner, right corner, upper lip top,
    lower lip bottom, upper lip inner, lower lip inner].
    """
    left_eye: np.ndarray = field(default_factory=_empty_points)
    right_eye: np.ndarray = field(default_factory=_empty_points)
    nose: np.ndarray = field(default_factory=_empty_points)
    mouth: np.ndarray = field(default_factory=_empty_points)


@dataclass
class FaceDetectionResult:
    """
    Standardized face detection result.

    emotions is None when the backend has no emotion model; the analyzer then
    falls back to a geometric expression estimate.
    """
    keypoints: FacialKeypoints
    bounding_box: Optional[Tuple[int, int, int, int]] = None  # (left, top, width, height)
    confidence: float = 1.0
    emotions: Optional[Dict[str, float]] = None


class FaceDetectorInterface(ABC):
    """
    Abstract interface for face detection implementations.
    """

    @abstractmethod
    def detect_faces(self, image: np.ndarray) -> List[FaceDetectionResult]:
        """
        Detect faces in an image.

        Args:
            image: BGR image array (OpenCV format)

        Returns:
            List of FaceDetectionResult objects, one per detected face
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """True if the detector can be used."""
        pass

    @abstractmethod
    def get_name(self) -> str:
        """String name (e.g. "mediapipe", "azure_face_api")."""
        pass

    def close(self) -> None:
        """Release backend resources. Default implementation does nothing."""
        pass
