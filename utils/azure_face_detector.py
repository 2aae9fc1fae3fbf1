"""
Azure Face API Detection Implementation

FaceDetectorInterface backed by the Azure Face API service. Unlike MediaPipe,
results carry per-face emotion scores.
"""

import logging

import numpy as np
from typing import List
import requests

from utils.face_detection_interface import FaceDetectorInterface, FaceDetectionResult, FacialKeypoints
from services.azure_face_api import get_azure_face_api_service

logger = logging.getLogger(__name__)


class AzureFaceAPIDetector(FaceDetectorInterface):
    """
    Azure Face API-based face detector implementation.
    """

    def __init__(self, service=None):
        self.service = service if service is not None else get_azure_face_api_service()
        self._available = self.service is not None
        if not self._available:
            logger.warning("Azure Face API detector initialized but service is not available")

    def detect_faces(self, image: np.ndarray) -> List[FaceDetectionResult]:
        """
        Detect faces using Azure Face API.

        Request failures are logged and reported as "no face" for this frame;
        the sampling loop records them as detection gaps.
        """
        if not self.service:
            return []

        try:
            face_data_list = self.service.detect_faces(image)
        except (requests.RequestException, ValueError) as e:
            logger.warning("Azure Face API detection error: %s", e)
            return []

        face_results = []
        for face_data in face_data_list:
            points = self.service.extract_keypoints(face_data)
            if points is None:
                logger.debug("Skipping Azure face without usable landmarks")
                continue
            face_results.append(
                FaceDetectionResult(
                    keypoints=FacialKeypoints(**points),
                    bounding_box=self.service.get_face_rectangle(face_data),
                    confidence=1.0,  # Azure Face API doesn't provide per-face confidence
                    emotions=self.service.extract_emotions(face_data),
                )
            )
        return face_results

    def is_available(self) -> bool:
        return self._available

    def get_name(self) -> str:
        return "azure_face_api"
