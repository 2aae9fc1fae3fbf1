"""
Azure Face API service module.

Handles the HTTP calls to Azure Face API (detect with landmarks and emotion
attributes) and converts the response into the keypoints and emotion vector
the frame analyzer understands.
"""

import logging

import requests
import cv2
import numpy as np
from typing import Optional, List, Dict, Any, Tuple
import config

logger = logging.getLogger(__name__)

# Azure emotion attribute -> fixed emotion key. contempt folds into disgusted.
AZURE_EMOTION_MAP = {
    "neutral": "neutral",
    "happiness": "happy",
    "sadness": "sad",
    "anger": "angry",
    "fear": "fearful",
    "disgust": "disgusted",
    "contempt": "disgusted",
    "surprise": "surprised",
}

# Azure has 4 points per eye; the EAR contour repeats top and bottom.
_LEFT_EYE_KEYS = ["eyeLeftOuter", "eyeLeftTop", "eyeLeftTop", "eyeLeftInner", "eyeLeftBottom", "eyeLeftBottom"]
_RIGHT_EYE_KEYS = ["eyeRightOuter", "eyeRightTop", "eyeRightTop", "eyeRightInner", "eyeRightBottom", "eyeRightBottom"]
_NOSE_KEYS = ["noseTip", "noseRootLeft", "noseRootRight", "noseLeftAlarOutTip", "noseRightAlarOutTip"]
_MOUTH_KEYS = ["mouthLeft", "mouthRight", "upperLipTop", "underLipBottom", "upperLipBottom", "underLipTop"]

MAX_IMAGE_BYTES = 6 * 1024 * 1024


class AzureFaceAPIService:
    """
    Client for the Azure Face API detect endpoint.
    """

    def __init__(self, api_key: Optional[str] = None, endpoint: Optional[str] = None, timeout: float = 10.0):
        self.api_key = (api_key if api_key is not None else config.AZURE_FACE_API_KEY or "").strip()
        self.endpoint = (endpoint if endpoint is not None else config.AZURE_FACE_API_ENDPOINT or "").strip().rstrip("/")
        self.timeout = timeout

        if not self.api_key:
            raise ValueError("Azure Face API key is empty or invalid")
        if not self.endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Invalid Azure Face API endpoint format: {self.endpoint!r}. Must start with http:// or https://")

        self.api_version = "v1.0"
        base = self.endpoint.split("/face")[0].rstrip("/") if "/face" in self.endpoint.lower() else self.endpoint
        self.detect_url = f"{base}/face/{self.api_version}/detect"
        self.headers = {
            "Ocp-Apim-Subscription-Key": self.api_key,
            "Content-Type": "application/octet-stream",
        }

    def _encode(self, image: np.ndarray) -> bytes:
        if image is None or image.size == 0:
            raise ValueError("Invalid image: image is None or empty")
        if len(image.shape) != 3 or image.shape[2] != 3:
            raise ValueError(f"Invalid image format: expected BGR image with shape (H, W, 3), got {image.shape}")
        h, w = image.shape[:2]
        if h < 36 or w < 36:
            raise ValueError(f"Image too small: {w}x{h}. Minimum size is 36x36 pixels")
        if h > 4096 or w > 4096:
            scale = min(4096 / w, 4096 / h)
            image = cv2.resize(image, (int(w * scale), int(h * scale)))
        for quality in (90, 70):
            ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
            if not ok or buffer is None:
                raise ValueError("Failed to encode image to JPEG")
            data = buffer.tobytes()
            if len(data) <= MAX_IMAGE_BYTES:
                return data
        raise ValueError(f"Image file size too large: {len(data)} bytes. Maximum is 6MB")

    def detect_faces(self, image: np.ndarray) -> List[Dict[str, Any]]:
        """
        Detect faces with landmarks and emotion attributes.

        Raises:
            requests.RequestException: If the API call fails
        """
        params = {
            "returnFaceId": "false",
            "returnFaceLandmarks": "true",
            "returnFaceAttributes": "emotion,headPose",
        }
        try:
            response = requests.post(
                self.detect_url,
                headers=self.headers,
                params=params,
                data=self._encode(image),
                timeout=self.timeout,
            )
        except requests.Timeout:
            raise requests.RequestException(
                f"Azure Face API request timed out after {self.timeout} seconds. Endpoint: {self.detect_url}"
            )

        if response.status_code != 200:
            error_msg = f"Azure Face API returned status {response.status_code}"
            try:
                error_info = response.json().get("error", {})
                error_msg += f": {error_info.get('message', 'Unknown error')}"
            except (ValueError, AttributeError):
                error_msg += f": {response.text[:200]}"
            raise requests.RequestException(error_msg)

        faces = response.json()
        if not isinstance(faces, list):
            raise ValueError(f"Unexpected response format: expected list, got {type(faces)}")
        return faces

    @staticmethod
    def _points(landmarks: Dict[str, Any], keys: List[str]) -> np.ndarray:
        pts = []
        for key in keys:
            point = landmarks.get(key)
            if isinstance(point, dict) and "x" in point and "y" in point:
                pts.append([float(point["x"]), float(point["y"])])
        return np.array(pts, dtype=np.float32).reshape(-1, 2)

    def extract_keypoints(self, face_data: Dict[str, Any]) -> Optional[Dict[str, np.ndarray]]:
        """
        Map the 27 Azure landmarks onto eye, nose and mouth point sets.

        Azure's "eyeLeft" is the subject's left eye, which appears on the image's
        right, so the sets are swapped to keep left_eye on the image-left side.
        Returns None when landmarks are missing.
        """
        landmarks = face_data.get("faceLandmarks")
        if not isinstance(landmarks, dict):
            return None
        subject_left = self._points(landmarks, _LEFT_EYE_KEYS)
        subject_right = self._points(landmarks, _RIGHT_EYE_KEYS)
        if len(subject_left) < 6 or len(subject_right) < 6:
            return None
        return {
            "left_eye": subject_right,
            "right_eye": subject_left,
            "nose": self._points(landmarks, _NOSE_KEYS),
            "mouth": self._points(landmarks, _MOUTH_KEYS),
        }

    def extract_emotions(self, face_data: Dict[str, Any]) -> Optional[Dict[str, float]]:
        """Azure emotion scores folded onto the fixed emotion keys, or None."""
        raw = (face_data.get("faceAttributes") or {}).get("emotion")
        if not isinstance(raw, dict):
            return None
        out: Dict[str, float] = {}
        for azure_key, key in AZURE_EMOTION_MAP.items():
            out[key] = out.get(key, 0.0) + float(raw.get(azure_key, 0.0) or 0.0)
        return out

    def get_face_rectangle(self, face_data: Dict[str, Any]) -> Optional[Tuple[int, int, int, int]]:
        rect = face_data.get("faceRectangle")
        if not rect:
            return None
        return (rect["left"], rect["top"], rect["width"], rect["height"])


# Global service instance
azure_face_api_service: Optional[AzureFaceAPIService] = None


def get_azure_face_api_service() -> Optional[AzureFaceAPIService]:
    """
    Get or create the global Azure Face API service instance.

    Returns:
        AzureFaceAPIService instance if configured, None otherwise
    """
    global azure_face_api_service

    if azure_face_api_service is None:
        if not config.is_azure_face_api_enabled():
            logger.warning("Azure Face API is not enabled in configuration")
            return None
        try:
            azure_face_api_service = AzureFaceAPIService()
            logger.info("Azure Face API service initialized. Endpoint: %s", azure_face_api_service.endpoint)
        except ValueError as e:
            logger.error("Azure Face API configuration issue: %s", e)
            return None

    return azure_face_api_service
