"""
Video Source Handler Module

Unified frame reading for the sampling loop:
- Webcam (default camera)
- Local video files
- Video streams (RTSP, HTTP, etc.)
- Partner (browser-fed: the frontend POSTs JPEG frames for a session)

Partner frames are kept per session and consumed on read, so a browser that
stops sending frames produces "no frame" ticks instead of re-analyzing a stale
image.
"""

import logging
import sys
import threading
from enum import Enum
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Latest browser frame per session id
_partner_frames: Dict[str, np.ndarray] = {}
_partner_frame_lock = threading.Lock()

# Max width for partner frames (resize larger frames to reduce memory and detection latency)
PARTNER_FRAME_MAX_WIDTH = 1280


def set_partner_frame(session_id: str, frame_bgr: Optional[np.ndarray]) -> None:
    """Set (or clear, with None) the latest browser frame for a session."""
    with _partner_frame_lock:
        if frame_bgr is None:
            _partner_frames.pop(session_id, None)
        else:
            _partner_frames[session_id] = frame_bgr


def take_partner_frame(session_id: str) -> Optional[np.ndarray]:
    """Pop the latest frame for a session. Returns None if nothing new arrived."""
    with _partner_frame_lock:
        return _partner_frames.pop(session_id, None)


def decode_frame(image_bytes: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes to a BGR array, downscaling wide frames. None if undecodable."""
    if not image_bytes:
        return None
    arr = np.frombuffer(image_bytes, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if frame is None:
        return None
    h, w = frame.shape[:2]
    if w > PARTNER_FRAME_MAX_WIDTH:
        scale = PARTNER_FRAME_MAX_WIDTH / w
        frame = cv2.resize(frame, (PARTNER_FRAME_MAX_WIDTH, int(round(h * scale))), interpolation=cv2.INTER_AREA)
    return frame


def set_partner_frame_from_bytes(session_id: str, image_bytes: bytes) -> bool:
    """Decode and store a browser frame. Returns False for undecodable input."""
    frame = decode_frame(image_bytes)
    if frame is None:
        return False
    set_partner_frame(session_id, frame)
    return True


class VideoSourceType(Enum):
    """Enumeration of supported video source types."""
    WEBCAM = "webcam"
    FILE = "file"
    STREAM = "stream"
    PARTNER = "partner"

    @classmethod
    def parse(cls, value: Optional[str]) -> "VideoSourceType":
        try:
            return cls((value or "partner").strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid sourceType: {value}. Must be 'webcam', 'file', 'stream', or 'partner'"
            )


def _open_webcam() -> Optional[cv2.VideoCapture]:
    apis = [cv2.CAP_DSHOW, cv2.CAP_MSMF, cv2.CAP_ANY] if sys.platform == "win32" else [cv2.CAP_ANY]
    for api in apis:
        for index in (0, 1, 2):
            cap = cv2.VideoCapture(index, api)
            if cap.isOpened():
                return cap
            cap.release()
    return None


class VideoSourceHandler:
    """
    Reads frames for one session from one source.

    Usage:
        handler = VideoSourceHandler("session-id")
        handler.initialize_source(VideoSourceType.PARTNER)
        ok, frame = handler.read_frame()
        handler.release()
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.cap: Optional[cv2.VideoCapture] = None
        self.source_type: Optional[VideoSourceType] = None
        self.source_path: Optional[str] = None

    def initialize_source(self, source_type: VideoSourceType, source_path: Optional[str] = None) -> bool:
        """
        Open a source. FILE and STREAM need source_path.

        Returns False when the source cannot be opened.
        """
        self.release()
        if source_type in (VideoSourceType.FILE, VideoSourceType.STREAM) and not source_path:
            raise ValueError(f"sourcePath is required for {source_type.value} sources")

        self.source_type = source_type
        self.source_path = source_path

        if source_type == VideoSourceType.PARTNER:
            set_partner_frame(self.session_id, None)
            return True

        if source_type == VideoSourceType.WEBCAM:
            self.cap = _open_webcam()
        else:
            self.cap = cv2.VideoCapture(source_path)
            if source_type == VideoSourceType.STREAM:
                self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        if self.cap is None or not self.cap.isOpened():
            logger.error("Failed to open %s source %s", source_type.value, source_path or "")
            self.release()
            return False
        return True

    def read_frame(self) -> Tuple[bool, Optional[np.ndarray]]:
        """
        Returns:
            (success, frame): frame is a BGR array when success is True
        """
        if self.source_type == VideoSourceType.PARTNER:
            frame = take_partner_frame(self.session_id)
            return (True, frame) if frame is not None else (False, None)

        if not self.cap or not self.cap.isOpened():
            return False, None
        ret, frame = self.cap.read()
        if not ret or frame is None:
            return False, None
        return True, frame

    def release(self) -> None:
        """Release the current video source and free resources."""
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        if self.source_type == VideoSourceType.PARTNER:
            set_partner_frame(self.session_id, None)
        self.source_type = None
        self.source_path = None
