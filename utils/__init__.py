"""
Utilities package for the interview signal pipeline.

Signal types, face detection backends, per-frame analysis, metrics aggregation
and video source handling. Detector backends (mediapipe, Azure Face API) are
imported from their modules directly so importing this package stays light.
"""

from .signal_types import FacialSignal, InterviewMetrics, RealTimeMetrics
from .face_detection_interface import FaceDetectorInterface, FaceDetectionResult, FacialKeypoints
from .metrics_aggregator import MetricsAggregator

__all__ = [
    'FacialSignal',
    'InterviewMetrics',
    'RealTimeMetrics',
    'FaceDetectorInterface',
    'FaceDetectionResult',
    'FacialKeypoints',
    'MetricsAggregator',
]
