"""
Frame analyzer tests.

Uses synthetic keypoints and a stub detector; no camera, mediapipe or Azure needed.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import unittest

import numpy as np


def _stub_detector(results=None, error=None):
    from utils.face_detection_interface import FaceDetectorInterface

    class StubDetector(FaceDetectorInterface):
        def __init__(self):
            self.calls = 0
            self.closed = False

        def detect_faces(self, image):
            self.calls += 1
            if error is not None:
                raise error
            return list(results or [])

        def is_available(self):
            return True

        def get_name(self):
            return "stub"

        def close(self):
            self.closed = True

    return StubDetector()


class TestGeometry(unittest.TestCase):
    """Eye aspect ratio and head pose from keypoints."""

    def test_open_eye_ear(self):
        """A 30 px wide eye with 12 px opening has EAR 0.4."""
        from utils.frame_analyzer import eye_aspect_ratio
        from tests.fixtures.synthetic_landmarks import eye_contour
        self.assertAlmostEqual(eye_aspect_ratio(eye_contour(100, 100, 6.0)), 0.4, places=5)

    def test_ear_degenerate_inputs(self):
        """Fewer than six points or zero width give EAR 0."""
        from utils.frame_analyzer import eye_aspect_ratio
        self.assertEqual(eye_aspect_ratio(np.zeros((3, 2))), 0.0)
        self.assertEqual(eye_aspect_ratio(np.zeros((6, 2))), 0.0)

    def test_eye_contact_open_vs_closed(self):
        """Open eyes count as eye contact; closed eyes do not."""
        from utils.frame_analyzer import has_eye_contact
        from tests.fixtures.synthetic_landmarks import make_keypoints
        self.assertTrue(has_eye_contact(make_keypoints(eyes_open=True)))
        self.assertFalse(has_eye_contact(make_keypoints(eyes_open=False)))

    def test_frontal_head_pose(self):
        """Centered nose and level eyes give zero yaw and roll."""
        from utils.frame_analyzer import estimate_head_pose
        from tests.fixtures.synthetic_landmarks import make_keypoints
        pose = estimate_head_pose(make_keypoints())
        self.assertAlmostEqual(pose.yaw, 0.0, places=5)
        self.assertAlmostEqual(pose.roll, 0.0, places=5)
        self.assertAlmostEqual(pose.pitch, 22.5, places=3)

    def test_yaw_follows_nose_offset(self):
        """Nose shifted by a third of the eye distance reads as 15 degrees of yaw."""
        from utils.frame_analyzer import estimate_head_pose
        from tests.fixtures.synthetic_landmarks import make_keypoints, EYE_DISTANCE
        pose = estimate_head_pose(make_keypoints(nose_offset_x=EYE_DISTANCE / 3))
        self.assertAlmostEqual(pose.yaw, 15.0, places=3)

    def test_roll_from_eye_line(self):
        """Lowering the right eye by the eye distance reads as 45 degrees of roll."""
        from utils.frame_analyzer import estimate_head_pose
        from tests.fixtures.synthetic_landmarks import make_keypoints, EYE_DISTANCE
        pose = estimate_head_pose(make_keypoints(tilt_right_eye_dy=EYE_DISTANCE))
        self.assertAlmostEqual(pose.roll, 45.0, places=3)

    def test_missing_eyes_give_zero_pose(self):
        """Keypoints without eyes give a zero pose instead of failing."""
        from utils.frame_analyzer import estimate_head_pose
        from utils.face_detection_interface import FacialKeypoints
        pose = estimate_head_pose(FacialKeypoints())
        self.assertEqual((pose.pitch, pose.yaw, pose.roll), (0.0, 0.0, 0.0))


class TestExpressionEstimator(unittest.TestCase):
    """Geometric emotion estimate."""

    def test_neutral_face(self):
        """A closed, level mouth is mostly neutral and the vector sums to 1."""
        from utils.expression_estimator import ExpressionEstimator
        from tests.fixtures.synthetic_landmarks import make_keypoints
        emotions = ExpressionEstimator().estimate(make_keypoints())
        self.assertAlmostEqual(sum(emotions.values()), 1.0, places=6)
        self.assertEqual(max(emotions, key=emotions.get), "neutral")

    def test_smile_reads_happy(self):
        """A wide mouth with lifted corners is dominated by happy."""
        from utils.expression_estimator import ExpressionEstimator
        from tests.fixtures.synthetic_landmarks import make_keypoints
        emotions = ExpressionEstimator().estimate(make_keypoints(smile=True))
        self.assertEqual(max(emotions, key=emotions.get), "happy")

    def test_insufficient_points(self):
        """Missing mouth points fall back to pure neutral."""
        from utils.expression_estimator import ExpressionEstimator
        from utils.face_detection_interface import FacialKeypoints
        emotions = ExpressionEstimator().estimate(FacialKeypoints())
        self.assertEqual(emotions["neutral"], 1.0)
        self.assertEqual(sum(emotions.values()), 1.0)


class TestFrameAnalyzer(unittest.TestCase):
    """FrameAnalyzer outcomes."""

    def _face(self, emotions=None, confidence=1.0, **kwargs):
        from utils.face_detection_interface import FaceDetectionResult
        from tests.fixtures.synthetic_landmarks import make_keypoints
        return FaceDetectionResult(keypoints=make_keypoints(**kwargs), confidence=confidence, emotions=emotions)

    def test_observed_signal(self):
        """A detected face yields Observed with eye contact and a bounded confidence."""
        from utils.frame_analyzer import FrameAnalyzer
        from utils.signal_types import Observed
        from tests.fixtures.synthetic_landmarks import blank_frame
        analyzer = FrameAnalyzer(_stub_detector([self._face()]), clock=lambda: 1700000000.0)
        outcome = analyzer.analyze(blank_frame())
        self.assertIsInstance(outcome, Observed)
        self.assertTrue(outcome.signal.eye_contact)
        self.assertFalse(outcome.signal.synthetic)
        self.assertEqual(outcome.timestamp, 1700000000000)
        self.assertGreaterEqual(outcome.signal.confidence, 0.0)
        self.assertLessEqual(outcome.signal.confidence, 1.0)

    def test_detector_emotions_take_precedence(self):
        """Emotions reported by the detector are used; confidence is the dominant score."""
        from utils.frame_analyzer import FrameAnalyzer
        from tests.fixtures.synthetic_landmarks import blank_frame
        face = self._face(emotions={"happy": 0.7, "neutral": 0.2, "sad": 0.1})
        outcome = FrameAnalyzer(_stub_detector([face])).analyze(blank_frame())
        self.assertEqual(outcome.signal.dominant_emotion, "happy")
        self.assertAlmostEqual(outcome.signal.confidence, 0.7)
        self.assertEqual(len(outcome.signal.emotions), 7)

    def test_highest_confidence_face_wins(self):
        """With several faces the most confident detection is analyzed."""
        from utils.frame_analyzer import FrameAnalyzer
        from tests.fixtures.synthetic_landmarks import blank_frame
        faces = [
            self._face(emotions={"sad": 0.9}, confidence=0.3),
            self._face(emotions={"happy": 0.8}, confidence=0.9),
        ]
        outcome = FrameAnalyzer(_stub_detector(faces)).analyze(blank_frame())
        self.assertEqual(outcome.signal.dominant_emotion, "happy")

    def test_no_face_is_undetected(self):
        """No detection yields Undetected, never a fabricated signal."""
        from utils.frame_analyzer import FrameAnalyzer
        from utils.signal_types import Undetected
        from tests.fixtures.synthetic_landmarks import blank_frame
        analyzer = FrameAnalyzer(_stub_detector([]))
        for _ in range(5):
            outcome = analyzer.analyze(blank_frame())
            self.assertIsInstance(outcome, Undetected)
            self.assertEqual(outcome.reason, "no_face")

    def test_unreadable_frame(self):
        """A missing frame is Undetected without calling the detector."""
        from utils.frame_analyzer import FrameAnalyzer
        detector = _stub_detector([self._face()])
        outcome = FrameAnalyzer(detector).analyze(None)
        self.assertEqual(outcome.reason, "frame_unreadable")
        self.assertEqual(detector.calls, 0)

    def test_detector_error(self):
        """Detector exceptions become Undetected with reason detector_error."""
        from utils.frame_analyzer import FrameAnalyzer
        from tests.fixtures.synthetic_landmarks import blank_frame
        analyzer = FrameAnalyzer(_stub_detector(error=RuntimeError("boom")))
        outcome = analyzer.analyze(blank_frame())
        self.assertEqual(outcome.reason, "detector_error")

    def test_synthetic_fallback_is_flagged(self):
        """Demo mode fabricates signals only after repeated failures and flags them synthetic."""
        from utils.frame_analyzer import FrameAnalyzer, SYNTHETIC_AFTER_FAILURES
        from utils.signal_types import Observed, Undetected
        from tests.fixtures.synthetic_landmarks import blank_frame
        analyzer = FrameAnalyzer(_stub_detector([]), synthetic_fallback=True, seed=7)
        outcomes = [analyzer.analyze(blank_frame()) for _ in range(SYNTHETIC_AFTER_FAILURES + 1)]
        for outcome in outcomes[:SYNTHETIC_AFTER_FAILURES - 1]:
            self.assertIsInstance(outcome, Undetected)
        self.assertIsInstance(outcomes[-1], Observed)
        self.assertTrue(outcomes[-1].signal.synthetic)
        self.assertAlmostEqual(sum(outcomes[-1].signal.emotions.values()), 1.0, places=6)

    def test_close_closes_detector(self):
        """close() releases the detector."""
        from utils.frame_analyzer import FrameAnalyzer
        detector = _stub_detector()
        FrameAnalyzer(detector).close()
        self.assertTrue(detector.closed)


class TestSignalTypes(unittest.TestCase):
    """FacialSignal parsing and validation."""

    def test_from_dict_defaults_confidence(self):
        """Without confidence the dominant emotion score is used."""
        from utils.signal_types import FacialSignal
        signal = FacialSignal.from_dict({"emotions": {"happy": 0.6}, "eyeContact": True, "timestamp": 5})
        self.assertAlmostEqual(signal.confidence, 0.6)
        self.assertEqual(signal.dominant_emotion, "happy")
        self.assertEqual(signal.emotions["neutral"], 0.0)

    def test_confidence_out_of_range_rejected(self):
        """Confidence outside [0, 1] raises ValueError."""
        from utils.signal_types import FacialSignal
        with self.assertRaises(ValueError):
            FacialSignal.from_dict({"confidence": 1.5, "timestamp": 5})

    def test_malformed_head_pose_rejected(self):
        """A headPose that is not an object, or has non-numeric angles, raises ValueError."""
        from utils.signal_types import FacialSignal
        for head_pose in ([1, 2], "up", 3, {"yaw": "left"}, {"pitch": [1]}):
            with self.subTest(head_pose=head_pose):
                with self.assertRaises(ValueError):
                    FacialSignal.from_dict({"headPose": head_pose, "timestamp": 5})
        signal = FacialSignal.from_dict({"headPose": None, "timestamp": 5})
        self.assertEqual(signal.head_pose.to_dict(), {"pitch": 0.0, "yaw": 0.0, "roll": 0.0})

    def test_emotions_are_read_only(self):
        """A signal's emotion vector cannot be changed after construction."""
        from utils.signal_types import FacialSignal, HeadPose
        source = {"happy": 0.9}
        signal = FacialSignal(emotions=source, eye_contact=True, head_pose=HeadPose(), confidence=0.9, timestamp=1)
        with self.assertRaises(TypeError):
            signal.emotions["happy"] = 0.1
        source["happy"] = 0.1
        self.assertEqual(signal.emotions["happy"], 0.9)
        self.assertEqual(signal.dominant_emotion, "happy")
        self.assertIsInstance(signal.to_dict()["emotions"], dict)

    def test_all_zero_emotions_are_neutral(self):
        """An all-zero vector has dominant emotion neutral with score 0."""
        from utils.signal_types import dominant_emotion, normalize_emotions
        self.assertEqual(dominant_emotion(normalize_emotions({"happy": -1})), ("neutral", 0.0))


if __name__ == "__main__":
    unittest.main()
