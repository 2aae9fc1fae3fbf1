"""
Fixed-interval sampling loop for one live session.

Reads a frame from the session's video source every SAMPLING_INTERVAL_MS,
runs the frame analyzer on it and hands the outcome to a callback (the
lifecycle manager feeds it into the aggregator and publishes metrics).

Only one analyze call runs at a time. Ticks that fall due while a call is still
in flight are skipped and counted in skipped_ticks, never queued. The video
source and the detector are released when the loop exits, whatever the reason.
"""

import logging
import threading
import time
from typing import Callable, Optional

import config
from utils.face_detection_preference import create_face_detector
from utils.frame_analyzer import FrameAnalyzer
from utils.signal_types import DetectionOutcome
from utils.video_source_handler import VideoSourceHandler, VideoSourceType

logger = logging.getLogger(__name__)


class SignalSampler:
    """
    Background sampler. Use start()/stop() or as a context manager.
    """

    def __init__(
        self,
        analyzer: FrameAnalyzer,
        video_handler: VideoSourceHandler,
        on_outcome: Callable[[DetectionOutcome], None],
        interval_ms: int = config.SAMPLING_INTERVAL_MS,
        name: Optional[str] = None,
    ):
        self.analyzer = analyzer
        self.video_handler = video_handler
        self.on_outcome = on_outcome
        self.interval = max(0.001, interval_ms / 1000.0)
        self.name = name or f"sampler-{video_handler.session_id}"

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._paused = threading.Event()
        self._release_lock = threading.Lock()
        self._released = False
        self.ticks = 0
        self.skipped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Sampler %s started (interval %.0f ms)", self.name, self.interval * 1000)

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop and release resources. Safe to call more than once."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Sampler %s did not stop within %.1fs", self.name, timeout)
        # The loop releases on exit; this covers a loop that never started.
        if thread is None or not thread.is_alive():
            self._release()

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    def __enter__(self) -> "SignalSampler":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def run_once(self) -> Optional[DetectionOutcome]:
        """Run a single tick synchronously. Returns None while paused."""
        if self._paused.is_set():
            return None
        ok, frame = self.video_handler.read_frame()
        outcome = self.analyzer.analyze(frame if ok else None)
        self.ticks += 1
        self.on_outcome(outcome)
        return outcome

    def _loop(self) -> None:
        next_tick = time.monotonic()
        try:
            while not self._stop_event.is_set():
                now = time.monotonic()
                if now < next_tick:
                    self._stop_event.wait(next_tick - now)
                    continue
                next_tick += self.interval
                try:
                    self.run_once()
                except Exception as e:
                    logger.exception("Sampler %s tick failed: %s", self.name, e)
                # Ticks that came due while analyzing are dropped.
                now = time.monotonic()
                if now >= next_tick:
                    missed = int((now - next_tick) // self.interval) + 1
                    self.skipped_ticks += missed
                    next_tick += missed * self.interval
        finally:
            self._release()
            logger.info("Sampler %s stopped (%d ticks, %d skipped)", self.name, self.ticks, self.skipped_ticks)

    def _release(self) -> None:
        with self._release_lock:
            if self._released:
                return
            self._released = True
        try:
            self.video_handler.release()
        except Exception as e:
            logger.warning("Error releasing video source for %s: %s", self.name, e)
        self.analyzer.close()


def build_sampler(
    session_id: str,
    source_type: VideoSourceType,
    source_path: Optional[str],
    on_outcome: Callable[[DetectionOutcome], None],
    detection_method: Optional[str] = None,
) -> SignalSampler:
    """
    Open the video source and detector for a session and wrap them in a sampler.

    Raises RuntimeError when the source cannot be opened; nothing is left open
    in that case.
    """
    handler = VideoSourceHandler(session_id)
    if not handler.initialize_source(source_type, source_path):
        raise RuntimeError(f"Failed to open {source_type.value} video source")
    try:
        detector = create_face_detector(detection_method)
    except Exception:
        handler.release()
        raise
    analyzer = FrameAnalyzer(
        detector,
        synthetic_fallback=config.SYNTHETIC_SIGNAL_FALLBACK,
        seed=config.SYNTHETIC_SIGNAL_SEED,
    )
    return SignalSampler(analyzer, handler, on_outcome, interval_ms=config.SAMPLING_INTERVAL_MS)
