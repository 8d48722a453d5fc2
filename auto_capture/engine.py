"""
Auto-Capture Engine
Drives one capture session over a frame source:
pull frame -> ScanPipeline.step -> event, until a card is captured,
the search times out, or a fatal error stops the stream.

Features:
- Frame-at-a-time loop, no overlap between frames
- Watchdog timer for the no-card timeout, rearmed on every accepted frame
- Thread-safe reset (retake), applied at the top of the next iteration
- Camera stream stopped on capture and on timeout
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from error_handlers import (
    AcquisitionFailure,
    CameraNotInitializedError,
    DetectionFailure,
    TimeoutExpired,
)
from layer1_capture import CameraHandler
from layer3_stability import TimeoutWatchdog, TrackerStatus

from .config import CaptureConfig
from .session import CaptureEvent, ScanPipeline, SessionState, TimeoutEvent

logger = logging.getLogger(__name__)


@dataclass
class CaptureResult:
    """Result of a capture session."""
    success: bool
    image: Optional[np.ndarray] = None
    corners: Optional[List[Tuple[float, float]]] = None
    timestamp: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'success': self.success,
            'timestamp': self.timestamp,
            'error': self.error,
            'error_code': self.error_code,
            'metadata': self.metadata
        }
        if self.corners:
            result['corners'] = self.corners
        return result


class AutoCaptureEngine:
    """
    Card auto-capture session over a frame source.

    The frame source is any object with get_frame() and release()
    (initialize() is called when present); defaults to a CameraHandler.
    """

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        camera=None,
        on_event: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize auto-capture engine.

        Args:
            config: Capture configuration (uses defaults if not provided)
            camera: Frame source (a CameraHandler is created on start if None)
            on_event: Called with every event the session emits
            clock: Monotonic time source in seconds
        """
        self.config = config or CaptureConfig()
        self.pipeline = ScanPipeline(self.config)
        self.camera = camera
        self.on_event = on_event
        self.clock = clock

        self.watchdog = TimeoutWatchdog(self.config.timeout_seconds, self._on_watchdog, clock=clock)

        # State tracking
        self._lock = threading.Lock()
        self._reset_requested = threading.Event()
        self._state: SessionState = self.pipeline.start(clock())
        self._finished = False
        self.last_capture: Optional[CaptureEvent] = None
        self.last_event = None

        logger.info("AutoCaptureEngine initialized")
        logger.debug(f"Config: {self.config}")

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def progress(self) -> float:
        return self.pipeline.tracker.progress(self.state.tracker)

    def start(self):
        """
        Open the frame source and begin a fresh session.

        Raises:
            AcquisitionFailure: the frame source cannot be opened
        """
        if self.camera is None:
            self.camera = CameraHandler(
                camera_index=self.config.camera_index,
                config={
                    'width': self.config.camera_width,
                    'height': self.config.camera_height,
                }
            )
        if hasattr(self.camera, 'initialize'):
            self.camera.initialize()

        self._reset_session()
        self.watchdog.arm()
        logger.info("Capture session started")

    def reset(self):
        """Request a retake. Safe to call from any thread."""
        logger.info("Session reset requested")
        self._reset_requested.set()

    def _reset_session(self):
        """Single reset path for retake, timeout and fatal errors."""
        with self._lock:
            self._state = self.pipeline.start(self.clock())
            self._finished = False
            self.last_event = None
        self._reset_requested.clear()

    def _on_watchdog(self):
        with self._lock:
            if self._finished:
                return
            self._state = self.pipeline.expire(self._state)

    def _stop_stream(self):
        self.watchdog.cancel()
        if self.camera is not None:
            self.camera.release()

    def _abort(self):
        """Fatal error: stop the stream and end the session on a fresh state."""
        self._stop_stream()
        self._reset_session()
        with self._lock:
            self._finished = True

    def _finish(self, event):
        with self._lock:
            self._finished = True
            if isinstance(event, CaptureEvent):
                self.last_capture = event
        self._stop_stream()

    def _emit(self, event):
        self.last_event = event
        if event is not None and self.on_event is not None:
            self.on_event(event)

    def process_next(self):
        """
        One loop iteration.

        Returns:
            Tuple of (frame, event). Both are None once the session has
            finished and no reset was requested.

        Raises:
            AcquisitionFailure: the frame source failed
            DetectionFailure: detection kept failing beyond the retry budget
        """
        if self._reset_requested.is_set():
            self._reset_session()
            if hasattr(self.camera, 'initialize'):
                self.camera.initialize()
            self.watchdog.arm()

        with self._lock:
            state = self._state
            finished = self._finished

        if finished:
            return None, None

        if state.status == TrackerStatus.TIMED_OUT:
            event = TimeoutEvent(timeout_seconds=self.config.timeout_seconds)
            self._finish(event)
            self._emit(event)
            return None, event

        try:
            if self.camera is None:
                raise CameraNotInitializedError()
            frame = self.camera.get_frame()
        except AcquisitionFailure as e:
            logger.error(f"Frame source failed: {e.message}")
            self._abort()
            raise

        try:
            new_state, event = self.pipeline.step(state, frame, self.clock())
        except DetectionFailure as e:
            logger.error(f"Detection failed on {e.details.get('consecutive_failures')} consecutive frames")
            self._abort()
            raise

        with self._lock:
            if self._state.status == TrackerStatus.TIMED_OUT and not isinstance(event, CaptureEvent):
                # Watchdog expired the session while this frame was in flight;
                # reported on the next iteration
                event = None
            else:
                self._state = new_state

        if new_state.tracker.last_seen > state.tracker.last_seen:
            self.watchdog.arm()

        if isinstance(event, (CaptureEvent, TimeoutEvent)):
            self._finish(event)

        self._emit(event)
        return frame, event

    def run(self) -> CaptureResult:
        """
        Block until a card is captured or the search times out.

        Returns:
            CaptureResult: success with the rectified image, or failure

        Raises:
            AcquisitionFailure: the frame source failed
            DetectionFailure: detection kept failing beyond the retry budget
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.start()

        while True:
            frame, event = self.process_next()

            if isinstance(event, CaptureEvent):
                return CaptureResult(
                    success=True,
                    image=event.image,
                    corners=[tuple(map(float, p)) for p in event.corners],
                    timestamp=timestamp,
                    metadata={
                        'size': event.result.size,
                        'lock_frames': self.config.lock_frames,
                    }
                )

            if isinstance(event, TimeoutEvent):
                error = TimeoutExpired(event.timeout_seconds)
                return CaptureResult(
                    success=False,
                    timestamp=timestamp,
                    error=error.message,
                    error_code=error.error_code,
                    metadata=error.details,
                )

            if frame is None and event is None:
                return CaptureResult(
                    success=False,
                    timestamp=timestamp,
                    error="Session already finished",
                    error_code="SESSION_FINISHED",
                )

    def release(self):
        """Release all resources."""
        self._stop_stream()
        logger.info("AutoCaptureEngine released")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.release()
        return False
