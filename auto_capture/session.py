"""
Auto-Capture — Session step
One pure function per frame: previous SessionState + Frame in,
next SessionState + optional event out.

Events:
- OverlayEvent: what to draw over the live preview for this frame
- CaptureEvent: the rectified card, emitted once per session
- TimeoutEvent: no card found, emitted once per session
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple, Union

from error_handlers import DegenerateGeometry, DetectionFailure
from layer2_detection import Candidate, ContourExtractor, FramePreprocessor
from layer3_stability import QualityGate, StabilityTracker, TrackerState, TrackerStatus
from layer4_rectification import PerspectiveRectifier, RectifiedImage, order_corners

from .config import CaptureConfig

logger = logging.getLogger(__name__)

# BGR overlay colors
COLOR_LOCKING = (129, 185, 16)    # green
COLOR_UNSTABLE = (0, 165, 255)    # amber
COLOR_REJECTED = (0, 0, 255)      # red
COLOR_LOCKED = (0, 255, 255)      # yellow

STATUS_SEARCHING = "Searching for card edges..."
STATUS_ALIGNING = "Card detected, aligning..."
STATUS_HOLD_STILL = "Hold still, capturing automatically..."
STATUS_REJECTED = "Card detected, adjust distance or angle"
STATUS_TOO_SMALL = "Card too small, move closer"
STATUS_COMPLETE = "Scan complete!"
STATUS_TIMED_OUT = "No card found"


@dataclass(frozen=True)
class SessionState:
    """Everything that survives from one frame to the next."""
    tracker: TrackerState = field(default_factory=TrackerState)
    detection_failures: int = 0

    @property
    def status(self) -> TrackerStatus:
        return self.tracker.status


@dataclass
class OverlayEvent:
    """Per-frame preview overlay descriptor."""
    status: TrackerStatus
    message: str
    progress: float = 0.0
    points: Optional[np.ndarray] = None
    color: Tuple[int, int, int] = COLOR_LOCKING
    accepted: bool = False

    def to_dict(self):
        """Convert to dictionary for API response."""
        return {
            'detected': self.points is not None,
            'accepted': self.accepted,
            'state': self.status.value,
            'message': self.message,
            'progress': round(self.progress, 3),
            'corners': (np.asarray(self.points).round(1).tolist()
                        if self.points is not None else None),
        }


@dataclass
class CaptureEvent:
    """The session's single successful capture."""
    result: RectifiedImage
    corners: np.ndarray

    @property
    def image(self):
        return self.result.image


@dataclass
class TimeoutEvent:
    """No acceptable card within the configured time."""
    timeout_seconds: float


Event = Union[OverlayEvent, CaptureEvent, TimeoutEvent]


def _frame_area(frame) -> int:
    shape = getattr(frame, "shape", ())
    if len(shape) < 2:
        return 0
    return int(shape[0]) * int(shape[1])


class ScanPipeline:
    """
    Detection, stability and rectification components built from one config.
    Holds no per-session data; see step().
    """

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        cfg = self.config

        self.preprocessor = FramePreprocessor(
            canny_low=cfg.canny_low,
            canny_high=cfg.canny_high,
            blur_kernel=cfg.blur_kernel,
        )
        self.extractor = ContourExtractor(
            min_area=cfg.min_contour_area,
            min_area_ratio=cfg.min_contour_area_ratio,
            epsilon_ratio=cfg.epsilon_ratio,
        )
        self.tracker = StabilityTracker(
            lock_frames=cfg.lock_frames,
            movement_tolerance=cfg.movement_tolerance,
            area_change_tolerance=cfg.area_change_tolerance,
            timeout_seconds=cfg.timeout_seconds,
            gate=QualityGate(
                min_area_ratio=cfg.min_area_ratio,
                max_area_ratio=cfg.max_area_ratio,
                min_aspect=cfg.min_aspect,
                max_aspect=cfg.max_aspect,
            ),
        )
        self.rectifier = PerspectiveRectifier(min_size=cfg.min_output_size)

        logger.info("ScanPipeline initialized")

    def start(self, now: float) -> SessionState:
        """Fresh session state."""
        return SessionState(tracker=self.tracker.start(now))

    def detect(self, frame) -> Optional[Candidate]:
        """
        Edge map and best quad for one frame.

        Raises:
            DetectionFailure: preprocessing or contour extraction faulted
        """
        try:
            edges = self.preprocessor.process(frame)
            return self.extractor.extract(edges, _frame_area(frame))
        except (cv2.error, ValueError, TypeError) as e:
            raise DetectionFailure(e)

    def rectify(self, frame, points) -> Tuple[RectifiedImage, np.ndarray]:
        """
        Order corners and warp.

        Raises:
            DegenerateGeometry: the quad cannot be rectified
        """
        ordered = order_corners(points)
        return self.rectifier.rectify(frame, ordered), ordered

    def expire(self, state: SessionState) -> SessionState:
        """Timeout fired outside the frame loop."""
        return replace(state, tracker=self.tracker.expire(state.tracker))

    def step(self, state: SessionState, frame, now: float) -> Tuple[SessionState, Optional[Event]]:
        """
        Process one frame.

        Args:
            state: State after the previous frame
            frame: This frame
            now: Monotonic time of this frame (seconds)

        Returns:
            Tuple of (next state, event or None once the session has ended)

        Raises:
            DetectionFailure: detection failed on more consecutive frames than
                the configured budget allows
        """
        if state.tracker.is_terminal:
            return state, None

        failures = 0
        try:
            candidate = self.detect(frame)
        except DetectionFailure as e:
            failures = state.detection_failures + 1
            if failures > self.config.max_detection_failures:
                raise DetectionFailure(e.details.get("reason", e.message), failures)
            logger.warning(f"Frame skipped ({failures}/{self.config.max_detection_failures}): {e.message}")
            candidate = None

        frame_area = _frame_area(frame)
        tracker_state = self.tracker.evaluate(state.tracker, candidate, frame_area, now)
        new_state = SessionState(tracker=tracker_state, detection_failures=failures)

        if tracker_state.status == TrackerStatus.TIMED_OUT:
            return new_state, TimeoutEvent(timeout_seconds=self.tracker.timeout_seconds)

        if tracker_state.status == TrackerStatus.LOCKED:
            try:
                rectified, ordered = self.rectify(frame, candidate.points)
            except DegenerateGeometry as e:
                logger.warning(f"Capture discarded: {e.message}")
                restarted = self.tracker.start(now)
                return SessionState(tracker=restarted, detection_failures=failures), OverlayEvent(
                    status=restarted.status,
                    message=STATUS_TOO_SMALL,
                    points=candidate.points,
                    color=COLOR_REJECTED,
                )
            return new_state, CaptureEvent(result=rectified, corners=ordered)

        return new_state, self._overlay(tracker_state, candidate)

    def _overlay(self, tracker_state: TrackerState, candidate) -> OverlayEvent:
        status = tracker_state.status
        progress = self.tracker.progress(tracker_state)

        if candidate is None:
            return OverlayEvent(status=status, message=STATUS_SEARCHING)

        if status == TrackerStatus.SEARCHING:
            # Candidate present but rejected by the quality gate
            return OverlayEvent(status=status, message=STATUS_REJECTED,
                                points=candidate.points, color=COLOR_REJECTED)

        if status == TrackerStatus.CANDIDATE_UNSTABLE:
            return OverlayEvent(status=status, message=STATUS_ALIGNING,
                                points=candidate.points, color=COLOR_UNSTABLE,
                                accepted=True)

        return OverlayEvent(status=status, message=STATUS_HOLD_STILL, progress=progress,
                            points=candidate.points, color=COLOR_LOCKING, accepted=True)
