"""
Layer 3 — Stability Tracker
Quality gate plus the lock state machine that gates automatic capture.

The tracker holds no session data of its own: every call takes the previous
TrackerState and returns the next one, so a session can be replayed from a
list of candidates without a camera.
"""
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from error_handlers import DegenerateGeometry
from layer2_detection import Candidate

logger = logging.getLogger(__name__)


class TrackerStatus(str, Enum):
    """Lock state of a capture session."""
    SEARCHING = "searching"
    CANDIDATE_UNSTABLE = "candidate_unstable"
    LOCKING = "locking"
    LOCKED = "locked"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class StabilitySample:
    """Centroid and area of the last accepted candidate."""
    cx: float
    cy: float
    area: float

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> "StabilitySample":
        cx, cy = candidate.centroid
        return cls(cx=cx, cy=cy, area=candidate.area)


@dataclass(frozen=True)
class TrackerState:
    """
    Complete tracker state for one capture session.

    last_seen is the time of the last gate-passing candidate (or of the
    session start), used for the no-candidate timeout.
    """
    status: TrackerStatus = TrackerStatus.SEARCHING
    count: int = 0
    sample: Optional[StabilitySample] = None
    last_seen: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in (TrackerStatus.LOCKED, TrackerStatus.TIMED_OUT)

    def to_dict(self):
        """Convert to dictionary for API response."""
        return {
            'status': self.status.value,
            'count': self.count,
        }


class QualityGate:
    """
    Rejects candidates that are the wrong size, concave, or not card-shaped.
    """

    def __init__(
        self,
        min_area_ratio: float = 0.05,
        max_area_ratio: float = 0.85,
        min_aspect: float = 1.3,
        max_aspect: float = 2.5,
    ):
        """
        Args:
            min_area_ratio: Smallest accepted candidate area as a fraction of the frame
            max_area_ratio: Largest accepted area (bigger usually hugs the frame border)
            min_aspect: Lowest accepted long/short side ratio of the bounding rectangle
            max_aspect: Highest accepted long/short side ratio
        """
        self.min_area_ratio = min_area_ratio
        self.max_area_ratio = max_area_ratio
        self.min_aspect = min_aspect
        self.max_aspect = max_aspect

    def check(self, candidate: Optional[Candidate], frame_area: float) -> Tuple[bool, str]:
        """
        Returns:
            Tuple of (passed, reason). reason is empty when passed.
        """
        if candidate is None:
            return False, "no candidate"
        if frame_area <= 0:
            return False, "empty frame"

        ratio = candidate.area / float(frame_area)
        if ratio < self.min_area_ratio:
            return False, f"too small ({ratio * 100:.1f}% of frame)"
        if ratio > self.max_area_ratio:
            return False, f"too large ({ratio * 100:.1f}% of frame)"

        if not candidate.is_convex:
            return False, "not convex"

        aspect = candidate.aspect_ratio
        if not (self.min_aspect <= aspect <= self.max_aspect):
            return False, f"aspect ratio {aspect:.2f} out of range"

        return True, ""


class StabilityTracker:
    """
    Counts consecutive geometrically stable frames and decides when to lock.
    """

    def __init__(
        self,
        lock_frames: int = 30,
        movement_tolerance: float = 15.0,
        area_change_tolerance: float = 0.10,
        timeout_seconds: float = 10.0,
        gate: Optional[QualityGate] = None,
    ):
        """
        Args:
            lock_frames: Consecutive stable frames needed to lock (about 1s at 30fps)
            movement_tolerance: Max centroid displacement between frames (pixels)
            area_change_tolerance: Max relative area change between frames
            timeout_seconds: Time without a gate-passing candidate before giving up
            gate: Quality gate (defaults to card-shaped bounds)
        """
        if lock_frames < 1:
            raise ValueError(f"lock_frames must be at least 1, got {lock_frames}")

        self.lock_frames = lock_frames
        self.movement_tolerance = movement_tolerance
        self.area_change_tolerance = area_change_tolerance
        self.timeout_seconds = timeout_seconds
        self.gate = gate or QualityGate()

        logger.info("StabilityTracker initialized")
        logger.debug(f"  Lock frames: {lock_frames}")
        logger.debug(f"  Tolerances: {movement_tolerance}px, {area_change_tolerance * 100:.0f}% area")
        logger.debug(f"  Timeout: {timeout_seconds}s")

    def start(self, now: float) -> TrackerState:
        """Fresh session state. The single reset path for retake, timeout and fatal errors."""
        return TrackerState(last_seen=now)

    def is_stable(self, sample: StabilitySample, previous: Optional[StabilitySample]) -> bool:
        """
        Compare a sample with the last accepted one.
        The first sample of a run has nothing to compare with and is stable.
        """
        if previous is None:
            return True

        if previous.area <= 0:
            logger.debug(str(DegenerateGeometry("previous sample has zero area")))
            return False

        displacement = math.hypot(sample.cx - previous.cx, sample.cy - previous.cy)
        area_change = abs(sample.area - previous.area) / previous.area

        return (displacement < self.movement_tolerance
                and area_change < self.area_change_tolerance)

    def progress(self, state: TrackerState) -> float:
        """Lock progress in [0, 1]."""
        if state.status == TrackerStatus.LOCKED:
            return 1.0
        return min(state.count / float(self.lock_frames), 1.0)

    def evaluate(
        self,
        state: TrackerState,
        candidate: Optional[Candidate],
        frame_area: float,
        now: float,
    ) -> TrackerState:
        """
        Advance the state machine by one frame.

        Args:
            state: State after the previous frame
            candidate: This frame's candidate, or None
            frame_area: Width x height of the frame
            now: Monotonic time of this frame (seconds)

        Returns:
            TrackerState: The next state
        """
        if state.is_terminal:
            return state

        passed, reason = self.gate.check(candidate, frame_area)
        sample = None
        if passed:
            try:
                sample = StabilitySample.from_candidate(candidate)
            except DegenerateGeometry as e:
                logger.debug(f"Candidate discarded: {e.message}")
                passed = False
        elif candidate is not None:
            logger.debug(f"Candidate rejected by quality gate: {reason}")

        if not passed:
            if now - state.last_seen >= self.timeout_seconds:
                return self._transition(state, replace(
                    state, status=TrackerStatus.TIMED_OUT, count=0, sample=None))
            # A gap resets tracking
            return self._transition(state, replace(
                state, status=TrackerStatus.SEARCHING, count=0, sample=None))

        if self.is_stable(sample, state.sample):
            count = state.count + 1
            status = TrackerStatus.LOCKED if count >= self.lock_frames else TrackerStatus.LOCKING
            return self._transition(state, TrackerState(
                status=status, count=count, sample=sample, last_seen=now))

        # Moved: the new position becomes the reference for the next frame
        return self._transition(state, TrackerState(
            status=TrackerStatus.CANDIDATE_UNSTABLE, count=0, sample=sample, last_seen=now))

    def expire(self, state: TrackerState) -> TrackerState:
        """
        Timeout transition fired from outside the frame loop.
        Ignored unless the session is still searching, so a stale timer
        never abandons a lock in progress.
        """
        if state.status in (TrackerStatus.SEARCHING, TrackerStatus.CANDIDATE_UNSTABLE):
            return self._transition(state, replace(
                state, status=TrackerStatus.TIMED_OUT, count=0, sample=None))
        return state

    def _transition(self, old: TrackerState, new: TrackerState) -> TrackerState:
        if new.status != old.status:
            if new.status == TrackerStatus.LOCKED:
                logger.info(f"Card stable for {new.count} frames, locked")
            elif new.status == TrackerStatus.TIMED_OUT:
                logger.info(f"No card found for {self.timeout_seconds}s, timed out")
            else:
                logger.debug(f"Tracker: {old.status.value} -> {new.status.value}")
        return new
