"""
Tests for Layer 3 — quality gate, lock state machine and timeout watchdog.
"""
import threading

import pytest

from layer2_detection import Candidate
from layer3_stability import (
    QualityGate,
    StabilitySample,
    StabilityTracker,
    TimeoutWatchdog,
    TrackerState,
    TrackerStatus,
)

FRAME_AREA = 640 * 480
FPS = 1.0 / 30


def rect(cx=320.0, cy=240.0, w=300.0, h=180.0):
    """Axis-aligned candidate centered on (cx, cy)."""
    x0, y0, x1, y1 = cx - w / 2, cy - h / 2, cx + w / 2, cy + h / 2
    return Candidate([[x0, y0], [x1, y0], [x1, y1], [x0, y1]])


def run(tracker, candidates, start=0.0, dt=FPS):
    """Feed candidates one per frame; returns the list of states."""
    state = tracker.start(start)
    states = []
    for i, cand in enumerate(candidates, start=1):
        state = tracker.evaluate(state, cand, FRAME_AREA, start + i * dt)
        states.append(state)
    return states


class TestQualityGate:
    """Test candidate acceptance bounds."""

    def test_card_passes(self):
        assert QualityGate().check(rect(), FRAME_AREA) == (True, "")

    def test_missing_candidate(self):
        passed, reason = QualityGate().check(None, FRAME_AREA)
        assert not passed
        assert reason == "no candidate"

    def test_too_small(self):
        passed, reason = QualityGate().check(rect(w=100, h=60), FRAME_AREA)
        assert not passed
        assert "too small" in reason

    def test_too_large(self):
        passed, reason = QualityGate().check(rect(w=630, h=470), FRAME_AREA)
        assert not passed
        assert "too large" in reason

    def test_concave(self):
        cand = Candidate([[100, 100], [500, 240], [100, 380], [250, 240]])
        passed, reason = QualityGate().check(cand, FRAME_AREA)
        assert not passed
        assert reason == "not convex"

    @pytest.mark.parametrize("w,h,ok", [
        (300, 180, True),    # 1.67
        (200, 200, False),   # square
        (330, 110, False),   # 3.0
        (270, 200, True),    # 1.35
        (340, 140, True),    # 2.43
    ])
    def test_aspect_bounds(self, w, h, ok):
        assert QualityGate().check(rect(w=w, h=h), FRAME_AREA)[0] is ok

    def test_portrait_card_passes(self):
        assert QualityGate().check(rect(w=180, h=300), FRAME_AREA)[0]


class TestStabilityComparison:
    """Test frame-to-frame stability rule."""

    def test_first_sample_is_stable(self):
        assert StabilityTracker().is_stable(StabilitySample(1, 1, 100), None)

    def test_small_movement_is_stable(self):
        prev = StabilitySample(100, 100, 50000)
        assert StabilityTracker().is_stable(StabilitySample(110, 105, 52000), prev)

    def test_movement_beyond_tolerance(self):
        prev = StabilitySample(100, 100, 50000)
        assert not StabilityTracker().is_stable(StabilitySample(115, 100, 50000), prev)

    def test_area_change_beyond_tolerance(self):
        prev = StabilitySample(100, 100, 50000)
        assert not StabilityTracker().is_stable(StabilitySample(100, 100, 55000), prev)

    def test_zero_area_reference_is_unstable(self):
        prev = StabilitySample(100, 100, 0.0)
        assert not StabilityTracker().is_stable(StabilitySample(100, 100, 100), prev)


class TestStabilityTracker:
    """Test the lock state machine."""

    def test_starts_searching(self):
        state = StabilityTracker().start(5.0)
        assert state == TrackerState(status=TrackerStatus.SEARCHING, count=0, sample=None, last_seen=5.0)

    def test_locks_once_at_threshold(self):
        states = run(StabilityTracker(lock_frames=30), [rect()] * 45)
        locked = [i for i, s in enumerate(states, start=1)
                  if s.status == TrackerStatus.LOCKED
                  and (i == 1 or states[i - 2].status != TrackerStatus.LOCKED)]
        assert locked == [30]
        assert [s.count for s in states[:30]] == list(range(1, 31))
        assert all(s.status == TrackerStatus.LOCKING for s in states[:29])

    def test_locked_is_terminal(self):
        tracker = StabilityTracker(lock_frames=3)
        state = run(tracker, [rect()] * 3)[-1]
        assert state.status == TrackerStatus.LOCKED
        assert tracker.evaluate(state, None, FRAME_AREA, 99.0) is state

    def test_area_jump_resets_counter(self):
        big = rect(w=300 * 1.06, h=180 * 1.06)   # +12% area
        states = run(StabilityTracker(), [rect()] * 10 + [big])
        assert states[9].count == 10
        assert states[10].status == TrackerStatus.CANDIDATE_UNSTABLE
        assert states[10].count == 0

    def test_unstable_candidate_becomes_reference(self):
        moved = rect(cx=400)
        states = run(StabilityTracker(), [rect()] * 5 + [moved, moved])
        assert states[5].status == TrackerStatus.CANDIDATE_UNSTABLE
        assert states[5].sample.cx == pytest.approx(400)
        assert states[6].status == TrackerStatus.LOCKING
        assert states[6].count == 1

    def test_small_drift_keeps_locking(self):
        cands = [rect(cx=320 + i * 2) for i in range(20)]
        states = run(StabilityTracker(), cands)
        assert states[-1].status == TrackerStatus.LOCKING
        assert states[-1].count == 20

    def test_gap_resets_tracking(self):
        states = run(StabilityTracker(), [rect()] * 10 + [None, rect()])
        assert states[10].status == TrackerStatus.SEARCHING
        assert states[10].count == 0
        assert states[10].sample is None
        assert states[11].status == TrackerStatus.LOCKING
        assert states[11].count == 1

    def test_gate_failure_resets_counter(self):
        small = rect(w=100, h=60)
        states = run(StabilityTracker(), [rect()] * 10 + [small])
        assert states[10].status == TrackerStatus.SEARCHING
        assert states[10].count == 0

    def test_wrong_aspect_never_locks(self):
        too_long = rect(w=330, h=110)
        states = run(StabilityTracker(lock_frames=5), [too_long] * 300)
        assert all(s.status in (TrackerStatus.SEARCHING, TrackerStatus.TIMED_OUT) for s in states)
        assert not any(s.status == TrackerStatus.LOCKING for s in states)

    def test_progress(self):
        tracker = StabilityTracker(lock_frames=4)
        states = run(tracker, [rect()] * 4)
        assert [tracker.progress(s) for s in states] == [0.25, 0.5, 0.75, 1.0]

    def test_invalid_lock_frames(self):
        with pytest.raises(ValueError):
            StabilityTracker(lock_frames=0)


class TestTimeout:
    """Test the no-candidate timeout."""

    def test_times_out_exactly_once(self):
        tracker = StabilityTracker(timeout_seconds=10.0)
        states = run(tracker, [None] * 40, dt=0.5)
        entered = [i for i in range(len(states))
                   if states[i].status == TrackerStatus.TIMED_OUT
                   and (i == 0 or states[i - 1].status != TrackerStatus.TIMED_OUT)]
        assert entered == [19]   # t = 10.0s
        assert all(s.status == TrackerStatus.TIMED_OUT for s in states[19:])

    def test_gate_passing_candidate_rearms(self):
        tracker = StabilityTracker(timeout_seconds=10.0)
        cands = [None] * 15 + [rect(cx=200 + (i % 2) * 200) for i in range(10)] + [None] * 15
        states = run(tracker, cands, dt=0.5)
        # Last gate-passing frame at t=12.5s, so no timeout before t=22.5s
        assert all(s.status != TrackerStatus.TIMED_OUT for s in states)

    def test_unstable_candidate_rearms(self):
        tracker = StabilityTracker(timeout_seconds=2.0)
        jitter = [rect(cx=250 + (i % 2) * 100) for i in range(20)]
        states = run(tracker, jitter, dt=0.5)
        assert all(s.status == TrackerStatus.CANDIDATE_UNSTABLE for s in states[1:])

    def test_expire_from_searching(self):
        tracker = StabilityTracker()
        state = tracker.expire(tracker.start(0.0))
        assert state.status == TrackerStatus.TIMED_OUT
        assert tracker.expire(state) is state

    def test_expire_ignored_while_locking(self):
        tracker = StabilityTracker()
        state = run(tracker, [rect()] * 3)[-1]
        assert tracker.expire(state) is state

    def test_timed_out_ignores_frames(self):
        tracker = StabilityTracker()
        state = tracker.expire(tracker.start(0.0))
        assert tracker.evaluate(state, rect(), FRAME_AREA, 1.0) is state


class TestTimeoutWatchdog:
    """Test the timer-thread timeout."""

    def test_fires_once(self):
        fired = []
        done = threading.Event()

        def on_expire():
            fired.append(1)
            done.set()

        watchdog = TimeoutWatchdog(0.05, on_expire)
        watchdog.arm()
        assert done.wait(2.0)
        assert fired == [1]
        assert not watchdog.armed

    def test_cancel_prevents_firing(self):
        done = threading.Event()
        watchdog = TimeoutWatchdog(0.1, done.set)
        watchdog.arm()
        watchdog.cancel()
        assert not done.wait(0.3)

    def test_rearm_pushes_deadline(self):
        now = [0.0]
        done = threading.Event()
        watchdog = TimeoutWatchdog(0.05, done.set, clock=lambda: now[0])
        watchdog.arm()
        now[0] = 0.04
        watchdog.arm()           # deadline now 0.09 on the fake clock
        now[0] = 0.06
        assert not done.wait(0.2)
        now[0] = 0.1
        assert done.wait(2.0)
        watchdog.cancel()
