"""
Tests for the auto-capture session: config, per-frame step, overlay and engine.
"""
import time

import numpy as np
import pytest

from conftest import FakeClock, FrameSource, draw_card_frame
from error_handlers import CameraNotInitializedError, DetectionFailure, FrameCaptureError
from auto_capture import (
    AutoCaptureEngine,
    CaptureConfig,
    CaptureEvent,
    OverlayEvent,
    ScanPipeline,
    TimeoutEvent,
    draw_overlay,
)
from auto_capture.session import STATUS_HOLD_STILL, STATUS_REJECTED, STATUS_SEARCHING, STATUS_TOO_SMALL
from layer3_stability import TrackerStatus

FPS = 1.0 / 30
BAD_FRAME = np.zeros((10, 10, 3), np.float32)


def arrival_frames():
    """Card slides in from the top-left and settles at the frame center."""
    return [draw_card_frame(center=c) for c in [(180, 170), (230, 195), (280, 220), (320, 240)]]


def run_steps(pipeline, frames, dt=FPS):
    """Feed frames through ScanPipeline.step; returns (states, events)."""
    state = pipeline.start(0.0)
    states, events = [], []
    for i, frame in enumerate(frames, start=1):
        state, event = pipeline.step(state, frame, i * dt)
        states.append(state)
        events.append(event)
    return states, events


class DroppingSource(FrameSource):
    """Frame source that loses the device after a few frames."""

    def __init__(self, frames, drop_after, **kwargs):
        super().__init__(frames, **kwargs)
        self.drop_after = drop_after

    def get_frame(self):
        if self.index >= self.drop_after:
            raise FrameCaptureError()
        return super().get_frame()


class TestCaptureConfig:
    """Test configuration defaults, environment overrides and validation."""

    def test_defaults(self):
        config = CaptureConfig()
        assert config.lock_frames == 30
        assert config.canny_low == 75 and config.canny_high == 200
        assert config.epsilon_ratio == 0.02
        assert config.timeout_seconds == 10.0

    def test_from_env(self):
        config = CaptureConfig.from_env({
            "CAPTURE_LOCK_FRAMES": "45",
            "CAPTURE_TIMEOUT_SECONDS": "2.5",
            "CAPTURE_OUTPUT_DIR": "/tmp/cards",
            "UNRELATED": "1",
        })
        assert config.lock_frames == 45
        assert config.timeout_seconds == 2.5
        assert config.output_dir == "/tmp/cards"
        assert config.canny_high == 200

    def test_from_empty_env(self):
        assert CaptureConfig.from_env({}) == CaptureConfig()

    def test_from_env_bad_value(self):
        with pytest.raises(ValueError):
            CaptureConfig.from_env({"CAPTURE_LOCK_FRAMES": "thirty"})

    @pytest.mark.parametrize("kwargs", [
        {"canny_low": 250},
        {"blur_kernel": 6},
        {"min_area_ratio": 0.9},
        {"min_aspect": 3.0},
        {"lock_frames": 0},
        {"timeout_seconds": 0},
    ])
    def test_validate(self, kwargs):
        with pytest.raises(ValueError):
            CaptureConfig(**kwargs).validate()


class TestScanPipeline:
    """Test the per-frame step function."""

    def test_no_card(self, blank_frame):
        states, events = run_steps(ScanPipeline(), [blank_frame] * 3)
        assert all(s.status == TrackerStatus.SEARCHING for s in states)
        assert all(isinstance(e, OverlayEvent) for e in events)
        assert events[-1].message == STATUS_SEARCHING
        assert events[-1].points is None

    def test_card_overlay(self, card_frame):
        states, events = run_steps(ScanPipeline(), [card_frame()] * 5)
        event = events[-1]
        assert states[-1].status == TrackerStatus.LOCKING
        assert event.message == STATUS_HOLD_STILL
        assert event.accepted
        assert event.progress == pytest.approx(5 / 30)
        assert event.points.shape == (4, 2)

        info = event.to_dict()
        assert info["detected"] and info["state"] == "locking"
        assert len(info["corners"]) == 4

    def test_rejected_card_overlay(self, card_frame):
        frame = card_frame(size=(200, 200))
        states, events = run_steps(ScanPipeline(), [frame])
        assert states[0].status == TrackerStatus.SEARCHING
        assert events[0].message == STATUS_REJECTED
        assert not events[0].accepted
        assert events[0].points is not None

    @pytest.mark.parametrize("hold,captured", [(30, True), (29, False)])
    def test_captures_after_hold(self, hold, captured):
        frames = arrival_frames() + [draw_card_frame()] * hold
        states, events = run_steps(ScanPipeline(), frames)

        assert states[3].status == TrackerStatus.CANDIDATE_UNSTABLE
        captures = [i for i, e in enumerate(events) if isinstance(e, CaptureEvent)]
        if captured:
            assert captures == [len(frames) - 1]
            assert states[-1].status == TrackerStatus.LOCKED
        else:
            assert captures == []
            assert states[-1].status == TrackerStatus.LOCKING
            assert states[-1].tracker.count == 29

    def test_capture_result(self):
        frames = [draw_card_frame(angle=6.0)] * 30
        _, events = run_steps(ScanPipeline(), frames)
        event = events[-1]

        assert isinstance(event, CaptureEvent)
        width, height = event.result.size
        assert width == pytest.approx(300, abs=4)
        assert height == pytest.approx(180, abs=4)
        assert event.image.shape == (height, width, 4)
        tl, tr, br, bl = event.corners
        assert tl.sum() < br.sum()
        assert tr[0] > bl[0]

    def test_locked_session_ignores_frames(self, card_frame):
        pipeline = ScanPipeline(CaptureConfig(lock_frames=2))
        states, events = run_steps(pipeline, [card_frame()] * 2)
        assert isinstance(events[-1], CaptureEvent)
        assert pipeline.step(states[-1], card_frame(), 1.0) == (states[-1], None)

    def test_timeout_event(self, blank_frame):
        pipeline = ScanPipeline(CaptureConfig(timeout_seconds=2.0))
        states, events = run_steps(pipeline, [blank_frame] * 6, dt=0.5)
        assert [type(e) for e in events].count(TimeoutEvent) == 1
        assert isinstance(events[3], TimeoutEvent)
        assert events[3].timeout_seconds == 2.0
        assert events[4] is None and events[5] is None

    def test_single_detection_failure_recovers(self, card_frame):
        states, events = run_steps(ScanPipeline(), [card_frame(), BAD_FRAME, card_frame()])
        assert states[1].detection_failures == 1
        assert states[1].status == TrackerStatus.SEARCHING
        assert events[1].message == STATUS_SEARCHING
        assert states[2].detection_failures == 0
        assert states[2].status == TrackerStatus.LOCKING

    @pytest.mark.parametrize("fault", [ValueError("bad contour"), TypeError("bad shape")])
    def test_unexpected_extraction_fault_counts_as_failure(self, card_frame, monkeypatch, fault):
        pipeline = ScanPipeline()

        def broken_extract(edges, frame_area):
            raise fault

        monkeypatch.setattr(pipeline.extractor, 'extract', broken_extract)
        states, events = run_steps(pipeline, [card_frame()] * 2)

        assert states[-1].detection_failures == 2
        assert states[-1].status == TrackerStatus.SEARCHING
        assert events[-1].message == STATUS_SEARCHING

    def test_detection_failure_budget(self):
        pipeline = ScanPipeline(CaptureConfig(max_detection_failures=5))
        states, _ = run_steps(pipeline, [BAD_FRAME] * 5)
        assert states[-1].detection_failures == 5

        with pytest.raises(DetectionFailure) as exc:
            pipeline.step(states[-1], BAD_FRAME, 1.0)
        assert exc.value.details["consecutive_failures"] == 6

    def test_too_small_to_rectify_restarts(self, card_frame):
        pipeline = ScanPipeline(CaptureConfig(lock_frames=3, min_output_size=500))
        states, events = run_steps(pipeline, [card_frame()] * 4)

        assert not any(isinstance(e, CaptureEvent) for e in events)
        assert states[2].status == TrackerStatus.SEARCHING
        assert states[2].tracker.count == 0
        assert events[2].message == STATUS_TOO_SMALL
        assert states[3].status == TrackerStatus.LOCKING
        assert states[3].tracker.count == 1

    def test_expire(self):
        pipeline = ScanPipeline()
        state = pipeline.expire(pipeline.start(0.0))
        assert state.status == TrackerStatus.TIMED_OUT


class TestDrawOverlay:
    """Test preview rendering."""

    def test_overlay_event(self, card_frame):
        frame = card_frame()
        _, events = run_steps(ScanPipeline(), [frame] * 3)
        display = draw_overlay(frame, events[-1])
        assert display.shape == (480, 640, 3)
        assert frame.shape == (480, 640, 4)
        assert not np.array_equal(display, frame[:, :, :3])

    def test_no_event_is_plain_copy(self, card_frame):
        frame = card_frame(channels=3)
        display = draw_overlay(frame, None)
        assert np.array_equal(display, frame)
        assert display is not frame

    def test_timeout_and_gray(self, blank_frame):
        gray = blank_frame[:, :, 0].copy()
        display = draw_overlay(gray, TimeoutEvent(timeout_seconds=10.0))
        assert display.shape == (480, 640, 3)
        assert display.any()


class TestAutoCaptureEngine:
    """Test the blocking capture loop."""

    @pytest.fixture
    def make_engine(self):
        engines = []

        def factory(frames, config=None, fps=30.0):
            clock = FakeClock()
            source = FrameSource(frames, clock=clock, fps=fps)
            events = []
            engine = AutoCaptureEngine(config or CaptureConfig(), camera=source,
                                       on_event=events.append, clock=clock)
            engines.append(engine)
            return engine, source, events

        yield factory
        for engine in engines:
            engine.release()

    def test_run_captures_card(self, make_engine):
        engine, source, events = make_engine(arrival_frames() + [draw_card_frame()])

        result = engine.run()

        assert result.success
        assert result.error_code is None
        assert result.image.shape[:2] == pytest.approx((180, 300), abs=4)
        assert len(result.corners) == 4
        assert source.initialized == 1
        assert source.released >= 1
        assert source.index == 4 + 30
        assert [type(e) for e in events].count(CaptureEvent) == 1
        assert engine.finished
        assert engine.last_capture is events[-1]
        assert not engine.watchdog.armed

    def test_run_times_out_once(self, make_engine, blank_frame):
        engine, source, events = make_engine([blank_frame], fps=2.0)

        result = engine.run()

        assert not result.success
        assert result.error_code == "NO_CARD_FOUND"
        assert result.metadata["timeout_seconds"] == 10.0
        assert result.to_dict()["error"] == "No card found within 10s"
        assert source.index == 20
        assert source.released >= 1
        assert [type(e) for e in events].count(TimeoutEvent) == 1

        assert engine.process_next() == (None, None)
        assert [type(e) for e in events].count(TimeoutEvent) == 1

    def test_finished_session_result(self, make_engine, blank_frame):
        engine, _, _ = make_engine([blank_frame], fps=2.0)
        engine.run()
        engine.start = lambda: None
        result = engine.run()
        assert result.error_code == "SESSION_FINISHED"

    def test_reset_starts_new_session(self, make_engine):
        engine, source, events = make_engine([draw_card_frame()])
        engine.run()
        assert engine.finished

        engine.reset()
        frame, event = engine.process_next()

        assert frame is not None
        assert isinstance(event, OverlayEvent)
        assert source.initialized == 2
        assert not engine.finished
        assert engine.state.tracker.count == 1
        assert engine.watchdog.armed

    def test_reset_mid_session(self, make_engine):
        engine, _, _ = make_engine([draw_card_frame()])
        engine.start()
        for _ in range(10):
            engine.process_next()
        assert engine.state.tracker.count == 10

        engine.reset()
        engine.process_next()
        assert engine.state.tracker.count == 1

    def test_watchdog_expires_search(self, make_engine, blank_frame):
        engine, _, events = make_engine([blank_frame])
        engine.start()
        engine.process_next()

        engine._on_watchdog()
        frame, event = engine.process_next()

        assert frame is None
        assert isinstance(event, TimeoutEvent)
        assert engine.finished
        assert events.count(event) == 1

    def test_watchdog_ignored_while_locking(self, make_engine):
        engine, _, _ = make_engine([draw_card_frame()])
        engine.start()
        for _ in range(5):
            engine.process_next()

        engine._on_watchdog()

        assert engine.state.status == TrackerStatus.LOCKING
        _, event = engine.process_next()
        assert isinstance(event, OverlayEvent)

    def test_fatal_detection_failure(self, make_engine):
        engine, source, _ = make_engine([BAD_FRAME])
        engine.start()
        for _ in range(5):
            engine.process_next()

        with pytest.raises(DetectionFailure):
            engine.process_next()

        assert engine.finished
        assert source.released >= 1
        assert engine.state.status == TrackerStatus.SEARCHING
        assert engine.process_next() == (None, None)

    def test_process_without_camera(self):
        with AutoCaptureEngine(CaptureConfig()) as engine:
            with pytest.raises(CameraNotInitializedError):
                engine.process_next()
            assert engine.finished
            assert not engine.watchdog.armed

    def test_frame_source_failure_stops_session(self):
        source = DroppingSource([draw_card_frame()], drop_after=3)
        with AutoCaptureEngine(CaptureConfig(timeout_seconds=0.2), camera=source) as engine:
            engine.start()
            for _ in range(3):
                engine.process_next()

            with pytest.raises(FrameCaptureError):
                engine.process_next()

            assert engine.finished
            assert source.released == 1
            assert not engine.watchdog.armed

            # No timer left behind to turn the camera error into a timeout
            time.sleep(0.5)
            assert engine.state.status == TrackerStatus.SEARCHING
            assert engine.process_next() == (None, None)

    def test_progress(self, make_engine):
        engine, _, _ = make_engine([draw_card_frame()])
        engine.start()
        for _ in range(15):
            engine.process_next()
        assert engine.progress() == pytest.approx(0.5)
