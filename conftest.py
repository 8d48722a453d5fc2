"""
Pytest configuration and fixtures for the card scanner tests.
Frames are synthetic: a light card drawn on a dark background with OpenCV.
"""
import os
import sys
import tempfile

import cv2
import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

os.environ.setdefault('CAPTURE_OUTPUT_DIR', tempfile.mkdtemp(prefix='card_scans_'))
os.environ.setdefault('LOG_LEVEL', 'INFO')

FRAME_W = 640
FRAME_H = 480


def card_corners(center=(FRAME_W // 2, FRAME_H // 2), size=(300, 180), angle=0.0):
    """Corners of a rotated rectangle, in cv2.boxPoints order."""
    box = cv2.boxPoints(((float(center[0]), float(center[1])),
                         (float(size[0]), float(size[1])), float(angle)))
    return box.astype(np.float32)


def draw_card_frame(center=(FRAME_W // 2, FRAME_H // 2), size=(300, 180), angle=0.0,
                    channels=4, background=40, card=220, frame_size=(FRAME_W, FRAME_H)):
    """Frame with one filled card; 4 channels (BGRA) by default."""
    width, height = frame_size
    gray = np.full((height, width), background, np.uint8)
    if size is not None:
        pts = np.round(card_corners(center, size, angle)).astype(np.int32)
        cv2.fillConvexPoly(gray, pts, card)
    if channels == 1:
        return gray
    if channels == 3:
        return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGRA)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FrameSource:
    """
    In-memory frame source. Advances the clock by one frame period per pull
    and repeats the last frame once the list is exhausted.
    """

    def __init__(self, frames, clock=None, fps=30.0):
        self.frames = list(frames)
        self.clock = clock
        self.period = 1.0 / fps
        self.index = 0
        self.initialized = 0
        self.released = 0

    def initialize(self):
        self.initialized += 1
        return True

    def get_frame(self):
        if self.clock is not None:
            self.clock.advance(self.period)
        frame = self.frames[min(self.index, len(self.frames) - 1)]
        self.index += 1
        return frame

    def release(self):
        self.released += 1


@pytest.fixture
def card_frame():
    """Factory for synthetic card frames."""
    return draw_card_frame


@pytest.fixture
def blank_frame():
    """Frame with no card in it."""
    return draw_card_frame(size=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def card_png():
    """Encoded PNG of a skewed card photo."""
    frame = draw_card_frame(size=(320, 200), angle=8.0, channels=3)
    ok, buffer = cv2.imencode('.png', frame)
    assert ok
    return buffer.tobytes()
