"""
Tests for Layer 1 — camera handler, with cv2.VideoCapture replaced by a fake.
"""
import sys

import numpy as np
import pytest

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)
from layer1_capture import CameraHandler
from layer1_capture import camera as camera_module


class FakeCapture:
    """Stand-in for cv2.VideoCapture."""

    opened = True
    frames = []

    def __init__(self, index, backend=None):
        self.index = index
        self.props = {}
        self.released = False
        self._frames = list(self.frames)

    def isOpened(self):
        return self.opened and not self.released

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)

    def read(self):
        if not self._frames:
            return False, None
        return True, self._frames.pop(0)

    def release(self):
        self.released = True


@pytest.fixture
def fake_capture(monkeypatch):
    monkeypatch.setattr(camera_module.cv2, 'VideoCapture', FakeCapture)
    monkeypatch.setattr(CameraHandler, '_check_device_exists', lambda self: True)
    monkeypatch.setattr(FakeCapture, 'opened', True)
    monkeypatch.setattr(FakeCapture, 'frames', [np.zeros((720, 1280, 3), np.uint8)])
    return FakeCapture


class TestCameraHandler:
    """Test camera lifecycle and errors."""

    def test_get_frame_before_initialize(self):
        with pytest.raises(CameraNotInitializedError):
            CameraHandler().get_frame()

    def test_initialize_and_read(self, fake_capture):
        handler = CameraHandler(camera_index=2, config={'width': 640, 'height': 480})
        assert handler.initialize()
        assert handler.is_opened()
        assert handler.get_resolution() == (640, 480)
        assert handler.config['codec'] == 'MJPG'
        assert handler.get_frame().shape == (720, 1280, 3)

        with pytest.raises(FrameCaptureError):
            handler.get_frame()

        handler.release()
        assert not handler.is_opened()

    def test_initialize_is_idempotent(self, fake_capture):
        handler = CameraHandler()
        handler.initialize()
        first = handler.camera
        handler.initialize()
        assert handler.camera is first

    def test_device_not_opened(self, fake_capture, monkeypatch):
        monkeypatch.setattr(FakeCapture, 'opened', False)
        handler = CameraHandler()
        with pytest.raises(CameraInitError) as exc:
            handler.initialize()
        assert exc.value.details['reason'] == "Failed to open camera device"
        assert handler.camera is None

    @pytest.mark.skipif(not sys.platform.startswith('linux'), reason="device files are Linux only")
    def test_missing_device(self):
        with pytest.raises(CameraNotFoundError) as exc:
            CameraHandler(camera_index=97).initialize()
        assert exc.value.details['camera_index'] == 97

    def test_context_manager_releases(self, fake_capture):
        with CameraHandler() as handler:
            capture = handler.camera
            assert handler.is_opened()
        assert capture.released
        assert handler.camera is None
