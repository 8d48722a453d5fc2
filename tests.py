"""
Tests for the card scanner web application.
"""
import io

import cv2
import numpy as np
import pytest

import app as app_module
from auto_capture import CaptureEvent
from conftest import FrameSource, draw_card_frame
from error_handlers import CameraInitError
from layer4_rectification import RectifiedImage


class FailingCamera:
    """Frame source whose device never opens."""

    def initialize(self):
        raise CameraInitError(0, "device busy")

    def get_frame(self):
        raise AssertionError("get_frame called on a closed camera")

    def release(self):
        pass


@pytest.fixture
def scanner():
    """Module-level coordinator, restored to an idle session afterwards."""
    coordinator = app_module.scanner
    yield coordinator
    coordinator.engine.release()
    coordinator.engine.camera = None
    coordinator.engine.last_capture = None
    coordinator.engine._reset_session()


def _png(image):
    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


class TestHealthAndStatus:
    """Test service endpoints."""

    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.json == {"status": "healthy", "service": "card-scanner", "version": "1.0.0"}

    def test_api_status(self, client, scanner):
        response = client.get('/api/status')
        data = response.json
        assert data["success"]
        assert data["config"]["lock_frames"] == scanner.config.lock_frames
        assert data["endpoints"]["rectify"] == "/api/rectify"

    def test_detection_status(self, client, scanner):
        response = client.get('/detection_status')
        data = response.json
        assert data["success"]
        assert data["detection"]["state"] == "searching"
        assert data["detection"]["count"] == 0
        assert data["detection"]["captured"] is False


class TestCameraSession:
    """Test camera control and the live session."""

    def test_start_camera_failure(self, client, scanner):
        scanner.engine.camera = FailingCamera()
        response = client.post('/start_camera')
        assert response.status_code == 503
        assert response.json["error_code"] == "CAMERA_INIT_FAILED"
        assert response.json["details"]["reason"] == "device busy"

    def test_start_and_preview(self, client, scanner):
        source = FrameSource([draw_card_frame()])
        scanner.engine.camera = source

        assert client.post('/start_camera').json == {"success": True}
        assert source.initialized == 1

        preview = scanner.next_preview()
        assert preview.shape == (480, 640, 3)
        status = client.get('/detection_status').json["detection"]
        assert status["state"] == "locking"
        assert status["detected"] is True

    def test_video_feed_streams_jpeg(self, client, scanner):
        scanner.engine.camera = FrameSource([draw_card_frame()])
        client.post('/start_camera')

        response = client.get('/video_feed')
        assert response.mimetype == 'multipart/x-mixed-replace'
        chunk = next(iter(response.response))
        response.close()

        assert chunk.startswith(b'--frame\r\nContent-Type: image/jpeg\r\n\r\n\xff\xd8')

    def test_video_feed_before_start_camera(self, client, scanner):
        scanner.engine.camera = None

        response = client.get('/video_feed')

        assert response.status_code == 200
        assert response.data == b''
        assert scanner.engine.finished

    def test_stop_camera(self, client, scanner):
        source = FrameSource([draw_card_frame()])
        scanner.engine.camera = source
        client.post('/start_camera')

        assert client.post('/stop_camera').json == {"success": True}
        assert source.released == 1
        assert not scanner.engine.watchdog.armed

    def test_restart(self, client, scanner):
        assert client.post('/restart').json == {"success": True}
        assert scanner.engine._reset_requested.is_set()


class TestResult:
    """Test the PNG download."""

    def test_no_capture(self, client, scanner):
        response = client.get('/result')
        assert response.status_code == 404
        assert response.json["error_code"] == "NO_CAPTURE"

    def test_download(self, client, scanner):
        image = np.full((180, 300, 3), 200, np.uint8)
        scanner.engine.last_capture = CaptureEvent(
            result=RectifiedImage(image=image, width=300, height=180),
            corners=np.zeros((4, 2), np.float32),
        )

        response = client.get('/result')

        assert response.status_code == 200
        assert response.mimetype == 'image/png'
        assert 'business-card-scan.png' in response.headers['Content-Disposition']
        assert response.headers['X-Image-Width'] == '300'
        assert response.headers['X-Image-Height'] == '180'
        decoded = cv2.imdecode(np.frombuffer(response.data, np.uint8), cv2.IMREAD_UNCHANGED)
        assert decoded.shape == (180, 300, 3)


class TestRectifyAPI:
    """Test one-shot rectification of uploaded photos."""

    def _post(self, client, payload, filename='card.png'):
        return client.post(
            '/api/rectify',
            data={'image': (io.BytesIO(payload), filename)},
            content_type='multipart/form-data',
        )

    def test_no_image(self, client):
        response = client.post('/api/rectify', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert response.json["error_code"] == "NO_IMAGE"

    def test_rectifies_card(self, client, card_png):
        response = self._post(client, card_png)

        assert response.status_code == 200
        assert response.mimetype == 'image/png'
        image = cv2.imdecode(np.frombuffer(response.data, np.uint8), cv2.IMREAD_UNCHANGED)
        assert image.shape[:2] == pytest.approx((200, 320), abs=4)
        assert image[20:-20, 20:-20].mean() == pytest.approx(220, abs=3)

    def test_no_card(self, client):
        blank = _png(draw_card_frame(size=None, channels=3))
        response = self._post(client, blank)
        assert response.status_code == 422
        assert response.json["error_code"] == "CARD_NOT_DETECTED"
        assert response.json["details"]["reason"] == "no candidate"

    def test_square_is_not_a_card(self, client):
        square = _png(draw_card_frame(size=(200, 200), channels=3))
        response = self._post(client, square)
        assert response.status_code == 422
        assert "aspect ratio" in response.json["details"]["reason"]

    def test_invalid_image(self, client):
        response = self._post(client, b'not an image')
        assert response.status_code == 400
        assert response.json["error_code"] == "INVALID_IMAGE"
