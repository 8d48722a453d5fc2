"""
Business Card Scanner Web Application
Thin coordinator for the layered card auto-capture system.

Provides REST API for:
- Camera start/stop and live MJPEG preview with detection overlay
- Automatic capture once the card is held still, retake, PNG download
- One-shot rectification of an uploaded photo
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import numpy as np
import time
import logging
import os
import threading

# Import layers
from auto_capture import AutoCaptureEngine, CaptureConfig, CaptureEvent, TimeoutEvent, draw_overlay
from layer4_rectification import ImageSaver

# Import error handling
from error_handlers import (
    AcquisitionFailure,
    CardNotDetectedError,
    DegenerateGeometry,
    DetectionFailure,
    ScannerError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'DEBUG').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the capture page
CORS(app, origins=["*"])

DOWNLOAD_NAME = "business-card-scan.png"


class ScannerCoordinator:
    """
    Coordinates the capture session and the presentation side
    Thin wrapper that delegates to the auto-capture engine
    """

    def __init__(self, config):
        logger.info("Initializing ScannerCoordinator")

        self.config = config
        self.engine = AutoCaptureEngine(config, on_event=self._on_event)
        self.image_saver = ImageSaver(base_dir=config.output_dir)
        self.last_saved = None

        # One frame loop at a time, however many clients watch the feed
        self._frame_lock = threading.Lock()

        logger.info("ScannerCoordinator initialized successfully")

    def _on_event(self, event):
        """Keep a copy of every capture on disk"""
        if isinstance(event, CaptureEvent):
            logger.info(f"[Capture] Card captured at {event.result.width}x{event.result.height}")
            try:
                self.last_saved = self.image_saver.save_image(event.image)
            except ScannerError as e:
                logger.warning(f"[Capture] Could not save image: {e.message}")
        elif isinstance(event, TimeoutEvent):
            logger.info(f"[Capture] No card found within {event.timeout_seconds}s")

    def start_camera(self):
        """
        Open the camera and start a new session

        Raises:
            AcquisitionFailure: camera could not be opened
        """
        with self._frame_lock:
            self.engine.start()

    def stop_camera(self):
        """Release camera resources"""
        self.engine.release()

    def restart(self):
        """Retake: discard the session and search again"""
        self.engine.reset()

    def next_preview(self):
        """
        Advance the session by one frame

        Returns:
            numpy.ndarray or None: BGR preview with overlay, None once the session has ended
        """
        with self._frame_lock:
            frame, event = self.engine.process_next()
        if frame is None:
            return None
        return draw_overlay(frame, event)

    def status(self):
        """Current session state for UI polling"""
        state = self.engine.state
        event = self.engine.last_event
        info = state.tracker.to_dict()
        info.update({
            "state": state.status.value,
            "progress": round(self.engine.progress(), 3),
            "finished": self.engine.finished,
            "captured": self.engine.last_capture is not None,
        })
        if hasattr(event, 'to_dict'):
            info.update(event.to_dict())
        return info

    def rectify_image(self, image):
        """
        Detect and rectify a card in a single still image

        Raises:
            CardNotDetectedError: no acceptable card in the image
            DegenerateGeometry: card too small to rectify
        """
        pipeline = self.engine.pipeline
        height, width = image.shape[:2]

        candidate = pipeline.detect(image)
        passed, reason = pipeline.tracker.gate.check(candidate, width * height)
        if not passed:
            raise CardNotDetectedError(reason)

        rectified, _ = pipeline.rectify(image, candidate.points)
        return rectified


# Initialize scanner coordinator
logger.info("Starting application initialization")

scanner = ScannerCoordinator(CaptureConfig.from_env())


# ============================================================================
# Flask Routes - Capture session
# ============================================================================

@app.route('/video_feed')
def video_feed():
    """Video streaming route with real-time card detection overlay"""
    logger.info("Video feed with overlay requested")

    def generate():
        logger.info("Starting video stream generator with overlay")
        while True:
            try:
                frame = scanner.next_preview()
            except ScannerError as e:
                handle_error(e, "Video feed stopped")
                return

            if frame is not None:
                ret, buffer = cv2.imencode('.jpg', frame)
                if not ret:
                    continue
                yield (b'--frame\r\n'
                       b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')
            else:
                time.sleep(0.1)

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Get current capture session status (for UI progress updates)"""
    return jsonify({
        "success": True,
        "detection": scanner.status()
    })


@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Initialize camera with error details"""
    logger.info("Start camera request received")

    try:
        scanner.start_camera()
        return jsonify({"success": True})
    except AcquisitionFailure as e:
        return jsonify(handle_error(e)), 503


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    scanner.stop_camera()
    return jsonify({"success": True})


@app.route('/restart', methods=['POST'])
def restart():
    """Retake: reset the session and search for a card again"""
    logger.info("Restart request received")
    scanner.restart()
    return jsonify({"success": True})


@app.route('/result', methods=['GET'])
def result():
    """Download the last captured card as PNG"""
    capture = scanner.engine.last_capture
    if capture is None:
        return jsonify({
            "success": False,
            "error": "No card captured yet",
            "error_code": "NO_CAPTURE"
        }), 404

    try:
        png = ImageSaver.encode_png(capture.image)
    except ScannerError as e:
        return jsonify(handle_error(e)), 500

    return Response(
        png,
        mimetype='image/png',
        headers={
            'Content-Disposition': f'attachment; filename={DOWNLOAD_NAME}',
            'X-Image-Width': str(capture.result.width),
            'X-Image-Height': str(capture.result.height),
        }
    )


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "card-scanner",
        "version": "1.0.0"
    })


@app.route("/api/rectify", methods=["POST"])
def api_rectify():
    """
    Detect and flatten a card in an uploaded photo.

    Request:
        - multipart/form-data with 'image' field containing the photo

    Response:
        image/png of the rectified card, or an error JSON
    """
    logger.info("API rectify request received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    image_file = request.files['image']

    if image_file.filename == '':
        return jsonify({
            "success": False,
            "error": "Empty filename",
            "error_code": "EMPTY_FILENAME"
        }), 400

    data = np.frombuffer(image_file.read(), dtype=np.uint8)
    image = cv2.imdecode(data, cv2.IMREAD_UNCHANGED) if data.size else None
    if image is None:
        return jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400

    try:
        rectified = scanner.rectify_image(image)
        png = ImageSaver.encode_png(rectified.image)
    except (CardNotDetectedError, DegenerateGeometry) as e:
        return jsonify(handle_error(e)), 422
    except DetectionFailure as e:
        return jsonify(handle_error(e)), 400
    except ScannerError as e:
        return jsonify(handle_error(e)), 500

    logger.info(f"API rectification successful: {rectified.width}x{rectified.height}")
    return Response(png, mimetype='image/png')


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "camera_available": scanner.engine.camera is not None,
        "config": {
            "lock_frames": scanner.config.lock_frames,
            "timeout_seconds": scanner.config.timeout_seconds,
            "min_output_size": scanner.config.min_output_size,
        },
        "endpoints": {
            "health": "/health",
            "rectify": "/api/rectify",
            "video_feed": "/video_feed",
            "detection_status": "/detection_status",
            "restart": "/restart",
            "result": "/result"
        }
    })


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    print("\n" + "=" * 60)
    print("BUSINESS CARD SCANNER")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_capture/        - Camera handling")
    print("  layer2_detection/      - Edge map + quadrilateral extraction")
    print("  layer3_stability/      - Stability lock + timeout")
    print("  layer4_rectification/  - Corner ordering + perspective warp")
    print("  auto_capture/          - Capture session + overlay")
    print(f"  {scanner.config.output_dir}/ - Saved PNG files")
    print("\n📡 API Endpoints:")
    print("  GET  /health           - Health check")
    print("  GET  /api/status       - Service status")
    print("  POST /api/rectify      - Rectify an uploaded photo")
    print("  POST /start_camera     - Open camera, start session")
    print("  GET  /video_feed       - MJPEG video stream")
    print("  POST /restart          - Retake")
    print("  GET  /result           - Download last capture")
    print("\n🎥 Camera:")
    print(f"  Device index: {scanner.config.camera_index}")
    print(f"  Resolution: {scanner.config.camera_width}x{scanner.config.camera_height}")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)


if __name__ == '__main__':
    main()
