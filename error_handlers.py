"""
Error Handling System
Provides consistent error responses across all layers of the card scanner
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Frame acquisition
class AcquisitionFailure(ScannerError):
    """Frame source cannot supply frames"""
    pass


class CameraNotFoundError(AcquisitionFailure):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(AcquisitionFailure):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at index {camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(AcquisitionFailure):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(AcquisitionFailure):
    """Failed to capture frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


# Layer 2 Errors - Detection
class DetectionFailure(ScannerError):
    """Unexpected fault while preprocessing a frame or extracting contours"""
    def __init__(self, reason, failures=1):
        super().__init__(
            message=f"Card detection failed: {reason}",
            error_code="DETECTION_FAILED",
            details={
                "reason": str(reason),
                "consecutive_failures": failures
            }
        )


class CardNotDetectedError(ScannerError):
    """No acceptable card in a single uploaded image"""
    def __init__(self, reason="no quadrilateral found"):
        super().__init__(
            message="No card detected in the image",
            error_code="CARD_NOT_DETECTED",
            details={
                "reason": reason,
                "suggestion": "Ensure the card is fully visible against a contrasting background"
            }
        )


# Layer 3 Errors - Stability
class TimeoutExpired(ScannerError):
    """No acceptable card seen for the configured duration"""
    def __init__(self, timeout_seconds):
        super().__init__(
            message=f"No card found within {timeout_seconds:g}s",
            error_code="NO_CARD_FOUND",
            details={
                "timeout_seconds": timeout_seconds,
                "suggestion": "Hold the card flat and fully inside the frame"
            }
        )


# Layer 4 Errors - Rectification
class DegenerateGeometry(ScannerError):
    """Quadrilateral is too small or collapsed to rectify"""
    def __init__(self, reason, width=None, height=None, minimum=None):
        super().__init__(
            message=f"Degenerate card geometry: {reason}",
            error_code="DEGENERATE_GEOMETRY",
            details={
                "width": width,
                "height": height,
                "minimum": minimum
            }
        )


class SaveError(ScannerError):
    """File saving errors"""
    pass


class ImageSaveError(SaveError):
    """Failed to save image"""
    def __init__(self, filepath, reason):
        super().__init__(
            message=f"Failed to save image to {filepath}",
            error_code="IMAGE_SAVE_FAILED",
            details={
                "filepath": filepath,
                "reason": str(reason),
                "suggestion": "Check disk space and write permissions"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
