"""
Layer 2 — Detection
Component: Frame preprocessor
Responsibility: Grayscale, blur and Canny edges for contour extraction
"""
import cv2
import numpy as np
import logging

from error_handlers import DetectionFailure

logger = logging.getLogger(__name__)

_TO_GRAY = {
    3: cv2.COLOR_BGR2GRAY,
    4: cv2.COLOR_BGRA2GRAY,
}


class FramePreprocessor:
    """
    Converts a raw color frame into a binary edge map
    """

    def __init__(self, canny_low=75, canny_high=200, blur_kernel=5):
        """
        Initialize preprocessor

        Args:
            canny_low: Lower hysteresis threshold for Canny (default: 75)
            canny_high: Upper hysteresis threshold for Canny (default: 200)
            blur_kernel: Gaussian kernel size, odd (default: 5)
        """
        if blur_kernel < 1 or blur_kernel % 2 == 0:
            raise ValueError(f"blur_kernel must be a positive odd number, got {blur_kernel}")
        if canny_low > canny_high:
            raise ValueError(f"canny_low ({canny_low}) must not exceed canny_high ({canny_high})")

        self.canny_low = canny_low
        self.canny_high = canny_high
        self.blur_kernel = blur_kernel

        logger.info("FramePreprocessor initialized")
        logger.debug(f"  Canny thresholds: {canny_low}/{canny_high}")
        logger.debug(f"  Blur kernel: {blur_kernel}x{blur_kernel}")

    def to_gray(self, frame):
        """
        Convert BGRA, BGR or already-gray frames to a single channel

        Raises:
            DetectionFailure: frame is empty or has an unsupported layout
        """
        if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
            raise DetectionFailure("empty frame")
        if frame.dtype != np.uint8:
            raise DetectionFailure(f"expected uint8 frame, got {frame.dtype}")

        if frame.ndim == 2:
            return frame
        if frame.ndim == 3:
            channels = frame.shape[2]
            if channels == 1:
                return frame[:, :, 0]
            if channels in _TO_GRAY:
                return cv2.cvtColor(frame, _TO_GRAY[channels])

        raise DetectionFailure(f"unsupported frame shape {frame.shape}")

    def process(self, frame):
        """
        Build the edge map for one frame

        Args:
            frame: numpy.ndarray from Layer 1 (BGRA, BGR or gray)

        Returns:
            numpy.ndarray: Binary edge map (0/255), same height and width
        """
        gray = self.to_gray(frame)
        k = self.blur_kernel
        blurred = cv2.GaussianBlur(gray, (k, k), 0)
        return cv2.Canny(blurred, self.canny_low, self.canny_high)
