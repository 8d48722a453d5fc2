"""
Layer 4 — Rectification
Component: Image saver
Responsibility: Encode rectified cards as PNG for download and keep a copy on disk
"""
import os
import cv2
import logging
from datetime import datetime

from error_handlers import ImageSaveError

logger = logging.getLogger(__name__)


class ImageSaver:
    """Handles saving rectified card images"""

    def __init__(self, base_dir="captured_cards"):
        """
        Initialize saver

        Args:
            base_dir: Directory for saved PNG files (default: "captured_cards")
        """
        self.base_dir = base_dir
        self._ensure_directories()

        logger.info("ImageSaver initialized")
        logger.debug(f"  Base dir: {base_dir}")

    def _ensure_directories(self):
        """Create the output directory if it doesn't exist"""
        if not os.path.exists(self.base_dir):
            os.makedirs(self.base_dir)
            logger.info(f"Created directory: {self.base_dir}")

    @staticmethod
    def encode_png(image):
        """
        Encode an image as PNG bytes

        Raises:
            ImageSaveError: encoding failed
        """
        try:
            ok, buffer = cv2.imencode('.png', image)
        except cv2.error as e:
            raise ImageSaveError("<memory>", e)
        if not ok:
            raise ImageSaveError("<memory>", "PNG encoding failed")
        return buffer.tobytes()

    def save_image(self, image, prefix="business-card"):
        """
        Save image to the output directory

        Args:
            image: numpy.ndarray image to save
            prefix: Filename prefix (default: "business-card")

        Returns:
            dict: Contains timestamp, filepath, filename
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        filename = f"{prefix}_{timestamp}.png"
        filepath = os.path.join(self.base_dir, filename)

        logger.info(f"Saving image to: {filepath}")
        try:
            written = cv2.imwrite(filepath, image)
        except cv2.error as e:
            raise ImageSaveError(filepath, e)
        if not written:
            raise ImageSaveError(filepath, "cv2.imwrite returned False")
        logger.info("Image saved successfully")

        return {
            "timestamp": timestamp,
            "filepath": filepath,
            "filename": filename
        }
