"""
Layer 4 — Rectification
Component: Perspective rectifier
Responsibility: Warp the ordered card quad into a flat, axis-aligned image
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import Tuple

from error_handlers import DegenerateGeometry

logger = logging.getLogger(__name__)


@dataclass
class RectifiedImage:
    """Flat card image produced by one successful capture."""
    image: np.ndarray
    width: int
    height: int

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


class PerspectiveRectifier:
    """
    4-point perspective correction.
    Output size follows the longer of each pair of opposing edges, which
    compensates for foreshortening when the card is viewed at an angle.
    """

    def __init__(self, min_size=100):
        """
        Args:
            min_size: Smallest accepted output width and height in pixels
        """
        self.min_size = min_size
        logger.info("PerspectiveRectifier initialized")
        logger.debug(f"  Minimum output size: {min_size}x{min_size}")

    def target_size(self, ordered) -> Tuple[int, int]:
        """
        Output (width, height) for corners ordered TL, TR, BR, BL.

        Raises:
            DegenerateGeometry: either side is below the minimum size
        """
        tl, tr, br, bl = np.asarray(ordered, dtype=np.float64).reshape(4, 2)

        width = int(round(max(np.linalg.norm(tr - tl), np.linalg.norm(br - bl))))
        height = int(round(max(np.linalg.norm(bl - tl), np.linalg.norm(br - tr))))

        if width < self.min_size or height < self.min_size:
            raise DegenerateGeometry(
                f"output {width}x{height} below minimum {self.min_size}px",
                width=width, height=height, minimum=self.min_size
            )
        return width, height

    def rectify(self, frame, ordered) -> RectifiedImage:
        """
        Resample the card region into a flat image

        Args:
            frame: Source frame (any channel count)
            ordered: (4, 2) corners in TL, TR, BR, BL order

        Returns:
            RectifiedImage of exactly width x height

        Raises:
            DegenerateGeometry: quad too small to rectify
        """
        src = np.asarray(ordered, dtype=np.float32).reshape(4, 2)
        width, height = self.target_size(src)

        dst = np.array([
            [0, 0],
            [width, 0],
            [width, height],
            [0, height]
        ], dtype=np.float32)

        M = cv2.getPerspectiveTransform(src, dst)
        warped = cv2.warpPerspective(
            frame, M, (width, height),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0,
        )

        logger.info(f"Card rectified to {width}x{height}")
        return RectifiedImage(image=warped, width=width, height=height)
