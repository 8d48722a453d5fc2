"""
Layer 2 — Detection
Component: Contour extractor
Responsibility: Pick the single largest 4-vertex boundary in an edge map
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from error_handlers import DegenerateGeometry

logger = logging.getLogger(__name__)


def _shoelace_terms(pts):
    x, y = pts[:, 0], pts[:, 1]
    x_next, y_next = np.roll(x, -1), np.roll(y, -1)
    return x * y_next - x_next * y


@dataclass
class Candidate:
    """
    A quadrilateral card candidate found in one frame.

    points: np.ndarray with shape (4, 2), dtype float32, in the order the
    polygon approximation produced them (not canonical).
    """
    points: np.ndarray

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float32).reshape(4, 2)

    @property
    def area(self) -> float:
        """Polygon area by the shoelace formula."""
        return float(abs(_shoelace_terms(self.points.astype(np.float64)).sum()) / 2.0)

    @property
    def is_convex(self) -> bool:
        return bool(cv2.isContourConvex(self.points.reshape(-1, 1, 2)))

    @property
    def min_rect(self) -> Tuple[Tuple[float, float], float, float]:
        """Minimum oriented bounding rectangle as ((cx, cy), width, height)."""
        (cx, cy), (w, h), _angle = cv2.minAreaRect(self.points)
        return (float(cx), float(cy)), float(w), float(h)

    @property
    def aspect_ratio(self) -> float:
        """Long side over short side of the minimum bounding rectangle."""
        _, w, h = self.min_rect
        short, long_ = min(w, h), max(w, h)
        if short <= 0:
            return float('inf')
        return long_ / short

    @property
    def centroid(self) -> Tuple[float, float]:
        """
        Polygon centroid.

        Raises:
            DegenerateGeometry: polygon has zero area
        """
        pts = self.points.astype(np.float64)
        cross = _shoelace_terms(pts)
        signed_area = cross.sum() / 2.0
        if abs(signed_area) < 1e-9:
            raise DegenerateGeometry("zero-area candidate has no centroid")
        x, y = pts[:, 0], pts[:, 1]
        cx = ((x + np.roll(x, -1)) * cross).sum() / (6.0 * signed_area)
        cy = ((y + np.roll(y, -1)) * cross).sum() / (6.0 * signed_area)
        return float(cx), float(cy)


class ContourExtractor:
    """
    Greedy largest-quad detector.
    Assumes the card is the largest edge-bounded 4-sided region in the frame.
    """

    def __init__(self, min_area=1000.0, min_area_ratio=0.0, epsilon_ratio=0.02):
        """
        Initialize contour extractor

        Args:
            min_area: Absolute minimum boundary area in px^2 (noise rejection)
            min_area_ratio: Minimum boundary area as a fraction of the frame (0 disables)
            epsilon_ratio: Polygon approximation tolerance as a fraction of perimeter
        """
        self.min_area = min_area
        self.min_area_ratio = min_area_ratio
        self.epsilon_ratio = epsilon_ratio

        logger.info("ContourExtractor initialized")
        logger.debug(f"  Min area: {min_area}px² / {min_area_ratio * 100:.1f}% of frame")
        logger.debug(f"  Approximation epsilon: {epsilon_ratio * 100:.1f}% of perimeter")

    def extract(self, edges, frame_area) -> Optional[Candidate]:
        """
        Find the best quadrilateral candidate

        Args:
            edges: Binary edge map from FramePreprocessor
            frame_area: Width x height of the source frame

        Returns:
            Candidate or None if no 4-vertex boundary survives the filters
        """
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None

        min_area = max(float(self.min_area), self.min_area_ratio * float(frame_area))

        best = None
        best_area = 0.0
        # Strict comparison keeps the first-found quad on ties
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < min_area:
                continue

            peri = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, self.epsilon_ratio * peri, True)
            if len(approx) != 4:
                continue

            if area > best_area:
                best, best_area = approx, area

        if best is None:
            logger.debug(f"No quadrilateral among {len(contours)} contours")
            return None

        height, width = edges.shape[:2]
        pts = best.reshape(4, 2).astype(np.float32)
        pts[:, 0] = np.clip(pts[:, 0], 0, width - 1)
        pts[:, 1] = np.clip(pts[:, 1], 0, height - 1)

        candidate = Candidate(pts)
        if candidate.area <= 0:
            logger.debug("Quadrilateral collapsed to zero area, discarded")
            return None

        logger.debug(f"Quadrilateral found: area {best_area:.0f} ({best_area / frame_area * 100:.1f}%)")
        return candidate
