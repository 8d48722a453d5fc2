"""
Tests for Layer 2 — frame preprocessing and quadrilateral extraction.
"""
import cv2
import numpy as np
import pytest

from error_handlers import DegenerateGeometry, DetectionFailure
from layer2_detection import Candidate, ContourExtractor, FramePreprocessor


def _edges(frame):
    return FramePreprocessor().process(frame)


class TestFramePreprocessor:
    """Test edge map generation."""

    @pytest.mark.parametrize("channels", [1, 3, 4])
    def test_accepts_gray_bgr_and_bgra(self, card_frame, channels):
        """Edge map keeps the frame size and is binary."""
        frame = card_frame(channels=channels)
        edges = FramePreprocessor().process(frame)
        assert edges.shape == frame.shape[:2]
        assert edges.dtype == np.uint8
        assert set(np.unique(edges)) <= {0, 255}
        assert edges.any()

    def test_blank_frame_has_no_edges(self, blank_frame):
        assert not FramePreprocessor().process(blank_frame).any()

    def test_deterministic(self, card_frame):
        frame = card_frame(angle=12.0)
        pre = FramePreprocessor(canny_low=50, canny_high=150)
        assert np.array_equal(pre.process(frame), pre.process(frame))

    def test_rejects_non_uint8_frame(self):
        with pytest.raises(DetectionFailure):
            FramePreprocessor().process(np.zeros((10, 10, 3), np.float32))

    def test_rejects_empty_frame(self):
        with pytest.raises(DetectionFailure):
            FramePreprocessor().process(np.zeros((0, 0, 3), np.uint8))

    def test_rejects_none(self):
        with pytest.raises(DetectionFailure):
            FramePreprocessor().process(None)

    @pytest.mark.parametrize("kwargs", [
        {"blur_kernel": 4},
        {"blur_kernel": 0},
        {"canny_low": 200, "canny_high": 100},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            FramePreprocessor(**kwargs)


class TestCandidate:
    """Test derived candidate geometry."""

    def test_rectangle_geometry(self):
        cand = Candidate([[100, 100], [400, 100], [400, 280], [100, 280]])
        assert cand.points.shape == (4, 2)
        assert cand.points.dtype == np.float32
        assert cand.area == pytest.approx(300 * 180)
        assert cand.centroid == pytest.approx((250.0, 190.0))
        assert cand.aspect_ratio == pytest.approx(300 / 180, rel=1e-3)
        assert cand.is_convex

        (cx, cy), w, h = cand.min_rect
        assert (cx, cy) == pytest.approx((250.0, 190.0))
        assert sorted([w, h]) == pytest.approx([180.0, 300.0])

    def test_area_independent_of_winding(self):
        pts = [[0, 0], [50, 0], [50, 20], [0, 20]]
        assert Candidate(pts).area == Candidate(pts[::-1]).area == pytest.approx(1000)

    def test_concave_quad(self):
        cand = Candidate([[0, 0], [100, 50], [0, 100], [30, 50]])
        assert not cand.is_convex

    def test_zero_area_has_no_centroid(self):
        cand = Candidate([[0, 0], [10, 10], [20, 20], [30, 30]])
        assert cand.area == 0
        with pytest.raises(DegenerateGeometry):
            cand.centroid


class TestContourExtractor:
    """Test largest-quad selection."""

    def test_finds_card(self, card_frame):
        frame = card_frame()
        cand = ContourExtractor().extract(_edges(frame), 640 * 480)
        assert cand is not None
        assert cand.area == pytest.approx(300 * 180, rel=0.05)
        assert cand.centroid == pytest.approx((320, 240), abs=3)

    def test_finds_rotated_card(self, card_frame):
        frame = card_frame(angle=20.0)
        cand = ContourExtractor().extract(_edges(frame), 640 * 480)
        assert cand is not None
        assert cand.is_convex
        assert cand.aspect_ratio == pytest.approx(300 / 180, rel=0.05)

    def test_points_within_frame(self, card_frame):
        frame = card_frame(center=(170, 110))
        cand = ContourExtractor().extract(_edges(frame), 640 * 480)
        assert cand is not None
        assert (cand.points[:, 0] >= 0).all() and (cand.points[:, 0] <= 639).all()
        assert (cand.points[:, 1] >= 0).all() and (cand.points[:, 1] <= 479).all()

    def test_selects_largest_quad(self, blank_frame):
        frame = blank_frame.copy()
        rects = [
            ((50, 70), (150, 130)),     # 100 x 60
            ((300, 60), (500, 180)),    # 200 x 120
            ((125, 305), (275, 395)),   # 150 x 90
        ]
        for p1, p2 in rects:
            cv2.rectangle(frame, p1, p2, (220, 220, 220, 255), -1)

        cand = ContourExtractor().extract(_edges(frame), 640 * 480)
        assert cand is not None
        assert cand.centroid == pytest.approx((400, 120), abs=3)
        assert cand.area == pytest.approx(200 * 120, rel=0.05)

    def test_small_boundaries_rejected(self, card_frame):
        frame = card_frame(size=(30, 20))
        assert ContourExtractor(min_area=1000).extract(_edges(frame), 640 * 480) is None

    def test_relative_area_floor(self, card_frame):
        frame = card_frame(size=(120, 80))
        edges = _edges(frame)
        assert ContourExtractor(min_area_ratio=0.0).extract(edges, 640 * 480) is not None
        assert ContourExtractor(min_area_ratio=0.1).extract(edges, 640 * 480) is None

    def test_non_quadrilateral_ignored(self, blank_frame):
        frame = blank_frame.copy()
        cv2.circle(frame, (320, 240), 120, (220, 220, 220, 255), -1)
        assert ContourExtractor().extract(_edges(frame), 640 * 480) is None

    def test_empty_edge_map(self, blank_frame):
        assert ContourExtractor().extract(_edges(blank_frame), 640 * 480) is None
