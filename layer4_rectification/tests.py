"""
Tests for Layer 4 — corner ordering, perspective rectification and PNG output.
"""
import logging
import os

import numpy as np
import pytest

from conftest import card_corners
from error_handlers import DegenerateGeometry, ImageSaveError
from layer4_rectification import ImageSaver, PerspectiveRectifier, order_corners

PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'


def rotated_rect(cx, cy, w, h, degrees):
    """Corners TL, TR, BR, BL of a w x h rectangle rotated about its center."""
    t = np.deg2rad(degrees)
    rot = np.array([[np.cos(t), -np.sin(t)], [np.sin(t), np.cos(t)]])
    local = np.array([[-w / 2, -h / 2], [w / 2, -h / 2], [w / 2, h / 2], [-w / 2, h / 2]])
    return (local @ rot.T + [cx, cy]).astype(np.float32)


class TestOrderCorners:
    """Test canonical TL, TR, BR, BL ordering."""

    def test_axis_aligned(self):
        pts = [[400, 280], [100, 100], [100, 280], [400, 100]]
        ordered = order_corners(pts)
        assert ordered.tolist() == [[100, 100], [400, 100], [400, 280], [100, 280]]
        assert ordered.dtype == np.float32

    def test_accepts_contour_shape(self):
        pts = np.array([[[10, 10]], [[60, 10]], [[60, 40]], [[10, 40]]], np.int32)
        assert order_corners(pts).shape == (4, 2)

    def test_random_rotations_and_shuffles(self):
        rng = np.random.default_rng(7)
        for _ in range(200):
            w = rng.uniform(150, 400)
            h = rng.uniform(80, w)
            expected = rotated_rect(rng.uniform(200, 440), rng.uniform(150, 330),
                                    w, h, rng.uniform(-40, 40))
            shuffled = expected[rng.permutation(4)]

            ordered = order_corners(shuffled)

            np.testing.assert_allclose(ordered, expected, atol=1e-4)
            sums = ordered.sum(axis=1)
            assert sums[0] == sums.min()
            assert sums[2] == sums.max()

    def test_box_points_of_rotated_card(self):
        ordered = order_corners(card_corners(size=(300, 180), angle=15.0))
        tl, tr, br, bl = ordered
        assert tl[0] < tr[0] and bl[0] < br[0]
        assert tl[1] < bl[1] and tr[1] < br[1]

    def test_collapsed_points_rejected(self):
        with pytest.raises(DegenerateGeometry):
            order_corners([[5, 5]] * 4)


class TestPerspectiveRectifier:
    """Test output sizing and warping."""

    @pytest.mark.parametrize("w,h", [(300, 180), (100, 100), (512, 288)])
    def test_axis_aligned_size(self, w, h):
        ordered = [[0, 0], [w, 0], [w, h], [0, h]]
        assert PerspectiveRectifier().target_size(ordered) == (w, h)

        frame = np.full((h + 20, w + 20, 3), 200, np.uint8)
        result = PerspectiveRectifier().rectify(frame, ordered)
        assert result.image.shape == (h, w, 3)
        assert result.size == (w, h)

    def test_skewed_quad_uses_longer_edges(self):
        ordered = [[0, 0], [200, 10], [210, 150], [5, 140]]
        # top 200.2 / bottom 205.2, left 140.1 / right 140.4
        assert PerspectiveRectifier().target_size(ordered) == (205, 140)

    @pytest.mark.parametrize("ordered", [
        [[0, 0], [99, 0], [99, 200], [0, 200]],
        [[0, 0], [300, 0], [300, 60], [0, 60]],
    ])
    def test_below_minimum_size(self, ordered):
        with pytest.raises(DegenerateGeometry) as exc:
            PerspectiveRectifier(min_size=100).target_size(ordered)
        assert exc.value.error_code == "DEGENERATE_GEOMETRY"
        assert exc.value.details["minimum"] == 100

    def test_outside_source_is_black(self):
        frame = np.full((200, 200, 3), 255, np.uint8)
        ordered = [[-50, -50], [150, -50], [150, 150], [-50, 150]]
        image = PerspectiveRectifier().rectify(frame, ordered).image
        assert image.shape == (200, 200, 3)
        assert (image[10, 10] == 0).all()
        assert (image[190, 190] == 255).all()

    def test_rectified_card_is_flat(self, card_frame):
        frame = card_frame(size=(300, 180), angle=10.0)
        ordered = order_corners(card_corners(size=(300, 180), angle=10.0))

        result = PerspectiveRectifier().rectify(frame, ordered)

        assert result.size == pytest.approx((300, 180), abs=2)
        assert result.image.shape[2] == 4
        inner = result.image[10:-10, 10:-10, :3]
        assert inner.mean() == pytest.approx(220, abs=3)

    def test_keeps_gray_frames_gray(self, card_frame):
        frame = card_frame(channels=1)
        ordered = order_corners(card_corners())
        assert PerspectiveRectifier().rectify(frame, ordered).image.ndim == 2


class TestImageSaver:
    """Test PNG encoding and saving."""

    def test_encode_png(self):
        image = np.zeros((120, 200, 3), np.uint8)
        assert ImageSaver.encode_png(image).startswith(PNG_SIGNATURE)

    def test_encode_empty_image_fails(self):
        with pytest.raises(ImageSaveError):
            ImageSaver.encode_png(np.zeros((0, 0), np.uint8))

    def test_save_image(self, tmp_path):
        out_dir = tmp_path / "cards"
        saver = ImageSaver(base_dir=str(out_dir))
        assert out_dir.is_dir()

        info = saver.save_image(np.zeros((120, 200, 4), np.uint8))

        assert info["filename"].startswith("business-card_")
        assert info["filename"].endswith(".png")
        assert os.path.dirname(info["filepath"]) == str(out_dir)
        with open(info["filepath"], "rb") as f:
            assert f.read(8) == PNG_SIGNATURE

    def test_logs_initialization(self, tmp_path, caplog):
        with caplog.at_level(logging.DEBUG, logger='layer4_rectification.saver'):
            ImageSaver(base_dir=str(tmp_path))
        messages = [r.getMessage() for r in caplog.records]
        assert "ImageSaver initialized" in messages
        assert f"  Base dir: {tmp_path}" in messages

    def test_save_failure_raises(self, tmp_path):
        saver = ImageSaver(base_dir=str(tmp_path))
        with pytest.raises(ImageSaveError) as exc:
            saver.save_image(np.zeros((0, 0), np.uint8))
        assert exc.value.error_code == "IMAGE_SAVE_FAILED"
