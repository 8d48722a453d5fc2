"""
Layer 4 — Rectification
Canonical corner order, perspective warp to a flat card image, PNG output.
"""
from .corners import order_corners
from .rectifier import PerspectiveRectifier, RectifiedImage
from .saver import ImageSaver

__all__ = ['order_corners', 'PerspectiveRectifier', 'RectifiedImage', 'ImageSaver']
