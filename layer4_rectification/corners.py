"""
Layer 4 — Rectification
Component: Corner orderer
"""
import numpy as np

from error_handlers import DegenerateGeometry


def order_corners(points):
    """
    Order 4 unordered points as top-left, top-right, bottom-right, bottom-left.

    Smallest x+y is top-left, largest x+y is bottom-right; of the two left
    over, the one further right is top-right. Holds for convex quads rotated
    less than about 45 degrees from the image axes.

    Args:
        points: Array-like of 4 (x, y) points, any order

    Returns:
        numpy.ndarray: (4, 2) float32 array [TL, TR, BR, BL]
    """
    pts = np.asarray(points, dtype=np.float32).reshape(4, 2)

    s = pts.sum(axis=1)
    tl_idx = int(np.argmin(s))
    br_idx = int(np.argmax(s))
    if tl_idx == br_idx:
        raise DegenerateGeometry("all corners lie on one anti-diagonal")

    a, b = [pts[i] for i in range(4) if i not in (tl_idx, br_idx)]
    tr, bl = (a, b) if a[0] > b[0] else (b, a)

    return np.array([pts[tl_idx], tr, pts[br_idx], bl], dtype=np.float32)
