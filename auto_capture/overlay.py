"""
Auto-Capture — Preview overlay
Draws the session's per-frame events onto a copy of the preview frame.
"""
import cv2
import numpy as np

from .session import (
    COLOR_LOCKED,
    COLOR_REJECTED,
    STATUS_COMPLETE,
    STATUS_TIMED_OUT,
    CaptureEvent,
    OverlayEvent,
    TimeoutEvent,
)


def _to_bgr(frame):
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    return frame.copy()


def _draw_banner(image, text, color):
    """Status text on a filled box in the top-left corner."""
    text_size = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, 0.8, 2)[0]
    cv2.rectangle(image, (10, 10), (text_size[0] + 30, 55), color, -1)
    cv2.rectangle(image, (10, 10), (text_size[0] + 30, 55), (255, 255, 255), 2)
    cv2.putText(image, text, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 0), 2)


def _draw_progress(image, progress, color):
    h, w = image.shape[:2]
    bar_w, bar_h = 200, 8
    bar_x = (w - bar_w) // 2
    bar_y = h - 40
    cv2.rectangle(image, (bar_x, bar_y), (bar_x + bar_w, bar_y + bar_h), (100, 100, 100), -1)
    cv2.rectangle(image, (bar_x, bar_y), (bar_x + int(bar_w * progress), bar_y + bar_h), color, -1)


def draw_overlay(frame, event):
    """
    Render an event over a BGR copy of the frame.

    Args:
        frame: Preview frame (BGRA, BGR or gray)
        event: OverlayEvent, CaptureEvent, TimeoutEvent or None

    Returns:
        numpy.ndarray: BGR image ready for JPEG encoding
    """
    display = _to_bgr(frame)

    if isinstance(event, TimeoutEvent):
        _draw_banner(display, STATUS_TIMED_OUT, COLOR_REJECTED)
        return display

    if isinstance(event, CaptureEvent):
        pts = np.round(event.corners).astype(np.int32)
        cv2.polylines(display, [pts], True, COLOR_LOCKED, 5, cv2.LINE_AA)
        _draw_banner(display, STATUS_COMPLETE, COLOR_LOCKED)
        return display

    if not isinstance(event, OverlayEvent):
        return display

    if event.points is not None:
        pts = np.round(event.points).astype(np.int32)
        cv2.polylines(display, [pts], True, event.color, 5, cv2.LINE_AA)
        for point in pts:
            cv2.circle(display, (int(point[0]), int(point[1])), 6, event.color, -1)

    _draw_banner(display, event.message, event.color if event.accepted else (200, 200, 200))

    if 0.0 < event.progress < 1.0:
        _draw_progress(display, event.progress, event.color)

    return display
