"""
Layer 1 — Capture
Frame source for the card scanner: camera initialization, frame pull, teardown.
"""
from .camera import CameraHandler

__all__ = ['CameraHandler']
