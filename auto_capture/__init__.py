"""
Auto-Capture
Ties the layers into one capture session: per-frame step function,
overlay drawing and the blocking capture loop with timeout and reset.
"""
from .config import CaptureConfig
from .session import (
    CaptureEvent,
    OverlayEvent,
    ScanPipeline,
    SessionState,
    TimeoutEvent,
)
from .overlay import draw_overlay
from .engine import AutoCaptureEngine, CaptureResult

__all__ = [
    'CaptureConfig',
    'CaptureEvent',
    'OverlayEvent',
    'ScanPipeline',
    'SessionState',
    'TimeoutEvent',
    'draw_overlay',
    'AutoCaptureEngine',
    'CaptureResult',
]
