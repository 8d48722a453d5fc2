"""
Layer 3 — Stability
Decides, across successive frames, when a card has been held still long
enough to capture, and when the search has gone on too long.
"""
from .tracker import (
    QualityGate,
    StabilitySample,
    StabilityTracker,
    TrackerState,
    TrackerStatus,
)
from .watchdog import TimeoutWatchdog

__all__ = [
    'QualityGate',
    'StabilitySample',
    'StabilityTracker',
    'TrackerState',
    'TrackerStatus',
    'TimeoutWatchdog',
]
