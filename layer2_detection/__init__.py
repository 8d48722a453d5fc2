"""
Layer 2 — Detection
Responsibility: Edge map from a raw frame, single best quadrilateral candidate
Output: Candidate (4 points + derived geometry) or None
"""
from .preprocessor import FramePreprocessor
from .contours import Candidate, ContourExtractor

__all__ = ['FramePreprocessor', 'Candidate', 'ContourExtractor']
