"""
Auto-Capture — Configuration
"""
import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "CAPTURE_"


@dataclass
class CaptureConfig:
    """Configuration for the card auto-capture session."""
    # Camera settings
    camera_index: int = 0
    camera_width: int = 1280
    camera_height: int = 720

    # Edge detection
    canny_low: int = 75
    canny_high: int = 200
    blur_kernel: int = 5

    # Contour extraction
    min_contour_area: float = 1000.0     # px², noise rejection
    min_contour_area_ratio: float = 0.0  # fraction of frame, 0 disables
    epsilon_ratio: float = 0.02          # approxPolyDP tolerance / perimeter

    # Quality gate
    min_area_ratio: float = 0.05
    max_area_ratio: float = 0.85
    min_aspect: float = 1.3
    max_aspect: float = 2.5

    # Stability settings
    lock_frames: int = 30                # ~1s at 30fps
    movement_tolerance: float = 15.0     # Max centroid movement (pixels)
    area_change_tolerance: float = 0.10  # Max relative area change
    timeout_seconds: float = 10.0

    # Error budget
    max_detection_failures: int = 5      # consecutive failed frames before giving up

    # Output settings
    min_output_size: int = 100
    output_dir: str = "Logs/captured_cards"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CaptureConfig":
        """
        Build a config from CAPTURE_<FIELD> environment variables,
        e.g. CAPTURE_LOCK_FRAMES=45. Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = f.type(raw) if f.type is not str else raw
            except ValueError:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")
        config = cls(**overrides)
        config.validate()
        if overrides:
            logger.debug(f"Config overrides from environment: {overrides}")
        return config

    def validate(self):
        """
        Raises:
            ValueError: a range is empty or a threshold is out of bounds
        """
        if self.canny_low > self.canny_high:
            raise ValueError("canny_low must not exceed canny_high")
        if self.blur_kernel < 1 or self.blur_kernel % 2 == 0:
            raise ValueError("blur_kernel must be a positive odd number")
        if not 0.0 <= self.min_area_ratio < self.max_area_ratio <= 1.0:
            raise ValueError("area ratio bounds must satisfy 0 <= min < max <= 1")
        if not 1.0 <= self.min_aspect <= self.max_aspect:
            raise ValueError("aspect bounds must satisfy 1 <= min <= max")
        if self.lock_frames < 1:
            raise ValueError("lock_frames must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.epsilon_ratio <= 0:
            raise ValueError("epsilon_ratio must be positive")
        if self.min_output_size < 1:
            raise ValueError("min_output_size must be at least 1")
        return self
