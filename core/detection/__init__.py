from .base import (
    DETECTOR_REGISTRY,
    DetectorParameter,
    TriggerDetector,
    create_detector,
    register_detector,
)
from .level import EdgeSlopeDetector, LevelCrossingDetector
from .pulse import PulseWidthDetector, RuntPulseDetector
from .detector import DetectionResult, detect, is_nonuniform_timebase

__all__ = [
    "TriggerDetector",
    "DetectorParameter",
    "DETECTOR_REGISTRY",
    "register_detector",
    "create_detector",
    "LevelCrossingDetector",
    "EdgeSlopeDetector",
    "PulseWidthDetector",
    "RuntPulseDetector",
    "DetectionResult",
    "detect",
    "is_nonuniform_timebase",
]
