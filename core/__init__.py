"""Core signal processing: FFT, filter pipeline, derived signals and detection."""

from .conditioning import (
    DEFAULT_PIPELINE,
    FilterConfigError,
    IllConditionedFilterError,
    SavitzkyGolayConfigError,
    SignalConditioner,
    apply_pipeline,
    step_from_dict,
)
from .derived import compute_derivative
from .detection import DetectionResult, detect
from .spectral import SpectrumOptions, compute_spectrum, forward, inverse
from shared.models import Event, Selection, Spectrum, TraceRef, TriggerConfig

__all__ = [
    "Event",
    "Selection",
    "Spectrum",
    "TraceRef",
    "TriggerConfig",
    "SpectrumOptions",
    "compute_spectrum",
    "forward",
    "inverse",
    "DEFAULT_PIPELINE",
    "FilterConfigError",
    "SavitzkyGolayConfigError",
    "IllConditionedFilterError",
    "SignalConditioner",
    "apply_pipeline",
    "step_from_dict",
    "compute_derivative",
    "DetectionResult",
    "detect",
]
