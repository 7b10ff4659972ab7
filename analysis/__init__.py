"""Measurements, spectral metrics, cross-channel and time-frequency analysis."""

from .analysis_worker import AnalysisWorker, JobCancelled
from .cross_channel import DelayEstimate, TransferFunction, compute_transfer_function, estimate_delay
from .engine import AnalysisEngine
from .metrics import MeasurementOptions, MeasurementResult, compute
from .settings import AnalysisSettings, AnalysisSettingsStore
from .spectral_metrics import SpectralSummary, summarize, summarize_from_spectrum
from .time_frequency import Spectrogram, compute_spectrogram

__all__ = [
    "AnalysisEngine",
    "AnalysisSettings",
    "AnalysisSettingsStore",
    "AnalysisWorker",
    "JobCancelled",
    "MeasurementOptions",
    "MeasurementResult",
    "compute",
    "SpectralSummary",
    "summarize",
    "summarize_from_spectrum",
    "DelayEstimate",
    "TransferFunction",
    "estimate_delay",
    "compute_transfer_function",
    "Spectrogram",
    "compute_spectrogram",
]
