from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from core import spectral
from shared.models import Selection, as_float_array, slice_series

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpectrogramOptions:
    selection: Optional[Selection] = None
    window_size: int = 512
    overlap: float = 0.5
    window_type: str = "hann"
    detrend: str = "removeMean"
    max_points: int = 40000
    freq_min: float = 0.0
    freq_max: Optional[float] = None
    kaiser_beta: float = 6.0

    def __post_init__(self) -> None:
        if self.selection is not None and not isinstance(self.selection, Selection):
            object.__setattr__(self, "selection", Selection.coerce(self.selection))

    def validate(self) -> None:
        if int(self.window_size) < 2:
            raise ValueError("window_size must be >= 2")
        if not (0.0 <= self.overlap < 1.0):
            raise ValueError("overlap must be in [0, 1)")
        if self.window_type not in spectral.WINDOW_TYPES:
            raise ValueError(f"window_type must be one of {spectral.WINDOW_TYPES}, got {self.window_type!r}")
        if self.detrend not in spectral.DETREND_MODES:
            raise ValueError(f"detrend must be one of {spectral.DETREND_MODES}, got {self.detrend!r}")

    @classmethod
    def coerce(cls, value) -> "SpectrogramOptions":
        if value is None:
            return cls()
        if isinstance(value, SpectrogramOptions):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot interpret {type(value).__name__} as SpectrogramOptions")
        return cls(**{k: v for k, v in value.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class Spectrogram:
    """STFT magnitudes; ``magnitude_db[f][k]`` is frequency bin f of frame k."""

    time_bins: np.ndarray
    freq_bins: np.ndarray
    magnitude_db: np.ndarray
    warnings: Tuple[str, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_frames(self) -> int:
        return int(self.time_bins.size)


def _empty(warnings) -> Spectrogram:
    empty = np.zeros(0, dtype=np.float64)
    return Spectrogram(empty, empty, np.zeros((0, 0), dtype=np.float64), tuple(warnings), {})


def decimate_for_display(y: np.ndarray, t: np.ndarray, max_points: int) -> Tuple[np.ndarray, np.ndarray, int]:
    """Keep every ``ceil(n / max_points)``-th sample once `y` exceeds `max_points`."""
    if not max_points or y.size <= max_points:
        return y, t, 1
    stride = int(math.ceil(y.size / max_points))
    return y[::stride], t[::stride], stride


def compute_spectrogram(signal, time, options=None) -> Spectrogram:
    """
    Short-time Fourier transform of `signal`.

    Frames of ``window_size`` samples advance by ``floor(window_size * (1 - overlap))``.
    Each frame is detrended, windowed and zero-padded to the next power of two.
    Inputs longer than ``max_points`` are stride-decimated first (with a warning).
    """
    opts = SpectrogramOptions.coerce(options)
    opts.validate()
    values = as_float_array(signal)
    times = as_float_array(time)
    if values.size == 0 or times.size == 0:
        return _empty(["No signal data"])

    warnings = []
    series = slice_series(times, values, opts.selection)
    if series.dropped:
        warnings.append(f"Dropped {series.dropped} non-finite samples before STFT.")
    y, t, factor = decimate_for_display(series.y, series.t, int(opts.max_points))
    if factor > 1:
        warnings.append(f"Downsampled spectrogram input by {factor}x to {y.size} points.")

    estimate = spectral.infer_sample_rate(t)
    warnings.extend(estimate.warnings)
    fs = estimate.fs
    if not math.isfinite(fs) or fs <= 0:
        return _empty(warnings + ["Invalid sampling rate"])

    segment_length = min(int(opts.window_size), y.size)
    hop = max(1, int(math.floor(segment_length * (1.0 - opts.overlap))))
    if segment_length < 2:
        return _empty(warnings + ["Spectrogram window too small"])

    win = spectral.get_window(opts.window_type, segment_length, beta=opts.kaiser_beta)
    padded = spectral.next_power_of_two(segment_length)
    freq_axis, delta_f = spectral.compute_freq_axis(padded, fs)

    freq_start = 0
    freq_end = freq_axis.size
    if opts.freq_min and math.isfinite(opts.freq_min) and opts.freq_min > 0:
        hits = np.flatnonzero(freq_axis >= opts.freq_min)
        if hits.size:
            freq_start = int(hits[0])
    if opts.freq_max is not None and math.isfinite(opts.freq_max) and opts.freq_max > 0:
        hits = np.flatnonzero(freq_axis > opts.freq_max)
        if hits.size:
            freq_end = int(hits[0])
    freq_bins = freq_axis[freq_start:freq_end]

    frames = []
    time_bins = []
    for start in range(0, y.size - segment_length + 1, hop):
        segment = spectral.apply_detrend(y[start : start + segment_length], opts.detrend)
        windowed = spectral.apply_window(segment, win.window)
        fft = spectral.forward(windowed, "nextPow2")
        mags = spectral.get_magnitude_db(
            fft.re,
            fft.im,
            coherent_gain=win.coherent_gain,
            length_override=fft.length,
            signal_length=segment_length,
        )
        frames.append(mags[freq_start:freq_end])
        centre = min(t.size - 1, start + segment_length // 2)
        time_bins.append(t[centre])

    magnitude = np.array(frames, dtype=np.float64).T if frames else np.zeros((freq_bins.size, 0))
    logger.debug("Spectrogram: %d frames of %d samples (hop %d)", len(frames), segment_length, hop)
    meta = {
        "fs": fs,
        "median_dt": estimate.median_dt,
        "hop": hop,
        "window_size": segment_length,
        "overlap": opts.overlap,
        "n_frames": len(frames),
        "freq_resolution": delta_f,
        "nyquist": fs / 2.0,
    }
    return Spectrogram(
        time_bins=np.asarray(time_bins, dtype=np.float64),
        freq_bins=freq_bins,
        magnitude_db=magnitude,
        warnings=tuple(warnings),
        meta=meta,
    )


__all__ = ["Spectrogram", "SpectrogramOptions", "compute_spectrogram", "decimate_for_display"]
