"""Two-channel analysis: time delay by normalized cross-correlation and
transfer function / coherence between an input and an output channel."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
from scipy import signal as sp_signal

from core.spectral import SpectrumOptions, compute_spectrum, infer_sample_rate
from shared.models import Selection, as_float_array

logger = logging.getLogger(__name__)

DEFAULT_MAX_LAG_SAMPLES = 2000
MAGNITUDE_FLOOR = 1e-12
COHERENCE_EPS = 1e-24


@dataclass(frozen=True)
class DelayEstimate:
    delay: float = 0.0
    correlation: float = 0.0
    lag_samples: int = 0
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransferFunction:
    freq: np.ndarray
    magnitude_db: np.ndarray
    phase_deg: np.ndarray
    coherence: np.ndarray
    warnings: Tuple[str, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransferOptions:
    selection: Optional[Selection] = None
    window_type: str = "hann"
    detrend: str = "removeMean"
    zero_pad_mode: str = "nextPow2"
    zero_pad_factor: float = 1.0
    segments: int = 1

    def __post_init__(self) -> None:
        if self.selection is not None and not isinstance(self.selection, Selection):
            object.__setattr__(self, "selection", Selection.coerce(self.selection))

    def validate(self) -> None:
        self.spectrum_options().validate()
        if int(self.segments) < 1:
            raise ValueError("segments must be >= 1")

    def spectrum_options(self) -> SpectrumOptions:
        return SpectrumOptions(
            window_type=self.window_type,
            detrend=self.detrend,
            zero_pad_mode=self.zero_pad_mode,
            zero_pad_factor=self.zero_pad_factor,
        )

    @classmethod
    def coerce(cls, value) -> "TransferOptions":
        if value is None:
            return cls()
        if isinstance(value, TransferOptions):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot interpret {type(value).__name__} as TransferOptions")
        return cls(**{k: v for k, v in value.items() if k in cls.__dataclass_fields__})


def _select(selection, length: int) -> Tuple[int, int]:
    bounds = Selection.coerce(selection).clamp(length)
    return bounds if bounds is not None else (0, -1)


def _finite_rows(*arrays: np.ndarray) -> np.ndarray:
    keep = np.ones(arrays[0].size, dtype=bool)
    for arr in arrays:
        keep &= np.isfinite(arr)
    return keep


def wrap_phase_degrees(values):
    """Wrap angles into [-180, 180]."""
    wrapped = np.mod(np.asarray(values, dtype=np.float64) + 180.0, 360.0) - 180.0
    # Keep +180 as +180 rather than folding it to -180.
    wrapped = np.where((wrapped == -180.0) & (np.asarray(values) > 0), 180.0, wrapped)
    return wrapped


def normalized_cross_correlation(x: np.ndarray, y: np.ndarray, max_lag: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    ``sum(x[i]*y[i+lag]) / sqrt(sum(x^2)*sum(y^2))`` over the overlap of each lag.

    Returns ``(lags, correlation)`` for lags ``-max_lag..max_lag``. A zero
    denominator is replaced by 1.
    """
    n = min(x.size, y.size)
    x = x[:n]
    y = y[:n]
    max_lag = max(0, min(int(max_lag), n - 1))
    lags = np.arange(-max_lag, max_lag + 1)

    full = sp_signal.correlate(y, x, mode="full")
    numer = full[lags + (n - 1)]

    cx = np.concatenate(([0.0], np.cumsum(x * x)))
    cy = np.concatenate(([0.0], np.cumsum(y * y)))
    pos = lags >= 0
    energy_x = np.where(pos, cx[n - np.abs(lags)], cx[n] - cx[np.abs(lags)])
    energy_y = np.where(pos, cy[n] - cy[np.abs(lags)], cy[n - np.abs(lags)])
    denom = np.sqrt(np.maximum(energy_x * energy_y, 0.0))
    denom[denom == 0] = 1.0
    return lags, numer / denom


def estimate_delay(t, x, y, selection=None, max_lag_seconds: Optional[float] = None) -> DelayEstimate:
    """
    Estimate how far `y` lags `x` (positive when `y` is the later copy).

    Brute-force integer-lag normalized cross-correlation; the lag range is
    ``max_lag_seconds * fs`` when given, otherwise ``min(n-1, 2000)`` samples.
    """
    times = as_float_array(t)
    xs = as_float_array(x)
    ys = as_float_array(y)
    length = min(times.size, xs.size, ys.size)
    if length < 2:
        return DelayEstimate(warnings=("Insufficient data for delay estimation.",))

    start, end = _select(selection, length)
    t_sel = times[start : end + 1]
    x_sel = xs[start : end + 1]
    y_sel = ys[start : end + 1]
    keep = _finite_rows(t_sel, x_sel, y_sel)
    t_sel, x_sel, y_sel = t_sel[keep], x_sel[keep], y_sel[keep]
    if t_sel.size < 2:
        return DelayEstimate(warnings=("Selection too short for delay estimation.",))

    estimate = infer_sample_rate(t_sel)
    fs = estimate.fs
    if max_lag_seconds:
        max_lag = min(int(math.floor(max_lag_seconds * fs)), t_sel.size - 1)
    else:
        max_lag = min(t_sel.size - 1, DEFAULT_MAX_LAG_SAMPLES)

    lags, corr = normalized_cross_correlation(x_sel, y_sel, max_lag)
    best = int(np.argmax(corr))
    best_lag = int(lags[best])
    return DelayEstimate(
        delay=best_lag / fs,
        correlation=float(corr[best]),
        lag_samples=best_lag,
        warnings=tuple(estimate.warnings),
    )


def _segment_bounds(length: int, segments: int) -> list:
    """50%-overlapping segments covering `length` samples."""
    if segments <= 1:
        return [(0, length)]
    seg_len = int(2 * length // (segments + 1))
    if seg_len < 2:
        return [(0, length)]
    hop = max(1, seg_len // 2)
    return [(i * hop, i * hop + seg_len) for i in range(segments) if i * hop + seg_len <= length]


def compute_transfer_function(input_signal, output_signal, time, options=None) -> TransferFunction:
    """
    Transfer function H(f) = Y/X, phase difference and magnitude-squared coherence.

    With ``segments=1`` the estimate comes from one spectrum per channel and
    the coherence is trivially close to 1 wherever both spectra are non-zero.
    With more segments the cross and auto spectra are averaged over
    50%-overlapping segments before forming H and the coherence.
    """
    opts = TransferOptions.coerce(options)
    opts.validate()
    xs = as_float_array(input_signal)
    ys = as_float_array(output_signal)
    times = as_float_array(time)
    empty = np.zeros(0, dtype=np.float64)
    length = min(xs.size, ys.size, times.size)
    if length == 0:
        return TransferFunction(empty, empty, empty, empty, ("Missing input/output data.",), {})

    start, end = _select(opts.selection, length)
    x_sel = xs[start : end + 1]
    y_sel = ys[start : end + 1]
    t_sel = times[start : end + 1]
    keep = _finite_rows(t_sel, x_sel, y_sel)
    x_sel, y_sel, t_sel = x_sel[keep], y_sel[keep], t_sel[keep]

    spec_opts = opts.spectrum_options()
    warnings: list = []
    pxx = pyy = pxy = None
    lin_x = lin_y = None
    freq = empty
    fs = None
    used = 0
    for seg_start, seg_end in _segment_bounds(x_sel.size, int(opts.segments)):
        in_spec = compute_spectrum(x_sel[seg_start:seg_end], t_sel[seg_start:seg_end], spec_opts)
        out_spec = compute_spectrum(y_sel[seg_start:seg_end], t_sel[seg_start:seg_end], spec_opts)
        for message in in_spec.warnings + out_spec.warnings:
            if message not in warnings:
                warnings.append(message)
        n = min(in_spec.freq.size, out_spec.freq.size)
        if n == 0:
            continue
        fx = in_spec.re[:n] + 1j * in_spec.im[:n]
        fy = out_spec.re[:n] + 1j * out_spec.im[:n]
        if pxx is None:
            freq = in_spec.freq[:n].copy()
            fs = in_spec.meta.fs or out_spec.meta.fs
            pxx = np.zeros(n)
            pyy = np.zeros(n)
            pxy = np.zeros(n, dtype=np.complex128)
            lin_x = in_spec.linear_magnitude[:n].copy()
            lin_y = out_spec.linear_magnitude[:n].copy()
        pxx += np.abs(fx) ** 2
        pyy += np.abs(fy) ** 2
        pxy += fy * np.conj(fx)
        used += 1

    if pxx is None:
        return TransferFunction(empty, empty, empty, empty, tuple(warnings), {})

    if used == 1:
        magnitude_db = 20.0 * np.log10(np.maximum(lin_y, MAGNITUDE_FLOOR) / np.maximum(lin_x, MAGNITUDE_FLOOR))
    else:
        logger.debug("Averaged transfer function over %d segments", used)
        gain = np.abs(pxy) / np.maximum(pxx, MAGNITUDE_FLOOR**2)
        magnitude_db = 20.0 * np.log10(np.maximum(gain, MAGNITUDE_FLOOR))
    phase_deg = wrap_phase_degrees(np.degrees(np.angle(pxy)))

    valid = (pxx > 0) & (pyy > 0)
    coherence = np.zeros_like(pxx)
    coherence[valid] = np.minimum(1.0, np.abs(pxy[valid]) ** 2 / (pxx[valid] * pyy[valid] + COHERENCE_EPS))

    return TransferFunction(
        freq=freq,
        magnitude_db=magnitude_db,
        phase_deg=phase_deg,
        coherence=coherence,
        warnings=tuple(warnings),
        meta={"fs": fs, "segments": used},
    )


__all__ = [
    "DelayEstimate",
    "TransferFunction",
    "TransferOptions",
    "normalized_cross_correlation",
    "wrap_phase_degrees",
    "estimate_delay",
    "compute_transfer_function",
]
