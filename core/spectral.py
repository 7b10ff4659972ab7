"""Spectral core: radix-2 FFT, window functions and spectrum assembly.

This module provides the frequency-domain foundation shared by the filter
engine, spectral metrics, cross-channel analysis and spectrograms:
- forward/inverse: iterative Cooley-Tukey transform on power-of-two lengths
- get_window: named windows with coherent gain and ENBW
- apply_detrend: mean or least-squares line removal
- infer_sample_rate: robust sample-rate estimate from a (possibly jittery) timebase
- compute_spectrum: selection -> detrend -> window -> pad -> FFT -> magnitude/phase
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import signal

from shared.cache import LRUCache, fingerprint
from shared.models import Selection, Spectrum, SpectrumMeta, WindowResult, as_float_array, slice_series

logger = logging.getLogger(__name__)

MAGNITUDE_EPS = 1e-9
NONUNIFORM_CV_LIMIT = 0.05
ZERO_PAD_MODES = ("none", "nextPow2", "factor")
DETREND_MODES = ("none", "removeMean", "removeLinear", "linear")
WINDOW_TYPES = ("rectangular", "hann", "hamming", "blackman", "blackman-harris", "flattop", "kaiser")


@dataclass(frozen=True)
class FFTResult:
    re: np.ndarray
    im: np.ndarray
    length: int


@dataclass(frozen=True)
class SampleRateEstimate:
    fs: float
    median_dt: Optional[float]
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SpectrumOptions:
    """Settings for :func:`compute_spectrum`."""

    selection: Optional[Selection] = None
    window_type: str = "hann"
    detrend: str = "removeMean"
    zero_pad_mode: str = "nextPow2"
    zero_pad_factor: float = 1.0
    kaiser_beta: float = 6.0
    cache_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.selection is not None and not isinstance(self.selection, Selection):
            object.__setattr__(self, "selection", Selection.coerce(self.selection))

    def validate(self) -> None:
        if self.window_type not in WINDOW_TYPES:
            raise ValueError(f"window_type must be one of {WINDOW_TYPES}, got {self.window_type!r}")
        if self.detrend not in DETREND_MODES:
            raise ValueError(f"detrend must be one of {DETREND_MODES}, got {self.detrend!r}")
        if self.zero_pad_mode not in ZERO_PAD_MODES:
            raise ValueError(f"zero_pad_mode must be one of {ZERO_PAD_MODES}, got {self.zero_pad_mode!r}")
        if not (math.isfinite(self.zero_pad_factor) and self.zero_pad_factor > 0):
            raise ValueError("zero_pad_factor must be a positive finite number")

    def key(self) -> Tuple[Any, ...]:
        sel = self.selection.key() if self.selection is not None else (None, None)
        return (
            self.cache_key or "default",
            sel,
            self.window_type,
            self.detrend,
            self.zero_pad_mode,
            float(self.zero_pad_factor),
            float(self.kaiser_beta),
        )

    @classmethod
    def coerce(cls, value) -> "SpectrumOptions":
        if value is None:
            return cls()
        if isinstance(value, SpectrumOptions):
            return value
        if isinstance(value, Mapping):
            params = {k: v for k, v in value.items() if k in cls.__dataclass_fields__}
            return cls(**params)
        raise TypeError(f"cannot interpret {type(value).__name__} as SpectrumOptions")


def next_power_of_two(n) -> int:
    if n is None:
        return 1
    try:
        value = float(n)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(value) or value <= 1:
        return 1
    return 1 << (int(math.ceil(value)) - 1).bit_length()


def _is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def _bit_reverse_indices(n: int) -> np.ndarray:
    bits = n.bit_length() - 1
    idx = np.arange(n, dtype=np.int64)
    rev = np.zeros(n, dtype=np.int64)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return rev


def _transform(re: np.ndarray, im: np.ndarray) -> None:
    """In-place iterative radix-2 Cooley-Tukey transform (length must be a power of two)."""
    n = re.size
    if n <= 1:
        return
    rev = _bit_reverse_indices(n)
    re[:] = re[rev]
    im[:] = im[rev]

    # Twiddles for the last stage; earlier stages stride through the same table.
    half = n // 2
    angles = -2.0 * math.pi * np.arange(half, dtype=np.float64) / n
    tw_re = np.cos(angles)
    tw_im = np.sin(angles)

    step = 1
    while step < n:
        jump = step << 1
        stride = half // step
        w_re = tw_re[::stride][:step]
        w_im = tw_im[::stride][:step]

        re_v = re.reshape(-1, jump)
        im_v = im.reshape(-1, jump)
        a_re = re_v[:, :step]
        a_im = im_v[:, :step]
        b_re = re_v[:, step:]
        b_im = im_v[:, step:]

        prod_re = w_re * b_re - w_im * b_im
        prod_im = w_re * b_im + w_im * b_re
        top_re = a_re + prod_re
        top_im = a_im + prod_im
        re_v[:, step:] = a_re - prod_re
        im_v[:, step:] = a_im - prod_im
        re_v[:, :step] = top_re
        im_v[:, :step] = top_im
        step = jump


def _padded_length(source_length: int, zero_pad_mode: str, zero_pad_factor: float) -> int:
    if zero_pad_mode == "none":
        return source_length
    if zero_pad_mode == "factor" and math.isfinite(zero_pad_factor) and zero_pad_factor > 1:
        target = max(source_length, int(math.ceil(source_length * zero_pad_factor)))
        return next_power_of_two(target)
    return next_power_of_two(source_length)


def forward(data, zero_pad_mode: str = "nextPow2", zero_pad_factor: float = 1.0) -> FFTResult:
    """
    Forward FFT of real `data`, zero-padded according to `zero_pad_mode`.

    Returns
    -------
    FFTResult
        ``re``/``im`` of length N plus ``length`` (N). Empty input yields
        zero-length arrays.
    """
    arr = as_float_array(data)
    if arr.size == 0:
        empty = np.zeros(0, dtype=np.float64)
        return FFTResult(empty, empty.copy(), 0)

    length = max(1, _padded_length(arr.size, zero_pad_mode, zero_pad_factor))
    re = np.zeros(length, dtype=np.float64)
    im = np.zeros(length, dtype=np.float64)
    re[: arr.size] = arr

    if _is_power_of_two(length):
        _transform(re, im)
    else:
        logger.debug("Unpadded length %d is not a power of two; using mixed-radix FFT", length)
        spectrum = np.fft.fft(re)
        re = spectrum.real.copy()
        im = spectrum.imag.copy()
    return FFTResult(re, im, length)


def inverse(re, im, original_length: int) -> np.ndarray:
    """Inverse FFT returning the real part truncated to `original_length`."""
    re_arr = np.array(as_float_array(re), copy=True)
    im_arr = np.array(as_float_array(im), copy=True)
    if re_arr.size != im_arr.size:
        raise ValueError("re and im must have the same length")
    n = re_arr.size
    if n == 0:
        return np.zeros(0, dtype=np.float64)

    im_arr = -im_arr
    if _is_power_of_two(n):
        _transform(re_arr, im_arr)
    else:
        spectrum = np.fft.fft(re_arr + 1j * im_arr)
        re_arr = spectrum.real.copy()
    count = max(0, min(int(original_length), n))
    return re_arr[:count] / n


def compute_freq_axis(length: int, fs: float) -> Tuple[np.ndarray, float]:
    n = max(1, int(length))
    half = n // 2
    delta = float(fs) / n
    return np.arange(half + 1, dtype=np.float64) * delta, delta


def get_window(window_type: str = "hann", length: int = 0, *, beta: float = 6.0) -> WindowResult:
    n = max(1, int(length))
    if n <= 1:
        return WindowResult(np.ones(1), 1.0, 1.0)

    idx = np.arange(n, dtype=np.float64)
    phase = 2.0 * math.pi * idx / (n - 1)
    if window_type == "rectangular":
        return WindowResult(np.ones(n), 1.0, 1.0)
    if window_type == "hann":
        window = 0.5 * (1.0 - np.cos(phase))
    elif window_type == "hamming":
        window = 0.54 - 0.46 * np.cos(phase)
    elif window_type == "blackman":
        window = 0.42 - 0.5 * np.cos(phase) + 0.08 * np.cos(2 * phase)
    elif window_type == "blackman-harris":
        window = 0.35875 - 0.48829 * np.cos(phase) + 0.14128 * np.cos(2 * phase) - 0.01168 * np.cos(3 * phase)
    elif window_type == "flattop":
        window = (
            1.0
            - 1.93 * np.cos(phase)
            + 1.29 * np.cos(2 * phase)
            - 0.388 * np.cos(3 * phase)
            + 0.0322 * np.cos(4 * phase)
        )
    elif window_type == "kaiser":
        window = np.kaiser(n, float(beta) if math.isfinite(beta) else 6.0)
    else:
        raise ValueError(f"Unknown window type {window_type!r}; expected one of {WINDOW_TYPES}")

    total = float(np.sum(window))
    coherent_gain = total / n
    # Two-point cosine-sum windows can sum to rounding noise around zero.
    if abs(coherent_gain) < 1e-12:
        return WindowResult(window, 0.0, 1.0)
    enbw = n * float(np.sum(window * window)) / (total * total)
    return WindowResult(window, coherent_gain, enbw)


def apply_window(segment, window) -> np.ndarray:
    arr = as_float_array(segment)
    if window is None:
        return arr.copy()
    win = np.asarray(window, dtype=np.float64)
    if win.size == 0 or win.size != arr.size:
        return arr.copy()
    return arr * win


def apply_detrend(segment, mode: str = "none") -> np.ndarray:
    arr = as_float_array(segment)
    if arr.size == 0 or mode == "none":
        return arr.copy()
    if mode == "removeMean":
        return arr - float(np.mean(arr))
    if mode in ("removeLinear", "linear"):
        if arr.size < 2:
            return arr - float(np.mean(arr))
        return signal.detrend(arr, type="linear")
    raise ValueError(f"Unknown detrend mode {mode!r}; expected one of {DETREND_MODES}")


def infer_sample_rate(t) -> SampleRateEstimate:
    times = as_float_array(t)
    if times.size < 2:
        return SampleRateEstimate(1.0, None, ("Insufficient time samples to infer sampling rate.",))
    deltas = np.abs(np.diff(times))
    deltas = deltas[np.isfinite(deltas)]
    if deltas.size == 0:
        return SampleRateEstimate(1.0, None, ("Unable to infer sampling rate; using 1 Hz.",))

    median_dt = float(np.median(deltas))
    if median_dt <= 0:
        return SampleRateEstimate(1.0, median_dt, ("Unable to infer sampling rate; using 1 Hz.",))
    warnings = []
    mean_dt = float(np.mean(deltas))
    if mean_dt > 0 and deltas.size > 1:
        cv = float(np.std(deltas)) / mean_dt
        if cv > NONUNIFORM_CV_LIMIT:
            warnings.append("Non-uniform sampling detected; FFT metrics may be approximate.")
    return SampleRateEstimate(1.0 / median_dt, median_dt, tuple(warnings))


def _amplitude_scale(n: int, coherent_gain: float, signal_length: Optional[int]) -> float:
    reference = signal_length if signal_length else n
    gain = coherent_gain if coherent_gain else 1.0
    return 2.0 / (reference * gain)


def get_linear_magnitude(
    re,
    im,
    *,
    coherent_gain: float = 1.0,
    length_override: Optional[int] = None,
    signal_length: Optional[int] = None,
) -> np.ndarray:
    re_arr = as_float_array(re)
    im_arr = as_float_array(im)
    n = int(length_override or re_arr.size)
    if n <= 0 or re_arr.size == 0:
        return np.zeros(0, dtype=np.float64)
    half = n // 2
    bins = min(half + 1, re_arr.size)
    mags = np.hypot(re_arr[:bins], im_arr[:bins]) * _amplitude_scale(n, coherent_gain, signal_length)
    mags[0] *= 0.5
    if n % 2 == 0 and half < bins:
        mags[half] *= 0.5
    return mags


def get_magnitude_db(
    re,
    im,
    *,
    coherent_gain: float = 1.0,
    length_override: Optional[int] = None,
    signal_length: Optional[int] = None,
) -> np.ndarray:
    linear = get_linear_magnitude(
        re, im, coherent_gain=coherent_gain, length_override=length_override, signal_length=signal_length
    )
    return 20.0 * np.log10(linear + MAGNITUDE_EPS)


def get_phase_degrees(re, im, *, length_override: Optional[int] = None) -> np.ndarray:
    re_arr = as_float_array(re)
    im_arr = as_float_array(im)
    n = int(length_override or re_arr.size)
    if n <= 0 or re_arr.size == 0:
        return np.zeros(0, dtype=np.float64)
    bins = min(n // 2 + 1, re_arr.size)
    return np.degrees(np.arctan2(im_arr[:bins], re_arr[:bins]))


def _empty_spectrum(warnings: Sequence[str], length: int) -> Spectrum:
    empty = np.zeros(0, dtype=np.float64)
    return Spectrum(
        freq=empty,
        re=empty,
        im=empty,
        magnitude=empty,
        linear_magnitude=empty,
        phase=empty,
        warnings=tuple(warnings),
        meta=SpectrumMeta(),
        length=length,
    )


def compute_spectrum(
    y,
    t=None,
    options: SpectrumOptions | Mapping[str, Any] | None = None,
    *,
    cache: Optional[LRUCache] = None,
) -> Spectrum:
    """
    Compute the one-sided spectrum of `y` sampled at times `t`.

    Parameters
    ----------
    y:
        Sample values.
    t:
        Sample times in seconds. When omitted the sample rate defaults to 1 Hz
        and a warning is attached.
    options:
        :class:`SpectrumOptions` (or an equivalent mapping).
    cache:
        Optional :class:`LRUCache`; identical calls return the cached Spectrum.

    Returns
    -------
    Spectrum
        Degenerate input (fewer than two finite samples) gives empty arrays and
        a warning.
    """
    opts = SpectrumOptions.coerce(options)
    opts.validate()
    values = as_float_array(y)
    times = as_float_array(t) if t is not None else None

    key = None
    if cache is not None:
        key = ("spectrum", opts.key(), fingerprint(values, times))
        cached = cache.get(key)
        if cached is not None:
            return cached

    result = _compute_spectrum(values, times, opts)
    if cache is not None:
        cache.put(key, result)
    return result


def _compute_spectrum(values: np.ndarray, times: Optional[np.ndarray], opts: SpectrumOptions) -> Spectrum:
    warnings = []
    time_axis = times if times is not None and times.size else np.arange(values.size, dtype=np.float64)
    series = slice_series(time_axis, values, opts.selection)
    if series.dropped:
        warnings.append(f"Dropped {series.dropped} non-finite samples before FFT.")
    if len(series) < 2:
        warnings.append("Selection too short for FFT.")
        return _empty_spectrum(warnings, len(series))

    if times is not None and times.size:
        estimate = infer_sample_rate(series.t)
    else:
        estimate = SampleRateEstimate(1.0, None, ("No time axis supplied; assuming 1 Hz sampling.",))
    warnings.extend(estimate.warnings)

    detrended = apply_detrend(series.y, opts.detrend)
    win = get_window(opts.window_type, detrended.size, beta=opts.kaiser_beta)
    windowed = apply_window(detrended, win.window)

    fft = forward(windowed, opts.zero_pad_mode, opts.zero_pad_factor)
    freq, delta_f = compute_freq_axis(fft.length, estimate.fs)
    scale_kwargs = dict(coherent_gain=win.coherent_gain, length_override=fft.length, signal_length=windowed.size)
    linear = get_linear_magnitude(fft.re, fft.im, **scale_kwargs)
    magnitude = 20.0 * np.log10(linear + MAGNITUDE_EPS)
    phase = get_phase_degrees(fft.re, fft.im, length_override=fft.length)

    meta = SpectrumMeta(
        fs=estimate.fs,
        delta_f=delta_f,
        nyquist=estimate.fs / 2.0,
        coherent_gain=win.coherent_gain,
        enbw=win.enbw,
        median_dt=estimate.median_dt,
    )
    return Spectrum(
        freq=freq,
        re=fft.re,
        im=fft.im,
        magnitude=magnitude,
        linear_magnitude=linear,
        phase=phase,
        warnings=tuple(warnings),
        meta=meta,
        length=fft.length,
    )


__all__ = [
    "FFTResult",
    "SampleRateEstimate",
    "SpectrumOptions",
    "next_power_of_two",
    "forward",
    "inverse",
    "compute_freq_axis",
    "get_window",
    "apply_window",
    "apply_detrend",
    "infer_sample_rate",
    "get_linear_magnitude",
    "get_magnitude_db",
    "get_phase_degrees",
    "compute_spectrum",
    "WINDOW_TYPES",
]
