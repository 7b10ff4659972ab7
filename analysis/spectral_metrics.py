"""Spectral figures of merit computed from a one-sided linear-magnitude spectrum."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import List, Mapping, Optional, Tuple

import numpy as np

from core.spectral import SpectrumOptions, compute_spectrum
from shared.cache import LRUCache
from shared.models import Spectrum, as_float_array

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Peak:
    freq: float
    magnitude: float
    index: int


@dataclass(frozen=True)
class Harmonic:
    order: int
    freq: float
    magnitude: float
    index: int


@dataclass(frozen=True)
class Spur:
    freq: Optional[float] = None
    magnitude: Optional[float] = None


@dataclass(frozen=True)
class SpectralSummaryOptions:
    spectrum: SpectrumOptions = field(default_factory=SpectrumOptions)
    max_peaks: int = 5
    prominence: float = 0.01
    fundamental_hz: Optional[float] = None
    harmonic_count: int = 5
    bandwidth_hz: Optional[float] = None
    band_start_hz: float = 0.0
    band_end_hz: Optional[float] = None

    def validate(self) -> None:
        self.spectrum.validate()
        if int(self.max_peaks) < 1:
            raise ValueError("max_peaks must be >= 1")
        if int(self.harmonic_count) < 1:
            raise ValueError("harmonic_count must be >= 1")
        if not (math.isfinite(self.prominence) and self.prominence >= 0):
            raise ValueError("prominence must be a non-negative fraction")

    @classmethod
    def coerce(cls, value) -> "SpectralSummaryOptions":
        if value is None:
            return cls()
        if isinstance(value, SpectralSummaryOptions):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot interpret {type(value).__name__} as SpectralSummaryOptions")
        own = {f.name for f in fields(cls)} - {"spectrum"}
        params = {k: v for k, v in value.items() if k in own}
        spectrum_opts = value.get("spectrum")
        if spectrum_opts is None:
            spectrum_opts = {k: v for k, v in value.items() if k in SpectrumOptions.__dataclass_fields__}
        params["spectrum"] = SpectrumOptions.coerce(spectrum_opts)
        return cls(**params)


@dataclass(frozen=True)
class SpectralSummary:
    spectrum: Spectrum
    peaks: Tuple[Peak, ...]
    harmonics: Tuple[Harmonic, ...]
    thd: Optional[float]
    snr: Optional[float]
    spur: Spur
    bandpower: float
    fundamental_hz: Optional[float]
    warnings: Tuple[str, ...] = ()


def _clean(mag) -> np.ndarray:
    arr = as_float_array(mag)
    return np.where(np.isfinite(arr), arr, 0.0)


def bin_widths(freq: np.ndarray) -> np.ndarray:
    """Width of each bin measured back to the previous bin (bin 0 uses the next one)."""
    if freq.size == 0:
        return np.zeros(0, dtype=np.float64)
    if freq.size == 1:
        return np.zeros(1, dtype=np.float64)
    widths = np.empty_like(freq)
    widths[1:] = np.diff(freq)
    widths[0] = freq[1] - freq[0]
    return np.maximum(widths, 0.0)


def integrate_band(freq, power, f1: float = 0.0, f2: float = math.inf) -> float:
    freqs = as_float_array(freq)
    pwr = as_float_array(power)
    n = min(freqs.size, pwr.size)
    if n == 0:
        return 0.0
    freqs = freqs[:n]
    pwr = pwr[:n]
    in_band = (freqs >= f1) & (freqs <= f2)
    return float(np.sum(pwr[in_band] * bin_widths(freqs)[in_band]))


def nearest_bin(freq, target: Optional[float]) -> int:
    freqs = as_float_array(freq)
    if freqs.size == 0 or target is None or not math.isfinite(target):
        return -1
    return int(np.argmin(np.abs(freqs - target)))


def compute_peaks(freq, mag, *, max_peaks: int = 5, prominence: float = 0.01) -> List[Peak]:
    """Local maxima whose smaller neighbour drop is at least ``prominence * max(mag)``."""
    freqs = as_float_array(freq)
    mags = _clean(mag)
    if freqs.size == 0 or mags.size < 3:
        return []
    min_prom = max(float(np.max(mags)), 0.0) * (prominence or 0.0)
    centre = mags[1:-1]
    left = centre - mags[:-2]
    right = centre - mags[2:]
    is_peak = (left >= 0) & (right >= 0) & (np.minimum(left, right) >= min_prom)
    idx = np.flatnonzero(is_peak) + 1
    idx = idx[idx < freqs.size]
    # Stable sort so equal magnitudes keep ascending frequency order.
    order = idx[np.argsort(-mags[idx], kind="stable")][: max(0, int(max_peaks))]
    return [Peak(float(freqs[i]), float(mags[i]), int(i)) for i in order]


def compute_harmonics(freq, mag, fundamental_hz: Optional[float], count: int = 5) -> List[Harmonic]:
    if fundamental_hz is None or not math.isfinite(fundamental_hz) or fundamental_hz <= 0:
        return []
    freqs = as_float_array(freq)
    mags = _clean(mag)
    if freqs.size == 0 or mags.size == 0:
        return []
    harmonics = []
    for order in range(1, int(count) + 1):
        index = nearest_bin(freqs, fundamental_hz * order)
        if 0 <= index < mags.size:
            harmonics.append(Harmonic(order, float(freqs[index]), float(mags[index]), index))
    return harmonics


def thd(freq, mag, fundamental_hz: Optional[float], harmonic_count: int = 5) -> Optional[float]:
    harmonics = compute_harmonics(freq, mag, fundamental_hz, harmonic_count)
    fundamental = next((h for h in harmonics if h.order == 1), None)
    if fundamental is None or not fundamental.magnitude:
        return None
    distortion = sum(h.magnitude * h.magnitude for h in harmonics if h.order > 1)
    return math.sqrt(distortion) / fundamental.magnitude


def snr(freq, mag, fundamental_hz: Optional[float], bandwidth_hz: Optional[float] = None) -> Optional[float]:
    """
    Signal-to-noise power ratio (linear).

    The signal term is the raw power of the fundamental's bin; the band total
    is integrated over bin width. Returns ``None`` when no noise power remains.
    """
    freqs = as_float_array(freq)
    power = _clean(mag) ** 2
    n = min(freqs.size, power.size)
    if n == 0:
        return None
    freqs = freqs[:n]
    power = power[:n]
    upper = bandwidth_hz if bandwidth_hz else math.inf
    total = integrate_band(freqs, power, 0.0, upper)
    index = nearest_bin(freqs, fundamental_hz)
    if index < 0:
        return None
    signal_power = float(power[index])
    noise = max(total - signal_power, 0.0)
    if noise <= 0:
        return None
    return signal_power / noise


def bandpower(freq, mag, f1: float = 0.0, f2: float = math.inf) -> float:
    return integrate_band(freq, _clean(mag) ** 2, f1, f2)


def spur(freq, mag, fundamental_hz: Optional[float], harmonic_count: int = 5) -> Spur:
    """Largest bin outside the fundamental and its harmonics."""
    freqs = as_float_array(freq)
    mags = _clean(mag)
    excluded = {h.index for h in compute_harmonics(freqs, mags, fundamental_hz, harmonic_count)}
    best = Spur(None, 0.0)
    for i in range(min(freqs.size, mags.size)):
        if i in excluded:
            continue
        if mags[i] > best.magnitude:
            best = Spur(float(freqs[i]), float(mags[i]))
    return best


def summarize_from_spectrum(spectrum: Optional[Spectrum], options=None) -> SpectralSummary:
    opts = SpectralSummaryOptions.coerce(options)
    if spectrum is None:
        empty = np.zeros(0, dtype=np.float64)
        spectrum = Spectrum(empty, empty, empty, empty, empty, empty)
    freq = spectrum.freq
    mag = spectrum.linear_magnitude
    nyquist = spectrum.meta.nyquist or None

    peaks = compute_peaks(freq, mag, max_peaks=opts.max_peaks, prominence=opts.prominence)
    if opts.fundamental_hz is not None and math.isfinite(opts.fundamental_hz) and opts.fundamental_hz > 0:
        fundamental = float(opts.fundamental_hz)
    else:
        fundamental = peaks[0].freq if peaks and peaks[0].freq > 0 else None

    harmonics = compute_harmonics(freq, mag, fundamental, opts.harmonic_count)
    if fundamental is not None:
        thd_value = thd(freq, mag, fundamental, opts.harmonic_count)
        snr_value = snr(freq, mag, fundamental, opts.bandwidth_hz or nyquist)
        spur_value = spur(freq, mag, fundamental, opts.harmonic_count)
    else:
        logger.debug("No fundamental available; THD/SNR/spur left undefined")
        thd_value = snr_value = None
        spur_value = Spur()
    band_end = opts.band_end_hz or nyquist or math.inf
    power = bandpower(freq, mag, opts.band_start_hz or 0.0, band_end)

    return SpectralSummary(
        spectrum=spectrum,
        peaks=tuple(peaks),
        harmonics=tuple(harmonics),
        thd=thd_value,
        snr=snr_value,
        spur=spur_value,
        bandpower=power,
        fundamental_hz=fundamental,
        warnings=tuple(spectrum.warnings),
    )


def summarize(signal, time=None, options=None, *, cache: Optional[LRUCache] = None) -> SpectralSummary:
    """Compute a spectrum of `signal` and report peaks, harmonics, THD, SNR, spur and band power."""
    opts = SpectralSummaryOptions.coerce(options)
    opts.validate()
    spectrum = compute_spectrum(signal, time, opts.spectrum, cache=cache)
    return summarize_from_spectrum(spectrum, opts)


__all__ = [
    "Peak",
    "Harmonic",
    "Spur",
    "SpectralSummary",
    "SpectralSummaryOptions",
    "bin_widths",
    "integrate_band",
    "nearest_bin",
    "compute_peaks",
    "compute_harmonics",
    "thd",
    "snr",
    "bandpower",
    "spur",
    "summarize",
    "summarize_from_spectrum",
]
