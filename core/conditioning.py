from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

import numpy as np
from scipy import ndimage, signal

from shared.models import as_float_array

from . import spectral

logger = logging.getLogger(__name__)

MIN_CUTOFF_HZ = 1e-3
MAX_SG_ITERATIONS = 16
SG_CONDITION_LIMIT = 1e12


class FilterConfigError(ValueError):
    """Raised when a pipeline step is structurally invalid."""


class SavitzkyGolayConfigError(FilterConfigError):
    """Savitzky-Golay window/order combination cannot be fitted."""


class IllConditionedFilterError(FilterConfigError):
    """Filter design produced a singular system or non-finite coefficients."""


# ----------------------------
# Pipeline steps
# ----------------------------

@dataclass(frozen=True)
class PipelineStep:
    """Common fields of every pipeline step."""

    id: str = ""
    enabled: bool = True

    type: ClassVar[str] = ""
    frequency_domain: ClassVar[bool] = False

    def validate(self) -> None:
        return

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["type"] = self.type
        return data


@dataclass(frozen=True)
class NullFilterStep(PipelineStep):
    type: ClassVar[str] = "nullFilter"


@dataclass(frozen=True)
class MovingAverageStep(PipelineStep):
    window_size: int = 5

    type: ClassVar[str] = "movingAverage"

    def validate(self) -> None:
        if int(self.window_size) < 1:
            raise FilterConfigError("movingAverage window_size must be >= 1")


@dataclass(frozen=True)
class MedianStep(PipelineStep):
    window_size: int = 5

    type: ClassVar[str] = "median"

    def validate(self) -> None:
        if int(self.window_size) < 1:
            raise FilterConfigError("median window_size must be >= 1")


@dataclass(frozen=True)
class IIRStep(PipelineStep):
    alpha: float = 0.1

    type: ClassVar[str] = "iir"

    def validate(self) -> None:
        if not (0 < self.alpha <= 1):
            raise FilterConfigError("iir alpha must be in (0, 1]")


@dataclass(frozen=True)
class SavitzkyGolayStep(PipelineStep):
    window_size: int = 20
    poly_order: int = 2
    iterations: int = 1

    type: ClassVar[str] = "savitzkyGolay"

    def validate(self) -> None:
        _validate_sg(self.window_size, self.poly_order)


@dataclass(frozen=True)
class GaussianStep(PipelineStep):
    sigma: float = 1.0
    kernel_size: int = 5

    type: ClassVar[str] = "gaussian"

    def validate(self) -> None:
        if not (math.isfinite(self.sigma) and self.sigma > 0):
            raise FilterConfigError("gaussian sigma must be positive")
        if int(self.kernel_size) < 1:
            raise FilterConfigError("gaussian kernel_size must be >= 1")


@dataclass(frozen=True)
class StartStopNormStep(PipelineStep):
    start_length: Optional[int] = None
    end_length: Optional[int] = None
    decay_length: Optional[int] = None
    start_offset: float = 0.0
    auto_offset: bool = False
    auto_offset_points: int = 100
    apply_start: bool = True
    apply_end: bool = True

    type: ClassVar[str] = "startStopNorm"

    @property
    def resolved_start(self) -> int:
        value = self.start_length if self.start_length is not None else self.decay_length
        return int(value or 0)

    @property
    def resolved_end(self) -> int:
        value = self.end_length if self.end_length is not None else self.decay_length
        return int(value or 0)


@dataclass(frozen=True)
class LowPassFFTStep(PipelineStep):
    cutoff_freq: float = 100e6
    slope: float = 12.0
    q_factor: float = 0.707

    type: ClassVar[str] = "lowPassFFT"
    frequency_domain: ClassVar[bool] = True


@dataclass(frozen=True)
class HighPassFFTStep(PipelineStep):
    cutoff_freq: float = 100e6
    slope: float = 12.0
    q_factor: float = 0.707

    type: ClassVar[str] = "highPassFFT"
    frequency_domain: ClassVar[bool] = True


@dataclass(frozen=True)
class NotchFFTStep(PipelineStep):
    center_freq: float = 100e6
    bandwidth: float = 1e6

    type: ClassVar[str] = "notchFFT"
    frequency_domain: ClassVar[bool] = True


STEP_TYPES: Dict[str, Type[PipelineStep]] = {
    cls.type: cls
    for cls in (
        NullFilterStep,
        MovingAverageStep,
        MedianStep,
        IIRStep,
        SavitzkyGolayStep,
        GaussianStep,
        StartStopNormStep,
        LowPassFFTStep,
        HighPassFFTStep,
        NotchFFTStep,
    )
}

# Host configs use camelCase keys; polyOrder etc. map onto the dataclass fields.
_KEY_ALIASES = {
    "windowSize": "window_size",
    "polyOrder": "poly_order",
    "kernelSize": "kernel_size",
    "startLength": "start_length",
    "endLength": "end_length",
    "decayLength": "decay_length",
    "startOffset": "start_offset",
    "autoOffset": "auto_offset",
    "autoOffsetPoints": "auto_offset_points",
    "applyStart": "apply_start",
    "applyEnd": "apply_end",
    "cutoffFreq": "cutoff_freq",
    "qFactor": "q_factor",
    "centerFreq": "center_freq",
}

StepLike = Union[PipelineStep, Mapping[str, Any]]


def step_from_dict(config: Mapping[str, Any]) -> PipelineStep:
    """Build a typed pipeline step from a host's plain dict."""
    step_type = config.get("type")
    cls = STEP_TYPES.get(step_type)
    if cls is None:
        raise FilterConfigError(f"Unknown pipeline step type {step_type!r}")
    names = {f.name for f in fields(cls)}
    params: Dict[str, Any] = {}
    for key, value in config.items():
        name = _KEY_ALIASES.get(key, key)
        if name in names and value is not None:
            params[name] = value
    if "id" in params:
        params["id"] = str(params["id"])
    return cls(**params)


def coerce_step(step: StepLike) -> PipelineStep:
    if isinstance(step, PipelineStep):
        return step
    if isinstance(step, Mapping):
        return step_from_dict(step)
    raise FilterConfigError(f"Cannot interpret {type(step).__name__} as a pipeline step")


def coerce_pipeline(pipeline: Optional[Sequence[StepLike]]) -> List[PipelineStep]:
    return [coerce_step(step) for step in (pipeline or [])]


STEP_DEFAULTS: Dict[str, PipelineStep] = {
    "movingAverage": MovingAverageStep(window_size=5),
    "savitzkyGolay": SavitzkyGolayStep(window_size=20, poly_order=2, iterations=1),
    "median": MedianStep(window_size=5),
    "iir": IIRStep(alpha=0.1),
    "gaussian": GaussianStep(sigma=1.0, kernel_size=5),
    "startStopNorm": StartStopNormStep(start_length=50, end_length=50, auto_offset_points=200),
    "lowPassFFT": LowPassFFTStep(),
    "highPassFFT": HighPassFFTStep(),
    "notchFFT": NotchFFTStep(),
}

DEFAULT_PIPELINE: Tuple[PipelineStep, ...] = (
    StartStopNormStep(
        id="default-1",
        start_length=200,
        end_length=50,
        auto_offset=True,
        auto_offset_points=200,
        apply_start=True,
        apply_end=False,
    ),
    SavitzkyGolayStep(id="default-2", window_size=20, poly_order=2, iterations=1),
)


# ----------------------------
# Pipeline execution
# ----------------------------

def estimate_pipeline_fs(time) -> float:
    """Mean-delta sample rate over the first 100 intervals (1.0 when unavailable)."""
    times = as_float_array(time)
    if times.size < 2:
        return 1.0
    limit = min(100, times.size - 1)
    deltas = np.diff(times[: limit + 1])
    with np.errstate(invalid="ignore"):
        avg_dt = float(np.mean(deltas))
    if math.isfinite(avg_dt) and avg_dt > 0:
        return 1.0 / avg_dt
    return 1.0


def _fill_non_finite(data: np.ndarray) -> np.ndarray:
    finite = np.isfinite(data)
    if finite.all():
        return data
    if not finite.any():
        logger.debug("Pipeline input has no finite samples; substituting zeros")
        return np.zeros_like(data)
    idx = np.arange(data.size)
    logger.debug("Filling %d non-finite samples before filtering", int(data.size - finite.sum()))
    filled = data.copy()
    filled[~finite] = np.interp(idx[~finite], idx[finite], data[finite])
    return filled


def apply_pipeline(data, time, pipeline: Optional[Sequence[StepLike]]) -> np.ndarray:
    """
    Apply every enabled step of `pipeline` to `data`, in order.

    Parameters
    ----------
    data:
        Sample values. Non-finite samples are filled by linear interpolation
        so the output stays aligned with `time`.
    time:
        Sample times; the sample rate for FFT steps is estimated once from it.
    pipeline:
        Sequence of :class:`PipelineStep` objects or host dicts. An empty
        pipeline is treated as a single ``nullFilter`` step.

    Returns
    -------
    np.ndarray
        A new array; `data` is never modified.
    """
    values = as_float_array(data)
    if values.size == 0:
        return np.zeros(0, dtype=np.float64)

    steps = coerce_pipeline(pipeline) or [NullFilterStep(id="null-filter")]
    current = _fill_non_finite(values.copy())
    fs = estimate_pipeline_fs(time)

    for step in steps:
        if not step.enabled:
            continue
        current = apply_step(current, step, fs)
    return current


def apply_step(data: np.ndarray, step: PipelineStep, fs: float) -> np.ndarray:
    if isinstance(step, NullFilterStep):
        return np.array(data, copy=True)
    if isinstance(step, MovingAverageStep):
        return moving_average(data, step.window_size)
    if isinstance(step, SavitzkyGolayStep):
        return savitzky_golay(data, step.window_size, step.poly_order, iterations=step.iterations)
    if isinstance(step, MedianStep):
        return median_filter(data, step.window_size)
    if isinstance(step, IIRStep):
        return iir_low_pass(data, step.alpha)
    if isinstance(step, GaussianStep):
        return gaussian(data, step.sigma, step.kernel_size)
    if isinstance(step, StartStopNormStep):
        return start_stop_norm(data, step)
    if isinstance(step, LowPassFFTStep):
        return apply_fft_filter(data, fs, "lowpass", step)
    if isinstance(step, HighPassFFTStep):
        return apply_fft_filter(data, fs, "highpass", step)
    if isinstance(step, NotchFFTStep):
        return apply_fft_filter(data, fs, "notch", step)
    raise FilterConfigError(f"No handler for pipeline step {type(step).__name__}")


class SignalConditioner:
    """Holds a validated pipeline and applies it to successive series."""

    def __init__(self, pipeline: Optional[Sequence[StepLike]] = None) -> None:
        self._pipeline: List[PipelineStep] = []
        self.update_pipeline(pipeline or [])

    @property
    def pipeline(self) -> Tuple[PipelineStep, ...]:
        return tuple(self._pipeline)

    def update_pipeline(self, pipeline: Sequence[StepLike]) -> None:
        steps = coerce_pipeline(pipeline)
        for step in steps:
            if step.enabled:
                step.validate()
        self._pipeline = steps

    def any_enabled(self) -> bool:
        return any(step.enabled and not isinstance(step, NullFilterStep) for step in self._pipeline)

    def describe(self) -> List[Dict[str, object]]:
        return [step.to_dict() for step in self._pipeline]

    def process(self, data, time) -> np.ndarray:
        return apply_pipeline(data, time, self._pipeline)

    def transfer_function(self, fs: float, points: int = 512) -> np.ndarray:
        return calculate_transfer_function(self._pipeline, fs, points)


# ----------------------------
# Time-domain filters
# ----------------------------

def _odd_span(window_size: int) -> int:
    return 2 * (int(window_size) // 2) + 1


def get_reflected_value(data, index: int) -> float:
    """Sample at `index` with out-of-range indices mirrored off the nearest edge."""
    arr = np.asarray(data)
    length = arr.size
    if 0 <= index < length:
        return float(arr[index])
    if length == 1:
        return float(arr[0])
    period = 2 * (length - 1)
    folded = abs(index) % period
    if folded >= length:
        folded = period - folded
    return float(arr[folded])


def moving_average(data, window_size: int) -> np.ndarray:
    if int(window_size) < 1:
        raise FilterConfigError("movingAverage window_size must be >= 1")
    arr = as_float_array(data)
    if arr.size == 0:
        return arr.copy()
    span = _odd_span(window_size)
    kernel = np.full(span, 1.0 / span)
    return ndimage.correlate1d(arr, kernel, mode="mirror")


def median_filter(data, window_size: int) -> np.ndarray:
    if int(window_size) < 1:
        raise FilterConfigError("median window_size must be >= 1")
    arr = as_float_array(data)
    if arr.size == 0:
        return arr.copy()
    return ndimage.median_filter(arr, size=_odd_span(window_size), mode="mirror")


def iir_low_pass(data, alpha: float) -> np.ndarray:
    if not (0 < alpha <= 1):
        raise FilterConfigError("iir alpha must be in (0, 1]")
    arr = as_float_array(data)
    if arr.size == 0:
        return arr.copy()
    b = np.array([alpha], dtype=np.float64)
    a = np.array([1.0, alpha - 1.0], dtype=np.float64)
    zi = np.array([(1.0 - alpha) * arr[0]], dtype=np.float64)
    filtered, _ = signal.lfilter(b, a, arr, zi=zi)
    return filtered


def _validate_sg(window_size: int, order: int) -> int:
    window = int(window_size)
    order = int(order)
    if window % 2 == 0:
        window += 1
    if order < 0:
        raise SavitzkyGolayConfigError(f"Savitzky-Golay order must be >= 0, got {order}")
    if window < order + 2:
        raise SavitzkyGolayConfigError(
            f"Savitzky-Golay window ({window}) must be >= polynomial order + 2 ({order + 2})"
        )
    return window


def compute_sg_weights(half_width: int, order: int) -> np.ndarray:
    """
    Central-point least-squares weights for a window of ``2*half_width + 1``.

    Offsets are scaled to [-1, 1] before building the Vandermonde matrix; the
    constant-term row of ``(A^T A)^-1 A^T`` does not depend on that scaling.
    """
    offsets = np.arange(-half_width, half_width + 1, dtype=np.float64)
    if half_width > 0:
        offsets = offsets / half_width
    vander = np.vander(offsets, order + 1, increasing=True)
    normal = vander.T @ vander
    if not np.all(np.isfinite(normal)) or np.linalg.cond(normal) > SG_CONDITION_LIMIT:
        raise IllConditionedFilterError("Savitzky-Golay normal matrix is singular or ill-conditioned")
    try:
        coeffs = np.linalg.solve(normal, vander.T)
    except np.linalg.LinAlgError as exc:
        raise IllConditionedFilterError(f"Savitzky-Golay normal matrix is singular: {exc}") from exc
    weights = coeffs[0]
    if not np.all(np.isfinite(weights)):
        raise IllConditionedFilterError("Savitzky-Golay coefficients are not finite")
    return weights


def savitzky_golay(data, window_size: int, order: int, *, iterations: int = 1) -> np.ndarray:
    window = _validate_sg(window_size, order)
    weights = compute_sg_weights(window // 2, int(order))
    arr = as_float_array(data)
    if arr.size == 0:
        return arr.copy()
    passes = max(1, min(MAX_SG_ITERATIONS, int(iterations or 1)))
    result = arr
    for _ in range(passes):
        result = ndimage.correlate1d(result, weights, mode="mirror")
    return result


def compute_gaussian_kernel(sigma: float, size: int) -> np.ndarray:
    center = size // 2
    x = np.arange(size, dtype=np.float64) - center
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma))
    return kernel / float(np.sum(kernel))


def gaussian(data, sigma: float, kernel_size: int) -> np.ndarray:
    if not (math.isfinite(sigma) and sigma > 0):
        raise FilterConfigError("gaussian sigma must be positive")
    if int(kernel_size) < 1:
        raise FilterConfigError("gaussian kernel_size must be >= 1")
    arr = as_float_array(data)
    if arr.size == 0:
        return arr.copy()
    kernel = compute_gaussian_kernel(float(sigma), _odd_span(kernel_size))
    return ndimage.correlate1d(arr, kernel, mode="mirror")


def _fade_factors(length: int) -> np.ndarray:
    if length <= 0:
        return np.ones(0)
    if length == 1:
        return np.zeros(1)
    ratio = np.arange(length, dtype=np.float64) / (length - 1)
    return np.sin(ratio * (math.pi / 2.0))


def start_stop_norm(data, step: StartStopNormStep | Mapping[str, Any] | None = None) -> np.ndarray:
    """Subtract an offset then sine-taper the start and/or end of the record."""
    if step is None:
        step = StartStopNormStep()
    elif not isinstance(step, StartStopNormStep):
        step = step_from_dict({**step, "type": StartStopNormStep.type})
    arr = as_float_array(data)
    length = arr.size
    if length == 0:
        return arr.copy()

    start_len = min(max(0, step.resolved_start), length // 2) if step.apply_start else 0
    end_len = min(max(0, step.resolved_end), length // 2) if step.apply_end else 0
    if start_len <= 0 and end_len <= 0 and step.start_offset == 0 and not step.auto_offset:
        return arr.copy()

    if step.auto_offset:
        count = min(max(1, int(step.auto_offset_points or 1)), length)
        offset = float(np.mean(arr[:count]))
    else:
        offset = float(step.start_offset)

    tapered = arr - offset
    if start_len > 0:
        tapered[:start_len] *= _fade_factors(start_len)
    if end_len > 0:
        tapered[length - end_len :] *= _fade_factors(end_len)[::-1]
    return tapered


def apply_x_offset(data, offset: float = 0.0) -> np.ndarray:
    """Shift samples by ``round(offset)`` positions, holding the edge values."""
    arr = as_float_array(data)
    length = arr.size
    shift = int(round(offset or 0.0))
    if length == 0 or shift == 0:
        return arr.copy()
    source = np.arange(length) - shift
    return arr[np.clip(source, 0, length - 1)]


# ----------------------------
# Frequency-domain filters
# ----------------------------

def normalize_cutoff(value, fs: float, *, min_hz: float = MIN_CUTOFF_HZ) -> Optional[float]:
    """Clamp a frequency into ``[min_hz, fs/2]``; ``None`` for missing or non-finite input."""
    if value is None:
        return None
    try:
        freq = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(freq) or not math.isfinite(fs) or fs <= 0:
        return None
    nyquist = fs / 2.0
    return float(min(max(freq, min_hz), max(nyquist, min_hz)))


def _butterworth_order(slope) -> int:
    try:
        value = float(slope) if slope else 12.0
    except (TypeError, ValueError):
        value = 12.0
    if not math.isfinite(value):
        value = 12.0
    return max(1, int(round(value / 6.0)))


def fft_step_gain(freqs: np.ndarray, step: PipelineStep, fs: float) -> np.ndarray:
    """Linear magnitude mask of a single FFT step at `freqs`."""
    freqs = np.asarray(freqs, dtype=np.float64)
    gain = np.ones_like(freqs)
    if isinstance(step, NotchFFTStep):
        center = normalize_cutoff(step.center_freq, fs)
        if center is None:
            return gain
        try:
            bandwidth = float(step.bandwidth)
        except (TypeError, ValueError):
            return gain
        if not math.isfinite(bandwidth):
            return gain
        bandwidth = min(max(bandwidth, 0.0), fs / 2.0)
        in_band = (freqs >= center - bandwidth / 2.0) & (freqs <= center + bandwidth / 2.0)
        gain[in_band] = 0.0
        return gain

    if isinstance(step, (LowPassFFTStep, HighPassFFTStep)):
        cutoff = normalize_cutoff(step.cutoff_freq, fs)
        if cutoff is None:
            return gain
        # A zero low-pass cutoff passes everything; only high-pass uses the clamp.
        if isinstance(step, LowPassFFTStep) and float(step.cutoff_freq) <= 0:
            return gain
        order = _butterworth_order(step.slope)
        with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
            if isinstance(step, LowPassFFTStep):
                ratio = freqs / cutoff
            else:
                ratio = cutoff / freqs
            gain = 1.0 / np.sqrt(1.0 + np.power(ratio, 2 * order))
        dc = freqs == 0
        gain[dc] = 1.0 if isinstance(step, LowPassFFTStep) else 0.0
        gain[~np.isfinite(gain)] = 0.0
        return gain
    raise FilterConfigError(f"{type(step).__name__} is not a frequency-domain step")


_FFT_KINDS = {"lowpass": LowPassFFTStep, "highpass": HighPassFFTStep, "notch": NotchFFTStep}


def apply_fft_filter(data, fs: float, kind: str, config: PipelineStep | Mapping[str, Any]) -> np.ndarray:
    """Filter by masking the FFT of `data` and transforming back."""
    cls = _FFT_KINDS.get(kind)
    if cls is None:
        raise FilterConfigError(f"Unknown FFT filter kind {kind!r}")
    step = config if isinstance(config, cls) else step_from_dict({**dict(config), "type": cls.type})
    arr = as_float_array(data)
    length = arr.size
    if length == 0:
        return arr.copy()

    fft = spectral.forward(arr)
    n = fft.length
    half = n // 2
    freqs = np.arange(half + 1, dtype=np.float64) * (fs / n)
    gain = fft_step_gain(freqs, step, fs)

    re = fft.re.copy()
    im = fft.im.copy()
    re[: half + 1] *= gain
    im[: half + 1] *= gain
    if half > 1:
        mirror = n - np.arange(1, half)
        re[mirror] *= gain[1:half]
        im[mirror] *= gain[1:half]
    return spectral.inverse(re, im, length)


def calculate_transfer_function(pipeline: Optional[Sequence[StepLike]], fs: float, points: int) -> np.ndarray:
    """Combined linear gain of all enabled FFT steps at ``i * (fs/2) / points``."""
    points = max(0, int(points))
    transfer = np.ones(points, dtype=np.float64)
    if points == 0:
        return transfer
    freqs = np.arange(points, dtype=np.float64) * ((fs / 2.0) / points)
    for step in coerce_pipeline(pipeline):
        if not step.enabled or not step.frequency_domain:
            continue
        transfer *= fft_step_gain(freqs, step, fs)
    return transfer


__all__ = [
    "FilterConfigError",
    "SavitzkyGolayConfigError",
    "IllConditionedFilterError",
    "PipelineStep",
    "NullFilterStep",
    "MovingAverageStep",
    "MedianStep",
    "IIRStep",
    "SavitzkyGolayStep",
    "GaussianStep",
    "StartStopNormStep",
    "LowPassFFTStep",
    "HighPassFFTStep",
    "NotchFFTStep",
    "STEP_TYPES",
    "STEP_DEFAULTS",
    "DEFAULT_PIPELINE",
    "SignalConditioner",
    "step_from_dict",
    "apply_pipeline",
    "apply_step",
    "moving_average",
    "median_filter",
    "iir_low_pass",
    "savitzky_golay",
    "compute_sg_weights",
    "gaussian",
    "start_stop_norm",
    "apply_x_offset",
    "get_reflected_value",
    "normalize_cutoff",
    "fft_step_gain",
    "apply_fft_filter",
    "calculate_transfer_function",
]
