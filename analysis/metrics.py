"""Scope-style time-domain measurements over a selected series.

This module provides the measurement engine and the helpers it is built from:
- compute: one-call report (amplitude, timing, edge and integral metrics)
- zero_crossings: interpolated zero-crossing times with direction
- estimate_frequency: frequency/period from rising zero crossings
- duty_cycle: fraction of time spent at or above a level
- find_level_crossing: first interpolated crossing of a target level
- rise_fall_metrics: 10%/90% rise/fall time plus overshoot/undershoot
- integrate: trapezoidal signed or absolute area
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from shared.cache import LRUCache, fingerprint
from shared.models import Selection, as_float_array, slice_series

logger = logging.getLogger(__name__)

TIMEBASE_VARIATION_LIMIT = 0.05
STEADY_HIGH_PERCENTILE = 98.0
STEADY_LOW_PERCENTILE = 2.0


@dataclass(frozen=True)
class MeasurementOptions:
    low_fraction: float = 0.1
    high_fraction: float = 0.9
    duty_threshold: Optional[float] = None

    def validate(self) -> None:
        if not (0.0 <= self.low_fraction < self.high_fraction <= 1.0):
            raise ValueError("edge fractions must satisfy 0 <= low_fraction < high_fraction <= 1")
        if self.duty_threshold is not None and not math.isfinite(self.duty_threshold):
            raise ValueError("duty_threshold must be finite when given")

    def key(self) -> Tuple[Any, ...]:
        return (float(self.low_fraction), float(self.high_fraction), self.duty_threshold)

    @classmethod
    def coerce(cls, value) -> "MeasurementOptions":
        if value is None:
            return cls()
        if isinstance(value, MeasurementOptions):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot interpret {type(value).__name__} as MeasurementOptions")
        params: Dict[str, Any] = {}
        edges = value.get("edgeThresholds") or value.get("edge_thresholds") or {}
        low = value.get("low_fraction", edges.get("lowFraction", edges.get("low_fraction")))
        high = value.get("high_fraction", edges.get("highFraction", edges.get("high_fraction")))
        duty = value.get("duty_threshold", value.get("dutyThreshold"))
        if low is not None:
            params["low_fraction"] = float(low)
        if high is not None:
            params["high_fraction"] = float(high)
        if duty is not None:
            params["duty_threshold"] = float(duty)
        return cls(**params)


@dataclass(frozen=True)
class MeasurementResult:
    metrics: Dict[str, Any]
    selection: Selection
    warnings: Tuple[str, ...] = ()
    meta: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "MeasurementResult":
        metrics = {key: (list(value) if isinstance(value, list) else value) for key, value in self.metrics.items()}
        return MeasurementResult(metrics, self.selection, tuple(self.warnings), dict(self.meta))


@dataclass(frozen=True)
class Crossing:
    time: float
    direction: str


def zero_crossings(t: np.ndarray, y: np.ndarray) -> List[Crossing]:
    """
    Sign changes between consecutive non-zero samples.

    Adjacent samples of opposite sign are linearly interpolated. When one or
    more exact zeros separate them, the crossing is placed at the first zero.
    """
    nonzero = np.flatnonzero(y != 0)
    if nonzero.size < 2:
        return []
    signs = np.sign(y[nonzero])
    changes = np.flatnonzero(signs[1:] != signs[:-1])
    crossings: List[Crossing] = []
    for k in changes:
        i = int(nonzero[k])
        j = int(nonzero[k + 1])
        y0 = float(y[i])
        y1 = float(y[j])
        direction = "rising" if y1 > y0 else "falling"
        if j == i + 1:
            frac = abs(y0) / (abs(y0) + abs(y1))
            time = float(t[i] + (t[j] - t[i]) * frac)
        else:
            time = float(t[i + 1])
        crossings.append(Crossing(time, direction))
    return crossings


def estimate_frequency(crossings: List[Crossing]) -> Tuple[Optional[float], Optional[float]]:
    rising = np.array([c.time for c in crossings if c.direction == "rising"], dtype=np.float64)
    if rising.size < 2:
        return None, None
    periods = np.diff(rising)
    periods = periods[periods > 0]
    if periods.size == 0:
        return None, None
    period = float(np.mean(periods))
    return 1.0 / period, period


def find_level_crossing(t: np.ndarray, y: np.ndarray, target: float, mode: str = "rising") -> Optional[float]:
    y0 = y[:-1]
    y1 = y[1:]
    if mode == "rising":
        hits = np.flatnonzero((y0 <= target) & (y1 >= target))
    elif mode == "falling":
        hits = np.flatnonzero((y0 >= target) & (y1 <= target))
    else:
        raise ValueError(f"mode must be 'rising' or 'falling', got {mode!r}")
    if hits.size == 0:
        return None
    i = int(hits[0])
    a, b = float(y[i]), float(y[i + 1])
    if mode == "rising":
        frac = (target - a) / ((b - a) or 1.0)
    else:
        frac = (a - target) / ((a - b) or 1.0)
    return float(t[i] + (t[i + 1] - t[i]) * frac)


def integrate(t: np.ndarray, y: np.ndarray, *, absolute: bool = False) -> Optional[float]:
    if t.size < 2 or y.size < 2:
        return None
    values = np.abs(y) if absolute else y
    return float(np.sum((values[:-1] + values[1:]) * 0.5 * np.diff(t)))


def duty_cycle(t: np.ndarray, y: np.ndarray, threshold: float) -> Optional[float]:
    if t.size < 2 or y.size < 2:
        return None
    dt = np.diff(t)
    total = float(np.sum(dt))
    if total <= 0:
        return None
    above = y >= threshold
    a0 = above[:-1]
    a1 = above[1:]
    step = np.abs(np.diff(y))
    step[step == 0] = 1.0
    frac = np.abs(threshold - y[:-1]) / step
    high = np.where(a0 & a1, dt, 0.0)
    high = high + np.where(a0 & ~a1, dt * frac, 0.0)
    high = high + np.where(~a0 & a1, dt * (1.0 - frac), 0.0)
    return float(np.sum(high)) / total


def rise_fall_metrics(
    t: np.ndarray, y: np.ndarray, *, low_fraction: float = 0.1, high_fraction: float = 0.9
) -> Dict[str, Optional[float]]:
    empty = {"rise_time": None, "fall_time": None, "overshoot_pct": None, "undershoot_pct": None}
    if y.size == 0:
        return empty
    y_min = float(np.min(y))
    y_max = float(np.max(y))
    span = y_max - y_min
    if not math.isfinite(span) or span == 0:
        return empty

    low_level = y_min + span * low_fraction
    high_level = y_min + span * high_fraction
    rise_start = find_level_crossing(t, y, low_level, "rising")
    rise_end = find_level_crossing(t, y, high_level, "rising")
    fall_start = find_level_crossing(t, y, high_level, "falling")
    fall_end = find_level_crossing(t, y, low_level, "falling")

    upper_steady = float(np.percentile(y, STEADY_HIGH_PERCENTILE))
    lower_steady = float(np.percentile(y, STEADY_LOW_PERCENTILE))
    overshoot = y_max - upper_steady
    undershoot = lower_steady - y_min
    return {
        "rise_time": rise_end - rise_start if rise_start is not None and rise_end is not None else None,
        "fall_time": fall_end - fall_start if fall_start is not None and fall_end is not None else None,
        "overshoot_pct": (overshoot / span) * 100.0 if overshoot > 0 else 0.0,
        "undershoot_pct": (undershoot / span) * 100.0 if undershoot > 0 else 0.0,
    }


def timebase_variation(t: np.ndarray) -> Optional[float]:
    """Relative standard deviation of the positive time deltas."""
    if t.size < 2:
        return None
    deltas = np.diff(t)
    deltas = deltas[np.isfinite(deltas) & (deltas > 0)]
    if deltas.size == 0:
        return None
    avg = float(np.mean(deltas))
    if avg == 0:
        return None
    dev = float(np.std(deltas, ddof=1)) if deltas.size > 1 else 0.0
    return dev / avg


def _time_metric_names() -> Tuple[str, ...]:
    return (
        "zero_crossing_times",
        "frequency_hz",
        "period",
        "duty_cycle",
        "rise_time",
        "fall_time",
        "overshoot_pct",
        "undershoot_pct",
        "area",
        "abs_area",
    )


def _measure(t: np.ndarray, y: np.ndarray, opts: MeasurementOptions) -> Tuple[Dict[str, Any], List[str]]:
    warnings: List[str] = []
    y_min = float(np.min(y))
    y_max = float(np.max(y))
    span = y_max - y_min
    avg = float(np.mean(y))
    metrics: Dict[str, Any] = {
        "min": y_min,
        "max": y_max,
        "mean": avg,
        "rms": float(np.sqrt(np.mean(y * y))),
        "peak_to_peak": span if math.isfinite(span) else None,
        "stddev": float(np.std(y, ddof=1)) if y.size > 1 else None,
        "median": float(np.median(y)),
        "zero_crossings": 0,
        "peak_time": float(t[int(np.argmax(y))]),
        "valley_time": float(t[int(np.argmin(y))]),
    }

    if y.size < 2:
        metrics.update({name: None for name in _time_metric_names()})
        metrics["zero_crossing_times"] = []
        warnings.append("Selection has a single sample; time-based metrics unavailable")
        return metrics, warnings

    crossings = zero_crossings(t, y)
    frequency_hz, period = estimate_frequency(crossings)
    threshold = opts.duty_threshold if opts.duty_threshold is not None else (y_min + y_max) / 2.0
    metrics.update(
        {
            "zero_crossings": len(crossings),
            "zero_crossing_times": [c.time for c in crossings],
            "frequency_hz": frequency_hz,
            "period": period,
            "duty_cycle": duty_cycle(t, y, threshold),
            "area": integrate(t, y),
            "abs_area": integrate(t, y, absolute=True),
        }
    )
    metrics.update(rise_fall_metrics(t, y, low_fraction=opts.low_fraction, high_fraction=opts.high_fraction))

    variation = timebase_variation(t)
    if variation is not None and variation > TIMEBASE_VARIATION_LIMIT:
        warnings.append("Timebase is non-uniform (>5% variation)")
    return metrics, warnings


def compute(
    t,
    y,
    selection=None,
    options: MeasurementOptions | Mapping[str, Any] | None = None,
    cache: Optional[LRUCache] = None,
) -> MeasurementResult:
    """
    Compute time-domain measurements of ``y(t)`` over `selection`.

    Non-finite (t, y) pairs inside the selection are skipped. Metrics that
    cannot be defined for the data are ``None``; data problems are reported
    in ``warnings`` and never raise.

    When `cache` is given, results are memoized per content fingerprint,
    selection and options. Each call returns its own copy.
    """
    opts = MeasurementOptions.coerce(options)
    opts.validate()
    times = as_float_array(t)
    values = as_float_array(y)
    sel = Selection.coerce(selection)

    key = None
    if cache is not None:
        key = ("measurements", fingerprint(times, values), sel.key(), opts.key())
        cached = cache.get(key)
        if cached is not None:
            logger.debug("Measurement cache hit for selection %s", sel.key())
            return cached.copy()

    series = slice_series(times, values, sel)
    if len(series) == 0:
        result = MeasurementResult({}, series.selection, ("No data in selection",), {"sample_count": 0, "duration": None})
    else:
        metrics, warnings = _measure(series.t, series.y, opts)
        if series.dropped:
            warnings.insert(0, f"Skipped {series.dropped} non-finite samples")
        duration = float(series.t[-1] - series.t[0]) if len(series) > 1 else None
        result = MeasurementResult(
            metrics, series.selection, tuple(warnings), {"sample_count": len(series), "duration": duration}
        )

    if cache is not None:
        cache.put(key, result)
        return result.copy()
    return result


__all__ = [
    "MeasurementOptions",
    "MeasurementResult",
    "Crossing",
    "compute",
    "zero_crossings",
    "estimate_frequency",
    "find_level_crossing",
    "integrate",
    "duty_cycle",
    "rise_fall_metrics",
    "timebase_variation",
]
