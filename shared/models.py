from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Tuple

import numpy as np


def _freeze_array(array, *, ndim: int | None = None, dtype=np.float64) -> np.ndarray:
    """Return a read-only, C-contiguous copy of `array`, validating dimensions."""
    arr = np.array(array, dtype=dtype, copy=True, order="C")
    if ndim is not None and arr.ndim != ndim:
        raise ValueError(f"array must be {ndim}D, got {arr.ndim}D")
    arr.setflags(write=False)
    return arr


def _copy_mapping(mapping: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if mapping is None:
        return None
    if not isinstance(mapping, Mapping):
        raise TypeError("metadata/meta must be a mapping type")
    return dict(mapping)


def _finite_or_none(value) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _int_or_none(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, np.integer)):
        return int(value)
    return None


def as_float_array(values) -> np.ndarray:
    """Coerce a host sequence to a 1D float64 array (non-numeric entries become NaN)."""
    if values is None:
        return np.zeros(0, dtype=np.float64)
    try:
        arr = np.asarray(values, dtype=np.float64)
    except (TypeError, ValueError):
        converted = [_finite_or_none(v) for v in values]
        arr = np.array([np.nan if v is None else v for v in converted], dtype=np.float64)
    return arr.reshape(-1)


# ----------------------------
# Selection
# ----------------------------

@dataclass(frozen=True)
class Selection:
    """Inclusive index range into a series with optional cached time bounds.

    ``None`` indices mean "full series". Reversed bounds are swapped so that
    ``i0 <= i1`` and ``x_min <= x_max`` whenever both are present.
    """

    i0: Optional[int] = None
    i1: Optional[int] = None
    x_min: Optional[float] = None
    x_max: Optional[float] = None

    def __post_init__(self) -> None:
        i0 = _int_or_none(self.i0)
        i1 = _int_or_none(self.i1)
        if i0 is not None and i1 is not None and i0 > i1:
            i0, i1 = i1, i0
        x_min = _finite_or_none(self.x_min)
        x_max = _finite_or_none(self.x_max)
        if x_min is not None and x_max is not None and x_min > x_max:
            x_min, x_max = x_max, x_min
        object.__setattr__(self, "i0", i0)
        object.__setattr__(self, "i1", i1)
        object.__setattr__(self, "x_min", x_min)
        object.__setattr__(self, "x_max", x_max)

    @property
    def is_full(self) -> bool:
        return self.i0 is None or self.i1 is None

    def clamp(self, length: int) -> Optional[Tuple[int, int]]:
        """Return inclusive ``(start, end)`` clamped into ``[0, length-1]``."""
        if length <= 0:
            return None
        if self.is_full:
            return 0, length - 1
        start = max(0, min(self.i0, length - 1))
        end = max(start, min(self.i1, length - 1))
        return start, end

    def key(self) -> Tuple[Optional[int], Optional[int]]:
        return self.i0, self.i1

    @classmethod
    def coerce(cls, value) -> "Selection":
        if value is None:
            return cls()
        if isinstance(value, Selection):
            return value
        if isinstance(value, Mapping):
            return cls(
                i0=value.get("i0"),
                i1=value.get("i1"),
                x_min=value.get("x_min", value.get("xMin")),
                x_max=value.get("x_max", value.get("xMax")),
            )
        raise TypeError(f"cannot interpret {type(value).__name__} as a Selection")

    @classmethod
    def from_range(cls, x_range: Optional[Sequence[float]], t) -> "Selection":
        """Resolve a time range to indices: first ``t >= x_min`` and last ``t <= x_max``."""
        if x_range is None or len(x_range) < 2:
            return cls()
        x0 = _finite_or_none(x_range[0])
        x1 = _finite_or_none(x_range[1])
        if x0 is None or x1 is None:
            return cls()
        x_min, x_max = min(x0, x1), max(x0, x1)
        times = as_float_array(t)
        finite = np.isfinite(times)
        starts = np.flatnonzero(finite & (times >= x_min))
        ends = np.flatnonzero(finite & (times <= x_max))
        i0 = int(starts[0]) if starts.size else None
        i1 = int(ends[-1]) if ends.size else None
        if i0 is not None and i1 is not None and i1 < i0:
            # Range falls between two samples.
            i0 = i1 = None
        return cls(i0=i0, i1=i1, x_min=x_min, x_max=x_max)


@dataclass(frozen=True)
class SeriesSlice:
    """A selection-sliced, finite-only view of a (t, y) pair."""

    t: np.ndarray
    y: np.ndarray
    indices: np.ndarray
    selection: Selection
    dropped: int = 0

    def __len__(self) -> int:
        return int(self.y.size)


def slice_series(t, y, selection=None) -> SeriesSlice:
    """Slice `t`/`y` by `selection`, then drop non-finite (t, y) pairs.

    ``indices`` maps every kept sample back to its index in the caller's series.
    """
    times = as_float_array(t)
    values = as_float_array(y)
    length = min(times.size, values.size)
    sel = Selection.coerce(selection)
    bounds = sel.clamp(length)
    if bounds is None:
        empty = np.zeros(0, dtype=np.float64)
        return SeriesSlice(empty, empty, np.zeros(0, dtype=np.int64), Selection(), 0)
    start, end = bounds
    t_sel = times[start : end + 1]
    y_sel = values[start : end + 1]
    keep = np.isfinite(t_sel) & np.isfinite(y_sel)
    indices = np.arange(start, end + 1, dtype=np.int64)[keep]
    return SeriesSlice(
        t=t_sel[keep],
        y=y_sel[keep],
        indices=indices,
        selection=Selection(i0=start, i1=end, x_min=sel.x_min, x_max=sel.x_max),
        dropped=int(keep.size - np.count_nonzero(keep)),
    )


# ----------------------------
# Trace / trigger configuration
# ----------------------------

TRACE_SOURCES = ("raw", "filtered", "math")
TRIGGER_TYPES = ("level", "edge", "pulse", "runt")
TRIGGER_DIRECTIONS = ("rising", "falling", "either")
TRIGGER_SOURCES = ("auto", "raw", "filtered", "derivative", "math")


@dataclass(frozen=True)
class TraceRef:
    """Identifies which column/source a series came from."""

    column_id: Optional[str] = None
    source: str = "raw"
    x_offset: float = 0.0

    def __post_init__(self) -> None:
        if self.source not in TRACE_SOURCES:
            raise ValueError(f"source must be one of {TRACE_SOURCES}, got {self.source!r}")
        offset = _finite_or_none(self.x_offset)
        object.__setattr__(self, "x_offset", 0.0 if offset is None else offset)


@dataclass(frozen=True)
class TriggerConfig:
    """Trigger parameters shared between the detector and its host."""

    enabled: bool = True
    type: str = "level"
    direction: str = "rising"
    threshold: float = 0.0
    hysteresis: float = 0.0
    slope_threshold: float = 0.0
    min_width: float = 0.0
    max_width: float = math.inf
    high_threshold: float = 1.0
    low_threshold: float = 0.0
    source: str = "auto"
    selection_only: bool = True

    _ALIASES = {
        "slopeThreshold": "slope_threshold",
        "minWidth": "min_width",
        "maxWidth": "max_width",
        "highThreshold": "high_threshold",
        "lowThreshold": "low_threshold",
        "selectionOnly": "selection_only",
    }

    def validate(self) -> None:
        if self.type not in TRIGGER_TYPES:
            raise ValueError(f"trigger type must be one of {TRIGGER_TYPES}, got {self.type!r}")
        if self.direction not in TRIGGER_DIRECTIONS:
            raise ValueError(f"direction must be one of {TRIGGER_DIRECTIONS}, got {self.direction!r}")
        if self.source not in TRIGGER_SOURCES:
            raise ValueError(f"source must be one of {TRIGGER_SOURCES}, got {self.source!r}")
        if not self.hysteresis >= 0:
            raise ValueError("hysteresis must be non-negative")

    @classmethod
    def coerce(cls, value) -> "TriggerConfig":
        if value is None:
            return cls()
        if isinstance(value, TriggerConfig):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"cannot interpret {type(value).__name__} as a TriggerConfig")
        params = {}
        for key, item in value.items():
            name = cls._ALIASES.get(key, key)
            if name in cls.__dataclass_fields__ and item is not None:
                params[name] = item
        return cls(**params)


# ----------------------------
# Analysis value objects
# ----------------------------

@dataclass(frozen=True)
class Event:
    """Immutable record of a detected feature.

    Attributes:
        index: Sample index in the caller's series (None when unknown)
        time: Event time in seconds (None when unknown)
        type: Detector name ("level", "edge", "pulse", "runt")
        metadata: Detector-specific values (width, slope, peak, amplitude, direction)
    """

    index: Optional[int]
    time: Optional[float]
    type: str = "unknown"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "index", _int_or_none(self.index))
        object.__setattr__(self, "time", _finite_or_none(self.time))
        object.__setattr__(self, "type", self.type or "unknown")
        object.__setattr__(self, "metadata", _copy_mapping(self.metadata) or {})

    def to_dict(self) -> dict:
        return {"index": self.index, "time": self.time, "type": self.type, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class WindowResult:
    """A window function's samples and its two normalization scalars."""

    window: np.ndarray
    coherent_gain: float
    enbw: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "window", _freeze_array(self.window, ndim=1))


@dataclass(frozen=True)
class SpectrumMeta:
    fs: float = 1.0
    delta_f: float = 0.0
    nyquist: float = 0.0
    coherent_gain: float = 1.0
    enbw: float = 1.0
    median_dt: Optional[float] = None


@dataclass(frozen=True)
class Spectrum:
    """One-sided spectrum of a real signal. Arrays are read-only."""

    freq: np.ndarray
    re: np.ndarray
    im: np.ndarray
    magnitude: np.ndarray
    linear_magnitude: np.ndarray
    phase: np.ndarray
    warnings: Tuple[str, ...] = ()
    meta: SpectrumMeta = field(default_factory=SpectrumMeta)
    length: int = 0

    def __post_init__(self) -> None:
        for name in ("freq", "re", "im", "magnitude", "linear_magnitude", "phase"):
            object.__setattr__(self, name, _freeze_array(getattr(self, name), ndim=1))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    @property
    def is_empty(self) -> bool:
        return self.freq.size == 0


__all__ = [
    "Selection",
    "SeriesSlice",
    "slice_series",
    "as_float_array",
    "TraceRef",
    "TriggerConfig",
    "Event",
    "WindowResult",
    "SpectrumMeta",
    "Spectrum",
    "TRIGGER_TYPES",
    "TRIGGER_DIRECTIONS",
    "TRIGGER_SOURCES",
]
