"""Unified trigger/event detection entry point.

`detect` normalizes a (t, y) series, resolves which source to scan (raw,
filtered, derivative or math) and hands the finite-only slice to the
registered detector for the configured trigger type.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from shared.cache import LRUCache, fingerprint
from shared.models import Event, Selection, TraceRef, TriggerConfig, as_float_array, slice_series

from ..conditioning import apply_x_offset
from ..derived import compute_derivative
from .base import create_detector

logger = logging.getLogger(__name__)

NONUNIFORM_DEVIATION_LIMIT = 0.01


@dataclass(frozen=True)
class DetectionResult:
    events: Tuple[Event, ...]
    selection: Selection
    warnings: Tuple[str, ...] = ()
    signal: Tuple[np.ndarray, np.ndarray] = field(
        default_factory=lambda: (np.zeros(0, dtype=np.float64), np.zeros(0, dtype=np.float64))
    )
    source_type: str = "raw"

    def to_dict(self) -> dict:
        return {
            "events": [event.to_dict() for event in self.events],
            "selection": {"i0": self.selection.i0, "i1": self.selection.i1},
            "warnings": list(self.warnings),
            "source_type": self.source_type,
        }


def is_nonuniform_timebase(t: np.ndarray) -> bool:
    """True when any interval deviates from the mean interval by more than 1%."""
    if t.size < 3:
        return False
    deltas = np.diff(t)
    deltas = deltas[np.isfinite(deltas)]
    if deltas.size < 2:
        return False
    mean = float(np.mean(deltas))
    if mean <= 0:
        return False
    return float(np.max(np.abs(deltas - mean))) / mean > NONUNIFORM_DEVIATION_LIMIT


def _resolve_base(
    config: TriggerConfig,
    trace: Optional[TraceRef],
    values: np.ndarray,
    filtered: Optional[np.ndarray],
    warnings: list,
) -> Tuple[np.ndarray, str]:
    """Pick the series to scan before any derivative is taken."""
    trace_source = trace.source if trace is not None else "raw"
    requested = config.source
    if requested in ("auto", "derivative"):
        requested = trace_source
    if requested == "math":
        return values, "math"
    if requested == "filtered":
        if filtered is not None and filtered.size:
            return filtered, "filtered"
        warnings.append("Filtered series unavailable; scanning raw data.")
        logger.debug("No filtered series supplied for trigger source %r; using raw", config.source)
    return values, "raw"


def detect(
    t,
    y,
    selection=None,
    config: TriggerConfig | Mapping[str, Any] | None = None,
    trace: Optional[TraceRef] = None,
    *,
    filtered=None,
    derivative_cache: Optional[LRUCache] = None,
) -> DetectionResult:
    """
    Run the configured trigger over a series.

    Parameters
    ----------
    t, y:
        Sample times and values of the trace (raw or math channel values).
    selection:
        :class:`Selection` or mapping; ignored when ``config.selection_only``
        is False.
    config:
        :class:`TriggerConfig` or a host mapping (camelCase keys accepted).
    trace:
        Identifies the trace; its ``source`` drives ``auto`` resolution and its
        ``column_id`` keys the derivative cache.
    filtered:
        Filtered values aligned with `y`, used for the ``filtered`` source.
    derivative_cache:
        Optional :class:`LRUCache` for derivative series.

    Returns
    -------
    DetectionResult
        Event indices refer to positions in the caller's `y`.
    """
    cfg = TriggerConfig.coerce(config)
    cfg.validate()
    times = as_float_array(t)
    values = as_float_array(y)
    filtered_values = as_float_array(filtered) if filtered is not None else None
    warnings: list = []

    base, base_source = _resolve_base(cfg, trace, values, filtered_values, warnings)
    if trace is not None and trace.x_offset:
        base = apply_x_offset(base, trace.x_offset)

    sel = Selection.coerce(selection) if cfg.selection_only else Selection()
    series = slice_series(times, base, sel)
    if series.dropped:
        logger.debug("Dropped %d non-finite samples before detection", series.dropped)

    source_type = base_source
    scan_y = series.y
    if cfg.source == "derivative":
        source_type = "derivative"
        scan_y = _derivative(series.t, series.y, trace, series.selection, base_source, derivative_cache)

    if not cfg.enabled:
        return DetectionResult((), series.selection, tuple(warnings), (series.t, scan_y), source_type)

    events: Tuple[Event, ...] = ()
    if len(series) >= 2:
        detector = create_detector(cfg)
        local = detector.scan(series.t, scan_y)
        events = tuple(_to_caller_index(event, series.indices) for event in local)

    if is_nonuniform_timebase(series.t):
        warnings.append("Timebase is non-uniform; event timing may be approximate.")

    return DetectionResult(events, series.selection, tuple(warnings), (series.t, scan_y), source_type)


def _to_caller_index(event: Event, indices: np.ndarray) -> Event:
    if event.index is None or not (0 <= event.index < indices.size):
        return event
    return Event(index=int(indices[event.index]), time=event.time, type=event.type, metadata=event.metadata)


def _derivative(
    t: np.ndarray,
    y: np.ndarray,
    trace: Optional[TraceRef],
    selection: Selection,
    base_source: str,
    cache: Optional[LRUCache],
) -> np.ndarray:
    if cache is None:
        return compute_derivative(t, y)
    trace_id = trace.column_id if trace is not None else None
    key = ("derivative", trace_id, selection.key(), base_source, fingerprint(t, y))
    cached = cache.get(key)
    if cached is not None:
        logger.debug("Derivative cache hit for trace %r", trace_id)
        return cached
    dy = compute_derivative(t, y)
    dy.setflags(write=False)
    cache.put(key, dy)
    return dy


__all__ = ["DetectionResult", "detect", "is_nonuniform_timebase"]
