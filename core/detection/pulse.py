from __future__ import annotations

import math
from typing import List, Mapping

import numpy as np

from shared.models import Event, TriggerConfig
from .base import DetectorParameter, register_detector


@register_detector
class PulseWidthDetector:
    """Reports high intervals whose width falls inside ``[min_width, max_width]``."""

    name = "pulse"
    display_name = "Pulse Width"

    def __init__(self) -> None:
        self._threshold = 0.0
        self._min_width = 0.0
        self._max_width = math.inf
        self._params = {
            "threshold": DetectorParameter(name="threshold", default=0.0, help="High/low decision level"),
            "min_width": DetectorParameter(name="min_width", default=0.0, min=0.0, help="Shortest accepted width (s)"),
            "max_width": DetectorParameter(name="max_width", default=math.inf, min=0.0, help="Longest accepted width (s)"),
        }

    @property
    def parameters(self) -> Mapping[str, DetectorParameter]:
        return dict(self._params)

    def configure(self, config: TriggerConfig) -> None:
        self._threshold = float(config.threshold)
        self._min_width = float(config.min_width)
        max_width = float(config.max_width)
        self._max_width = max_width if not math.isnan(max_width) else math.inf

    def scan(self, t: np.ndarray, y: np.ndarray) -> List[Event]:
        events: List[Event] = []
        if t.size < 2 or y.size < 2:
            return events

        times = t.tolist()
        values = y.tolist()
        threshold = self._threshold
        high = values[0] >= threshold
        start = 0 if high else None
        peak = values[0] if high else -math.inf

        for i in range(1, len(values)):
            val = values[i]
            peak = max(peak, val)
            if not high and val >= threshold:
                high = True
                start = i
                peak = val
            elif high and val < threshold:
                width = times[i] - times[start]
                if self._min_width <= width <= self._max_width:
                    events.append(
                        Event(
                            index=start,
                            time=times[start],
                            type=self.name,
                            metadata={"width": width, "peak": peak, "amplitude": peak},
                        )
                    )
                high = False
                start = None
                peak = -math.inf
        return events


@register_detector
class RuntPulseDetector:
    """Reports excursions above ``high_threshold`` that return below ``low_threshold`` too quickly."""

    name = "runt"
    display_name = "Runt Pulse"

    def __init__(self) -> None:
        self._high = 1.0
        self._low = 0.0
        self._min_width = 0.0
        self._params = {
            "high_threshold": DetectorParameter(name="high_threshold", default=1.0, help="Level that starts an excursion"),
            "low_threshold": DetectorParameter(name="low_threshold", default=0.0, help="Level that ends an excursion"),
            "min_width": DetectorParameter(
                name="min_width", default=0.0, min=0.0, help="Excursions narrower than this are runts (s)"
            ),
        }

    @property
    def parameters(self) -> Mapping[str, DetectorParameter]:
        return dict(self._params)

    def configure(self, config: TriggerConfig) -> None:
        self._high = float(config.high_threshold)
        self._low = float(config.low_threshold)
        self._min_width = float(config.min_width)

    def scan(self, t: np.ndarray, y: np.ndarray) -> List[Event]:
        events: List[Event] = []
        if t.size < 2 or y.size < 2:
            return events

        times = t.tolist()
        values = y.tolist()
        active = False
        start = 0
        peak = -math.inf

        for i, val in enumerate(values):
            if val >= self._high:
                if not active:
                    active = True
                    start = i
                    peak = val
                else:
                    peak = max(peak, val)
            elif active and val <= self._low:
                width = times[i] - times[start]
                if width < self._min_width:
                    events.append(
                        Event(
                            index=start,
                            time=times[start],
                            type=self.name,
                            metadata={"width": width, "peak": peak, "amplitude": peak},
                        )
                    )
                active = False
                peak = -math.inf
        return events
