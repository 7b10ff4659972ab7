from __future__ import annotations

from typing import List, Mapping

import numpy as np

from shared.models import Event, TriggerConfig
from .base import DetectorParameter, register_detector


@register_detector
class LevelCrossingDetector:
    """Two-state (below/above) threshold crossing with hysteresis."""

    name = "level"
    display_name = "Level Crossing"

    def __init__(self) -> None:
        self._threshold = 0.0
        self._hysteresis = 0.0
        self._direction = "rising"
        self._params = {
            "threshold": DetectorParameter(name="threshold", default=0.0, help="Crossing level"),
            "hysteresis": DetectorParameter(
                name="hysteresis",
                default=0.0,
                min=0.0,
                help="Band half-width around the threshold that must be cleared before re-arming",
            ),
            "direction": DetectorParameter(name="direction", default="rising", help="rising, falling or either"),
        }

    @property
    def parameters(self) -> Mapping[str, DetectorParameter]:
        return dict(self._params)

    def configure(self, config: TriggerConfig) -> None:
        self._threshold = float(config.threshold)
        hysteresis = float(config.hysteresis or 0.0)
        self._hysteresis = hysteresis if np.isfinite(hysteresis) and hysteresis > 0 else 0.0
        self._direction = config.direction

    def scan(self, t: np.ndarray, y: np.ndarray) -> List[Event]:
        events: List[Event] = []
        if t.size < 2 or y.size < 2:
            return events

        upper = self._threshold + self._hysteresis
        lower = self._threshold - self._hysteresis
        want_rising = self._direction in ("rising", "either")
        want_falling = self._direction in ("falling", "either")
        times = t.tolist()
        values = y.tolist()
        above = values[0] >= upper

        for i in range(1, len(values)):
            current = values[i]
            if not above and current >= upper:
                if want_rising:
                    events.append(self._event(i, times[i], "rising", current))
                above = True
            elif above and current <= lower:
                if want_falling:
                    events.append(self._event(i, times[i], "falling", current))
                above = False
        return events

    def _event(self, index: int, time: float, direction: str, amplitude: float) -> Event:
        return Event(
            index=index,
            time=time,
            type=self.name,
            metadata={"direction": direction, "threshold": self._threshold, "amplitude": amplitude},
        )


@register_detector
class EdgeSlopeDetector:
    """Flags every sample pair whose slope clears ``slope_threshold``."""

    name = "edge"
    display_name = "Edge (Slope)"

    def __init__(self) -> None:
        self._slope_threshold = 0.0
        self._direction = "rising"
        self._params = {
            "slope_threshold": DetectorParameter(
                name="slope_threshold", default=0.0, help="Minimum |dy/dt| in units per second"
            ),
            "direction": DetectorParameter(name="direction", default="rising", help="rising, falling or either"),
        }

    @property
    def parameters(self) -> Mapping[str, DetectorParameter]:
        return dict(self._params)

    def configure(self, config: TriggerConfig) -> None:
        self._slope_threshold = float(config.slope_threshold)
        self._direction = config.direction

    def scan(self, t: np.ndarray, y: np.ndarray) -> List[Event]:
        if t.size < 2 or y.size < 2:
            return []
        dt = np.diff(t)
        dy = np.diff(y)
        valid = np.isfinite(dt) & (dt > 0)
        with np.errstate(divide="ignore", invalid="ignore"):
            slope = np.where(valid, dy / np.where(valid, dt, 1.0), 0.0)

        rising = valid & (slope >= self._slope_threshold) if self._direction != "falling" else np.zeros_like(valid)
        falling = valid & (slope <= -self._slope_threshold) if self._direction != "rising" else np.zeros_like(valid)

        events: List[Event] = []
        for i in np.flatnonzero(rising | falling):
            i = int(i)
            events.append(
                Event(
                    index=i,
                    time=float(t[i]),
                    type=self.name,
                    metadata={
                        "slope": float(slope[i]),
                        "direction": "rising" if rising[i] else "falling",
                        "amplitude": float(y[i]),
                    },
                )
            )
        return events
