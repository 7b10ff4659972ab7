from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Protocol, Type

import numpy as np

from shared.models import Event, TriggerConfig


@dataclass
class DetectorParameter:
    name: str
    default: float | int | bool | str
    min: float | None = None
    max: float | None = None
    help: str = ""


class TriggerDetector(Protocol):
    name: str
    display_name: str

    @property
    def parameters(self) -> Mapping[str, DetectorParameter]:
        ...

    def configure(self, config: TriggerConfig) -> None:
        ...

    def scan(self, t: np.ndarray, y: np.ndarray) -> List[Event]:
        """Return the events found in one finite-only (t, y) series.

        Event indices are positions within the arrays passed in; the caller
        maps them back to its own series.
        """
        ...


DETECTOR_REGISTRY: Dict[str, Type[TriggerDetector]] = {}


def register_detector(cls: Type[TriggerDetector]) -> Type[TriggerDetector]:
    if not hasattr(cls, "name"):
        raise ValueError(f"Detector {cls} must have a 'name' attribute")
    DETECTOR_REGISTRY[cls.name] = cls
    return cls


def create_detector(config: TriggerConfig) -> TriggerDetector:
    """Instantiate and configure the registered detector for ``config.type``."""
    try:
        cls = DETECTOR_REGISTRY[config.type]
    except KeyError:
        raise ValueError(f"No detector registered for trigger type {config.type!r}") from None
    detector = cls()
    detector.configure(config)
    return detector
