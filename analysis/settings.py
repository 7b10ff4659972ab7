from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import threading
from typing import Callable, Dict, Optional

from core.spectral import DETREND_MODES, WINDOW_TYPES, ZERO_PAD_MODES, SpectrumOptions

logger = logging.getLogger(__name__)

DEFAULT_OFFLOAD_THRESHOLD = 75000


@dataclass(frozen=True)
class AnalysisSettings:
    offload_threshold: int = DEFAULT_OFFLOAD_THRESHOLD
    spectrum_cache_size: int = 64
    measurement_cache_size: int = 256
    derivative_cache_size: int = 32
    window_type: str = "hann"
    detrend: str = "removeMean"
    zero_pad_mode: str = "nextPow2"
    zero_pad_factor: float = 1.0
    max_workers: int = 2

    def validate(self) -> None:
        if self.offload_threshold < 0:
            raise ValueError("offload_threshold must be non-negative")
        for name in ("spectrum_cache_size", "measurement_cache_size", "derivative_cache_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.window_type not in WINDOW_TYPES:
            raise ValueError(f"window_type must be one of {WINDOW_TYPES}, got {self.window_type!r}")
        if self.detrend not in DETREND_MODES:
            raise ValueError(f"detrend must be one of {DETREND_MODES}, got {self.detrend!r}")
        if self.zero_pad_mode not in ZERO_PAD_MODES:
            raise ValueError(f"zero_pad_mode must be one of {ZERO_PAD_MODES}, got {self.zero_pad_mode!r}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    def spectrum_options(self, **overrides) -> SpectrumOptions:
        """Default :class:`SpectrumOptions` built from these settings."""
        base = SpectrumOptions(
            window_type=self.window_type,
            detrend=self.detrend,
            zero_pad_mode=self.zero_pad_mode,
            zero_pad_factor=self.zero_pad_factor,
        )
        return replace(base, **overrides) if overrides else base


class AnalysisSettingsStore:
    """
    Thread-safe settings container that allows multiple producers/consumers to
    observe changes (e.g., a host UI updating the engine's spectrum defaults).
    """

    def __init__(self, initial: Optional[AnalysisSettings] = None) -> None:
        self._settings = initial or AnalysisSettings()
        self._settings.validate()
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[AnalysisSettings], None]] = {}
        self._next_token = 0

    def get(self) -> AnalysisSettings:
        with self._lock:
            return self._settings

    def update(self, **kwargs) -> AnalysisSettings:
        with self._lock:
            new_settings = replace(self._settings, **kwargs)
            new_settings.validate()
            self._settings = new_settings
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(new_settings)
            except Exception:
                logger.exception("Settings subscriber %r failed", callback)
        return new_settings

    def subscribe(self, callback: Callable[[AnalysisSettings], None], *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            snapshot = self._settings
        if replay:
            callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe


__all__ = ["AnalysisSettings", "AnalysisSettingsStore", "DEFAULT_OFFLOAD_THRESHOLD"]
