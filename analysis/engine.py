"""Analysis context: owns caches, settings and the shared selection.

The numerical functions in ``core`` and ``analysis`` are pure. This module
holds the state a host would otherwise keep in globals: the current selection,
the listeners interested in it, and the bounded caches the functions accept.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from core.detection import DetectionResult, detect
from core.spectral import compute_spectrum
from shared.cache import LRUCache
from shared.models import Selection, Spectrum, TraceRef, TriggerConfig

from . import cross_channel, metrics, spectral_metrics, time_frequency
from .settings import AnalysisSettings, AnalysisSettingsStore

logger = logging.getLogger(__name__)

SelectionListener = Callable[[Selection], None]

_SPECTRUM_FIELDS = ("window_type", "detrend", "zero_pad_mode", "zero_pad_factor", "kaiser_beta")


class AnalysisEngine:
    def __init__(self, settings_store: Optional[AnalysisSettingsStore] = None) -> None:
        self.settings_store = settings_store or AnalysisSettingsStore()
        self._lock = threading.Lock()
        self._selection = Selection()
        self._listeners: Dict[int, SelectionListener] = {}
        self._next_token = 0
        self._cache_sizes: tuple = ()
        self.spectrum_cache: LRUCache[Spectrum]
        self.measurement_cache: LRUCache[metrics.MeasurementResult]
        self.derivative_cache: LRUCache
        self._settings_unsub = self.settings_store.subscribe(self._on_settings_changed)

    # ------------------------------------------------------------------
    # Settings / caches
    # ------------------------------------------------------------------

    @property
    def settings(self) -> AnalysisSettings:
        return self.settings_store.get()

    def _on_settings_changed(self, settings: AnalysisSettings) -> None:
        sizes = (settings.spectrum_cache_size, settings.measurement_cache_size, settings.derivative_cache_size)
        with self._lock:
            if sizes == self._cache_sizes:
                return
            self._cache_sizes = sizes
            self.spectrum_cache = LRUCache(settings.spectrum_cache_size)
            self.measurement_cache = LRUCache(settings.measurement_cache_size)
            self.derivative_cache = LRUCache(settings.derivative_cache_size)
        logger.debug("Analysis caches sized to %s", sizes)

    def _caches(self) -> Dict[str, LRUCache]:
        with self._lock:
            return {
                "spectrum": self.spectrum_cache,
                "measurements": self.measurement_cache,
                "derivative": self.derivative_cache,
            }

    def clear_caches(self) -> None:
        for cache in self._caches().values():
            cache.clear()

    def cache_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: cache.stats() for name, cache in self._caches().items()}

    def close(self) -> None:
        if self._settings_unsub is not None:
            self._settings_unsub()
            self._settings_unsub = None

    # ------------------------------------------------------------------
    # Selection state
    # ------------------------------------------------------------------

    @property
    def selection(self) -> Selection:
        with self._lock:
            return self._selection

    def on_selection_change(self, callback: SelectionListener) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def set_selection(self, selection) -> Selection:
        new_selection = Selection.coerce(selection)
        with self._lock:
            if new_selection == self._selection:
                return self._selection
            self._selection = new_selection
            listeners = list(self._listeners.values())
        for callback in listeners:
            try:
                callback(new_selection)
            except Exception:
                logger.exception("Selection listener %r failed", callback)
        return new_selection

    def clear_selection(self) -> Selection:
        return self.set_selection(None)

    def update_selection_from_range(self, x_range: Optional[Sequence[float]], t) -> Selection:
        selection = Selection.from_range(x_range, t)
        if selection.x_min is None or selection.x_max is None:
            return self.clear_selection()
        return self.set_selection(selection)

    def _resolve(self, selection) -> Selection:
        return self.selection if selection is None else Selection.coerce(selection)

    # ------------------------------------------------------------------
    # Analyses bound to this context
    # ------------------------------------------------------------------

    def spectrum(self, y, t=None, *, selection=None, **overrides) -> Spectrum:
        options = self.settings.spectrum_options(selection=self._resolve(selection), **overrides)
        return compute_spectrum(y, t, options, cache=self.spectrum_cache)

    def measure(self, t, y, *, selection=None, options=None) -> metrics.MeasurementResult:
        return metrics.compute(t, y, self._resolve(selection), options, cache=self.measurement_cache)

    def detect(
        self,
        t,
        y,
        config: TriggerConfig | Mapping[str, Any] | None = None,
        trace: Optional[TraceRef] = None,
        *,
        selection=None,
        filtered=None,
    ) -> DetectionResult:
        return detect(
            t,
            y,
            self._resolve(selection),
            config,
            trace,
            filtered=filtered,
            derivative_cache=self.derivative_cache,
        )

    def summarize(self, y, t=None, *, selection=None, **options) -> spectral_metrics.SpectralSummary:
        spectrum_fields = {k: options.pop(k) for k in list(options) if k in _SPECTRUM_FIELDS}
        opts = spectral_metrics.SpectralSummaryOptions(
            spectrum=self.settings.spectrum_options(selection=self._resolve(selection), **spectrum_fields),
            **options,
        )
        return spectral_metrics.summarize(y, t, opts, cache=self.spectrum_cache)

    def estimate_delay(self, t, x, y, *, selection=None, max_lag_seconds: Optional[float] = None):
        return cross_channel.estimate_delay(t, x, y, self._resolve(selection), max_lag_seconds)

    def transfer_function(self, input_signal, output_signal, t, *, selection=None, segments: int = 1):
        settings = self.settings
        options = cross_channel.TransferOptions(
            selection=self._resolve(selection),
            window_type=settings.window_type,
            detrend=settings.detrend,
            zero_pad_mode=settings.zero_pad_mode,
            zero_pad_factor=settings.zero_pad_factor,
            segments=segments,
        )
        return cross_channel.compute_transfer_function(input_signal, output_signal, t, options)

    def spectrogram(self, y, t, *, selection=None, **options) -> time_frequency.Spectrogram:
        options.setdefault("window_type", self.settings.window_type)
        opts = time_frequency.SpectrogramOptions(selection=self._resolve(selection), **options)
        return time_frequency.compute_spectrogram(y, t, opts)


__all__ = ["AnalysisEngine"]
