"""
Unit tests for the analysis context: settings store, selection listeners,
caches and the thread-pool worker.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError

import numpy as np
import pytest

from analysis import AnalysisEngine, AnalysisSettings, AnalysisSettingsStore, AnalysisWorker, JobCancelled
from analysis import analysis_worker
from analysis.cross_channel import estimate_delay
from core.spectral import SpectrumOptions, compute_spectrum
from shared.models import Selection
from test.fixtures.signal_generators import make_pulse_train, make_sine


class TestSettingsStore:
    def test_invalid_update_rejected(self):
        store = AnalysisSettingsStore()
        with pytest.raises(ValueError):
            store.update(window_type="triangle")
        assert store.get().window_type == "hann"

    def test_invalid_initial_settings(self):
        with pytest.raises(ValueError):
            AnalysisSettingsStore(AnalysisSettings(spectrum_cache_size=0))

    def test_subscribe_replays_and_unsubscribes(self):
        store = AnalysisSettingsStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)
        store.update(detrend="none")
        unsubscribe()
        store.update(detrend="removeLinear")
        assert [s.detrend for s in seen] == ["removeMean", "none"]

    def test_failing_subscriber_is_logged(self, caplog):
        store = AnalysisSettingsStore()

        def broken(_settings):
            raise RuntimeError("boom")

        seen = []
        store.subscribe(broken, replay=False)
        store.subscribe(seen.append, replay=False)
        with caplog.at_level(logging.ERROR, logger="analysis.settings"):
            store.update(zero_pad_mode="none")
        assert len(seen) == 1
        assert "Settings subscriber" in caplog.text

    def test_spectrum_options_overrides(self):
        settings = AnalysisSettings(window_type="blackman")
        opts = settings.spectrum_options(detrend="none")
        assert opts.window_type == "blackman"
        assert opts.detrend == "none"


class TestEngineSelection:
    def test_listeners_fire_on_change_only(self):
        engine = AnalysisEngine()
        seen = []
        engine.on_selection_change(seen.append)
        engine.set_selection(Selection(2, 5))
        engine.set_selection({"i0": 2, "i1": 5})
        assert seen == [Selection(2, 5)]
        assert engine.selection.key() == (2, 5)

    def test_unsubscribe(self):
        engine = AnalysisEngine()
        seen = []
        unsubscribe = engine.on_selection_change(seen.append)
        unsubscribe()
        engine.set_selection(Selection(0, 1))
        assert seen == []

    def test_listener_failure_does_not_block_others(self, caplog):
        engine = AnalysisEngine()
        seen = []

        def broken(_sel):
            raise RuntimeError("boom")

        engine.on_selection_change(broken)
        engine.on_selection_change(seen.append)
        with caplog.at_level(logging.ERROR, logger="analysis.engine"):
            engine.set_selection(Selection(1, 2))
        assert len(seen) == 1
        assert "Selection listener" in caplog.text

    def test_range_selection_and_clear(self):
        engine = AnalysisEngine()
        t = np.arange(10.0)
        sel = engine.update_selection_from_range((2.5, 6.5), t)
        assert sel.key() == (3, 6)
        assert engine.update_selection_from_range(None, t).is_full

    def test_engine_selection_is_default_for_analyses(self):
        engine = AnalysisEngine()
        t = np.arange(10.0)
        engine.set_selection(Selection(5, 9))
        assert engine.measure(t, t).metrics["min"] == 5.0
        # An explicit selection wins over the engine's.
        assert engine.measure(t, t, selection=Selection(0, 2)).metrics["max"] == 2.0


class TestEngineAnalyses:
    def test_spectrum_uses_settings_and_cache(self):
        engine = AnalysisEngine(AnalysisSettingsStore(AnalysisSettings(window_type="rectangular")))
        t, y = make_sine(64.0, 1.0, 1.0, 1024.0)
        first = engine.spectrum(y, t)
        second = engine.spectrum(y, t)
        assert first is second
        assert engine.cache_stats()["spectrum"]["hits"] == 1
        assert first.meta.coherent_gain == 1.0

    def test_cache_resize_on_settings_change(self):
        store = AnalysisSettingsStore()
        engine = AnalysisEngine(store)
        store.update(spectrum_cache_size=3)
        assert engine.spectrum_cache.capacity == 3
        store.update(window_type="hamming")
        assert engine.spectrum_cache.capacity == 3

    def test_cache_stats_consistent_while_resizing(self):
        store = AnalysisSettingsStore()
        engine = AnalysisEngine(store)
        errors = []

        def resize():
            for size in range(1, 200):
                store.update(spectrum_cache_size=size, measurement_cache_size=size, derivative_cache_size=size)

        def read():
            try:
                for _ in range(200):
                    assert set(engine.cache_stats()) == {"spectrum", "measurements", "derivative"}
                    engine.clear_caches()
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=resize), threading.Thread(target=read)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        assert errors == []
        stats = engine.cache_stats()
        assert {s["capacity"] for s in stats.values()} == {199}

    def test_close_stops_following_settings(self):
        store = AnalysisSettingsStore()
        engine = AnalysisEngine(store)
        engine.close()
        store.update(spectrum_cache_size=7)
        assert engine.spectrum_cache.capacity == 64

    def test_detect_and_clear_caches(self):
        engine = AnalysisEngine()
        t, y = make_pulse_train(100, 1e-3, [(10, 20), (50, 60)])
        result = engine.detect(t, y, {"type": "pulse", "threshold": 0.5, "source": "derivative"})
        assert result.source_type == "derivative"
        assert len(engine.derivative_cache) == 1
        engine.clear_caches()
        assert len(engine.derivative_cache) == 0

    def test_summarize_splits_spectrum_options(self):
        engine = AnalysisEngine()
        t, y = make_sine(64.0, 1.0, 1.0, 1024.0)
        summary = engine.summarize(y, t, window_type="rectangular", harmonic_count=2)
        assert summary.fundamental_hz == pytest.approx(64.0)
        assert len(summary.harmonics) == 2

    def test_cross_channel_and_spectrogram(self):
        engine = AnalysisEngine()
        t, y = make_sine(50.0, 1.0, 1.0, 1000.0)
        transfer = engine.transfer_function(y, 3.0 * y, t)
        assert transfer.freq.size > 0
        spectrogram = engine.spectrogram(y, t, window_size=128)
        assert spectrogram.n_frames > 0


class TestAnalysisWorker:
    def test_should_offload(self):
        with AnalysisWorker(threshold=100) as worker:
            assert not worker.should_offload(100)
            assert worker.should_offload(101)
            assert not worker.should_offload(True)
            assert not worker.should_offload(500.0)

    def test_fft_job_matches_inline(self):
        t, y = make_sine(64.0, 1.0, 1.0, 1024.0)
        options = SpectrumOptions(window_type="hann")
        with AnalysisWorker() as worker:
            result = worker.submit("fft", {"signal": y, "time": t, "options": options}).result(timeout=10)
        inline = compute_spectrum(y, t, options)
        np.testing.assert_array_equal(result.magnitude, inline.magnitude)

    def test_correlation_job(self):
        rng = np.random.default_rng(1)
        x = rng.normal(size=1000)
        y = np.concatenate([np.zeros(5), x[:-5]])
        t = np.arange(1000) / 1000.0
        with AnalysisWorker() as worker:
            future = worker.submit("correlation", {"time": t, "x": x, "y": y, "options": {"max_lag_seconds": 0.02}})
            result = future.result(timeout=10)
        assert result.lag_samples == estimate_delay(t, x, y, max_lag_seconds=0.02).lag_samples == 5

    def test_from_settings_uses_threshold_and_pool_size(self):
        settings = AnalysisSettings(offload_threshold=10, max_workers=3)
        with AnalysisWorker.from_settings(settings) as worker:
            assert worker.threshold == 10
            assert worker.should_offload(11)
            assert worker._executor._max_workers == 3

    def test_unknown_job_type(self):
        with AnalysisWorker() as worker:
            with pytest.raises(ValueError):
                worker.submit("wavelet", {})

    def test_submit_after_shutdown(self):
        worker = AnalysisWorker()
        worker.shutdown()
        assert not worker.should_offload(10**9)
        with pytest.raises(RuntimeError):
            worker.submit("fft", {})

    def test_cancel_all_discards_running_and_queued(self):
        started = threading.Event()
        release = threading.Event()
        worker = AnalysisWorker(max_workers=1)
        try:
            def blocking(_payload):
                started.set()
                release.wait(timeout=10)
                return "done"

            analysis_worker.JOB_HANDLERS["_blocking"] = blocking
            running = worker.submit("_blocking", {})
            queued = worker.submit("_blocking", {})
            assert started.wait(timeout=10)
            assert worker.cancel_all() == 1
            release.set()
            with pytest.raises(JobCancelled):
                running.result(timeout=10)
            with pytest.raises(CancelledError):
                queued.result(timeout=10)
        finally:
            release.set()
            analysis_worker.JOB_HANDLERS.pop("_blocking", None)
            worker.shutdown()
