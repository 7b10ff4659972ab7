"""
Unit tests for spectral figures of merit.

Helper functions are checked on hand-built magnitude arrays with a 1 Hz
bin spacing so that every expected value can be read off directly.
`summarize` is checked end to end on on-bin tones.
"""
from __future__ import annotations

import math

import numpy as np
import pytest

from analysis import spectral_metrics as sm
from shared.cache import LRUCache
from test.fixtures.signal_generators import make_sine


def _harmonic_mix():
    freq = np.arange(101, dtype=float)
    mag = np.zeros(101)
    mag[10] = 1.0
    mag[20] = 0.1
    mag[30] = 0.05
    return freq, mag


class TestPeaks:
    def test_sorted_by_magnitude(self):
        freq = np.arange(10, dtype=float)
        mag = np.array([0.0, 1.0, 0.0, 0.0, 3.0, 0.0, 0.0, 2.0, 0.0, 0.0])
        peaks = sm.compute_peaks(freq, mag)
        assert [(p.freq, p.magnitude) for p in peaks] == [(4.0, 3.0), (7.0, 2.0), (1.0, 1.0)]

    def test_max_peaks_limit(self):
        freq = np.arange(10, dtype=float)
        mag = np.array([0.0, 1.0, 0.0, 0.0, 3.0, 0.0, 0.0, 2.0, 0.0, 0.0])
        assert len(sm.compute_peaks(freq, mag, max_peaks=2)) == 2

    def test_prominence_rejects_small_bumps(self):
        freq = np.arange(7, dtype=float)
        mag = np.array([0.0, 0.001, 0.0, 1.0, 0.0, 0.0, 0.0])
        peaks = sm.compute_peaks(freq, mag, prominence=0.01)
        assert [p.index for p in peaks] == [3]

    def test_too_short(self):
        assert sm.compute_peaks([0.0, 1.0], [1.0, 2.0]) == []


class TestHarmonicsAndDistortion:
    def test_harmonics_land_on_multiples(self):
        freq, mag = _harmonic_mix()
        harmonics = sm.compute_harmonics(freq, mag, 10.0, count=3)
        assert [(h.order, h.freq, h.magnitude) for h in harmonics] == [(1, 10.0, 1.0), (2, 20.0, 0.1), (3, 30.0, 0.05)]

    def test_thd_of_known_mix(self):
        freq, mag = _harmonic_mix()
        value = sm.thd(freq, mag, 10.0, 5)
        assert value == pytest.approx(math.sqrt(0.1**2 + 0.05**2))

    def test_thd_undefined_without_fundamental(self):
        freq, mag = _harmonic_mix()
        assert sm.thd(freq, mag, None) is None
        assert sm.thd(freq, mag, 15.0) is None

    def test_snr_none_without_noise(self):
        freq = np.arange(11, dtype=float)
        mag = np.zeros(11)
        mag[5] = 1.0
        assert sm.snr(freq, mag, 5.0) is None

    def test_snr_power_ratio(self):
        freq = np.arange(11, dtype=float)
        mag = np.zeros(11)
        mag[5] = 1.0
        mag[2] = 0.1
        assert sm.snr(freq, mag, 5.0) == pytest.approx(100.0)

    def test_snr_signal_bin_is_not_width_weighted(self):
        """With 2 Hz bins only the band total carries the bin width."""
        freq = np.arange(11, dtype=float) * 2.0
        mag = np.full(11, 0.1)
        mag[3] = 1.0
        # total = 2 * (1 + 10 * 0.01) = 2.2; noise = 2.2 - 1.0
        assert sm.snr(freq, mag, 6.0) == pytest.approx(1.0 / 1.2)

    def test_spur_skips_harmonics(self):
        freq, mag = _harmonic_mix()
        mag[33] = 0.2
        result = sm.spur(freq, mag, 10.0, harmonic_count=3)
        assert result.freq == 33.0
        assert result.magnitude == pytest.approx(0.2)

    def test_bandpower(self):
        freq = np.arange(11, dtype=float)
        mag = np.ones(11)
        assert sm.bandpower(freq, mag) == pytest.approx(11.0)
        assert sm.bandpower(freq, mag, 2.0, 4.0) == pytest.approx(3.0)


class TestSummarize:
    def test_auto_fundamental_and_thd(self):
        t, fundamental = make_sine(64.0, 1.0, 1.0, 1024.0)
        _, second = make_sine(128.0, 0.1, 1.0, 1024.0)
        summary = sm.summarize(fundamental + second, t, {"window_type": "rectangular", "detrend": "none"})
        assert summary.fundamental_hz == pytest.approx(64.0)
        assert summary.peaks[0].freq == pytest.approx(64.0)
        assert summary.thd == pytest.approx(0.1, rel=1e-3)
        assert summary.snr == pytest.approx(100.0, rel=1e-3)
        assert summary.harmonics[1].freq == pytest.approx(128.0)

    def test_explicit_fundamental(self):
        t, y = make_sine(64.0, 1.0, 1.0, 1024.0)
        options = sm.SpectralSummaryOptions.coerce(
            {"fundamental_hz": 64.0, "harmonic_count": 2, "spectrum": {"window_type": "rectangular"}}
        )
        summary = sm.summarize(y, t, options)
        assert summary.fundamental_hz == 64.0
        assert len(summary.harmonics) == 2

    def test_empty_spectrum(self):
        summary = sm.summarize_from_spectrum(None)
        assert summary.peaks == ()
        assert summary.fundamental_hz is None
        assert summary.thd is None and summary.snr is None
        assert summary.spur.freq is None
        assert summary.bandpower == 0.0

    def test_invalid_options(self):
        with pytest.raises(ValueError):
            sm.summarize(np.ones(16), None, {"max_peaks": 0})

    def test_uses_spectrum_cache(self):
        cache = LRUCache(2)
        t, y = make_sine(64.0, 1.0, 0.25, 1024.0)
        sm.summarize(y, t, cache=cache)
        sm.summarize(y, t, cache=cache)
        assert cache.stats()["hits"] == 1
