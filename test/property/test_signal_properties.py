"""
Property-based tests for the FFT core and the filter pipeline.

Invariants checked on arbitrary finite inputs:
1. inverse(forward(x)) reproduces x
2. Valid Savitzky-Golay configurations always produce finite output
3. Every pipeline preserves the series length
4. Spectra of finite data contain only finite values
"""
from __future__ import annotations

import numpy as np
from hypothesis import given, settings, strategies as st
from hypothesis.extra.numpy import arrays

from core import spectral
from core.conditioning import apply_pipeline, savitzky_golay
from core.spectral import compute_spectrum

finite = st.floats(min_value=-1e3, max_value=1e3, allow_nan=False, allow_infinity=False)
signals = arrays(np.float64, st.integers(min_value=1, max_value=256), elements=finite)

step_strategy = st.one_of(
    st.builds(lambda w: {"type": "movingAverage", "windowSize": w}, st.integers(1, 15)),
    st.builds(lambda w: {"type": "median", "windowSize": w}, st.integers(1, 15)),
    st.builds(lambda a: {"type": "iir", "alpha": a}, st.floats(min_value=0.01, max_value=1.0)),
    st.builds(lambda s: {"type": "gaussian", "sigma": s, "kernelSize": 7}, st.floats(min_value=0.1, max_value=5.0)),
    st.builds(lambda c: {"type": "lowPassFFT", "cutoffFreq": c}, st.floats(min_value=0.0, max_value=1e4)),
    st.builds(lambda c: {"type": "highPassFFT", "cutoffFreq": c}, st.floats(min_value=0.0, max_value=1e4)),
    st.builds(
        lambda c, b: {"type": "notchFFT", "centerFreq": c, "bandwidth": b},
        st.floats(min_value=0.0, max_value=500.0),
        st.floats(min_value=0.0, max_value=100.0),
    ),
    st.just({"type": "startStopNorm", "decayLength": 10, "autoOffset": True}),
    st.just({"type": "savitzkyGolay", "windowSize": 7, "polyOrder": 3}),
)


class TestFFTProperties:
    @given(x=signals)
    @settings(max_examples=50, deadline=None)
    def test_round_trip(self, x):
        fft = spectral.forward(x)
        back = spectral.inverse(fft.re, fft.im, x.size)
        scale = max(1.0, float(np.max(np.abs(x))))
        np.testing.assert_allclose(back, x, atol=1e-9 * scale * fft.length)

    @given(x=signals)
    @settings(max_examples=50, deadline=None)
    def test_padded_length_is_power_of_two(self, x):
        length = spectral.forward(x).length
        assert length >= x.size
        assert length & (length - 1) == 0

    @given(x=signals, window_type=st.sampled_from(spectral.WINDOW_TYPES))
    @settings(max_examples=50, deadline=None)
    def test_spectrum_values_finite(self, x, window_type):
        spectrum = compute_spectrum(x, np.arange(x.size) / 1000.0, {"window_type": window_type})
        assert np.all(np.isfinite(spectrum.magnitude))
        assert np.all(np.isfinite(spectrum.phase))
        assert np.all(spectrum.linear_magnitude >= 0)


class TestFilterProperties:
    @given(
        x=signals,
        order=st.integers(min_value=0, max_value=6),
        extra=st.integers(min_value=0, max_value=20),
        iterations=st.integers(min_value=1, max_value=4),
    )
    @settings(max_examples=50, deadline=None)
    def test_savitzky_golay_is_finite(self, x, order, extra, iterations):
        window = order + 2 + extra
        out = savitzky_golay(x, window, order, iterations=iterations)
        assert out.shape == x.shape
        assert np.all(np.isfinite(out))

    @given(x=signals, steps=st.lists(step_strategy, max_size=4))
    @settings(max_examples=50, deadline=None)
    def test_pipeline_preserves_length(self, x, steps):
        t = np.arange(x.size) / 1000.0
        out = apply_pipeline(x, t, steps)
        assert out.shape == x.shape
        assert np.all(np.isfinite(out))
