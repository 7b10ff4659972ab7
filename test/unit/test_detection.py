"""
Unit tests for trigger detection.

Each detector is exercised on hand-built series whose events can be listed
by inspection; `detect` is tested for source resolution, selection handling
and index mapping back to the caller's series.
"""
from __future__ import annotations

import numpy as np
import pytest

from core.detection import (
    DETECTOR_REGISTRY,
    EdgeSlopeDetector,
    LevelCrossingDetector,
    PulseWidthDetector,
    RuntPulseDetector,
    create_detector,
    detect,
    is_nonuniform_timebase,
)
from shared.cache import LRUCache
from shared.models import Selection, TraceRef, TriggerConfig
from test.fixtures.signal_generators import make_pulse_train


def _scan(config: TriggerConfig, t, y):
    detector = create_detector(config)
    return detector.scan(np.asarray(t, dtype=float), np.asarray(y, dtype=float))


class TestRegistry:
    def test_builtin_detectors_registered(self):
        assert DETECTOR_REGISTRY["level"] is LevelCrossingDetector
        assert DETECTOR_REGISTRY["edge"] is EdgeSlopeDetector
        assert DETECTOR_REGISTRY["pulse"] is PulseWidthDetector
        assert DETECTOR_REGISTRY["runt"] is RuntPulseDetector

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            detect([0.0, 1.0], [0.0, 1.0], config={"type": "window"})

    def test_parameters_describe_detector(self):
        params = LevelCrossingDetector().parameters
        assert set(params) == {"threshold", "hysteresis", "direction"}
        assert params["hysteresis"].min == 0.0


class TestLevelCrossing:
    def test_hysteresis_requires_clearing_band(self):
        y = [0.0, 0.6, 0.4, 0.6, -0.6, 0.6]
        events = _scan(TriggerConfig(threshold=0.0, hysteresis=0.5, direction="either"), np.arange(6.0), y)
        assert [e.index for e in events] == [1, 4, 5]
        assert [e.metadata["direction"] for e in events] == ["rising", "falling", "rising"]

    def test_rising_only_without_hysteresis(self):
        y = [0.0, 0.6, 0.4, 0.6, -0.6, 0.6]
        events = _scan(TriggerConfig(threshold=0.0), np.arange(6.0), y)
        # Starts "above" because y[0] >= threshold, so the first rise is not an event.
        assert [e.index for e in events] == [5]
        assert events[0].metadata["amplitude"] == 0.6

    def test_falling_direction(self):
        events = _scan(TriggerConfig(threshold=0.5, direction="falling"), np.arange(4.0), [1.0, 0.0, 1.0, 0.0])
        assert [e.index for e in events] == [1, 3]
        assert all(e.type == "level" for e in events)

    def test_nan_samples_are_skipped_and_indices_mapped(self):
        result = detect([0.0, 1.0, 2.0, 3.0], [10.0, float("nan"), 12.0, 13.0], config={"threshold": 11.0})
        assert len(result.events) == 1
        event = result.events[0]
        assert event.index == 2
        assert event.time == 2.0


class TestEdgeSlope:
    def test_slope_events_both_directions(self):
        events = _scan(
            TriggerConfig(type="edge", slope_threshold=1.0, direction="either"), np.arange(5.0), [0.0, 0.0, 2.0, 2.0, 0.0]
        )
        assert [(e.index, e.metadata["direction"]) for e in events] == [(1, "rising"), (3, "falling")]
        assert events[0].time == 1.0
        assert events[0].metadata["slope"] == pytest.approx(2.0)

    def test_rising_only(self):
        events = _scan(TriggerConfig(type="edge", slope_threshold=1.0), np.arange(5.0), [0.0, 0.0, 2.0, 2.0, 0.0])
        assert [e.index for e in events] == [1]

    def test_non_positive_dt_is_ignored(self):
        events = _scan(TriggerConfig(type="edge", slope_threshold=1.0), [0.0, 0.0, 1.0], [0.0, 5.0, 5.0])
        assert events == []


class TestPulseWidth:
    def test_two_pulses_in_window(self):
        t, y = make_pulse_train(200, 1e-3, [(21, 24), (101, 106)])
        result = detect(t, y, config={"type": "pulse", "threshold": 0.5, "minWidth": 0.003, "maxWidth": 0.008})
        assert len(result.events) == 2
        assert [e.index for e in result.events] == [21, 101]
        widths = [e.metadata["width"] for e in result.events]
        assert widths[0] == pytest.approx(0.004)
        assert widths[1] == pytest.approx(0.006)

    def test_width_limits_filter_pulses(self):
        t, y = make_pulse_train(200, 1e-3, [(21, 24), (101, 106)])
        result = detect(t, y, config=TriggerConfig(type="pulse", threshold=0.5, min_width=0.005))
        assert [e.index for e in result.events] == [101]

    def test_null_max_width_from_saved_config(self):
        t, y = make_pulse_train(200, 1e-3, [(21, 24), (101, 106)])
        result = detect(t, y, config={"type": "pulse", "threshold": 0.5, "maxWidth": None})
        assert [e.index for e in result.events] == [21, 101]

    def test_unterminated_pulse_is_not_reported(self):
        t, y = make_pulse_train(50, 1e-3, [(40, 49)])
        assert detect(t, y, config={"type": "pulse", "threshold": 0.5}).events == ()


class TestRunt:
    def test_short_excursion_is_runt(self):
        y = [0.0, 1.2, 0.0, 0.0, 1.2, 1.3, 1.2, 1.2, 0.0]
        events = _scan(
            TriggerConfig(type="runt", high_threshold=1.0, low_threshold=0.1, min_width=2.0), np.arange(9.0), y
        )
        assert len(events) == 1
        assert events[0].index == 1
        assert events[0].metadata["width"] == 1.0
        assert events[0].metadata["peak"] == 1.2


class TestDetect:
    def test_disabled_returns_no_events(self):
        t, y = make_pulse_train(50, 1e-3, [(10, 20)])
        result = detect(t, y, config={"enabled": False, "type": "pulse", "threshold": 0.5})
        assert result.events == ()

    def test_fewer_than_two_samples(self):
        result = detect([0.0], [5.0], config={"threshold": 1.0})
        assert result.events == ()

    def test_selection_only(self):
        t, y = make_pulse_train(200, 1e-3, [(21, 24), (101, 106)])
        config = {"type": "pulse", "threshold": 0.5}
        inside = detect(t, y, Selection(50, 199), config)
        assert [e.index for e in inside.events] == [101]
        everywhere = detect(t, y, Selection(50, 199), {**config, "selectionOnly": False})
        assert [e.index for e in everywhere.events] == [21, 101]

    def test_derivative_source_uses_cache(self):
        cache = LRUCache(4)
        t = np.arange(10.0)
        y = np.array([0.0, 0.0, 0.0, 1.0, 2.0, 3.0, 3.0, 3.0, 3.0, 3.0])
        config = TriggerConfig(source="derivative", threshold=0.5)
        trace = TraceRef(column_id="ch1")
        first = detect(t, y, config=config, trace=trace, derivative_cache=cache)
        second = detect(t, y, config=config, trace=trace, derivative_cache=cache)
        assert first.source_type == "derivative"
        assert [e.index for e in first.events] == [3]
        assert [e.index for e in second.events] == [3]
        assert cache.stats()["hits"] == 1

    def test_filtered_source_falls_back_to_raw(self):
        result = detect(np.arange(4.0), [0.0, 1.0, 0.0, 1.0], config={"source": "filtered", "threshold": 0.5})
        assert result.source_type == "raw"
        assert "Filtered series unavailable; scanning raw data." in result.warnings
        assert len(result.events) == 2

    def test_filtered_series_is_scanned(self):
        result = detect(
            np.arange(4.0),
            [0.0, 1.0, 0.0, 1.0],
            config={"source": "filtered", "threshold": 0.5},
            filtered=[0.0, 0.0, 0.0, 1.0],
        )
        assert result.source_type == "filtered"
        assert [e.index for e in result.events] == [3]

    def test_auto_follows_trace_source(self):
        result = detect(np.arange(3.0), [0.0, 1.0, 1.0], config={"threshold": 0.5}, trace=TraceRef(source="math"))
        assert result.source_type == "math"

    def test_x_offset_shifts_samples(self):
        result = detect(
            np.arange(5.0), [0.0, 0.0, 1.0, 1.0, 1.0], config={"threshold": 0.5}, trace=TraceRef(x_offset=1.0)
        )
        assert [e.index for e in result.events] == [3]

    def test_non_uniform_timebase_warning(self):
        result = detect([0.0, 1.0, 2.0, 4.0, 5.0], [0.0, 1.0, 0.0, 1.0, 0.0], config={"threshold": 0.5})
        assert "Timebase is non-uniform; event timing may be approximate." in result.warnings

    def test_to_dict(self):
        result = detect(np.arange(3.0), [0.0, 1.0, 1.0], config={"threshold": 0.5})
        as_dict = result.to_dict()
        assert as_dict["events"][0]["index"] == 1
        assert as_dict["source_type"] == "raw"


class TestNonUniformTimebase:
    def test_uniform(self):
        assert not is_nonuniform_timebase(np.arange(10) * 1e-3)

    def test_too_short(self):
        assert not is_nonuniform_timebase(np.array([0.0, 5.0]))

    def test_one_percent_deviation(self):
        t = np.cumsum([0.0, 1.0, 1.0, 1.05, 1.0])
        assert is_nonuniform_timebase(t)
