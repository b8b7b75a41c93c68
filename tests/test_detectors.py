"""
Tests for the individual outbreak detection algorithms.
"""

import statistics

import numpy as np
import pytest

from surveillance_src.detectors import (
    CusumDetector,
    EWMADetector,
    FarringtonDetector,
    MLAnomalyDetector,
    SpatialScanStatistic,
    ar_trend,
    canonical_name,
)
from surveillance_src.errors import AlgorithmConfigInvalid
from surveillance_src.models import Sensitivity

IN_CONTROL = [9.0, 11.0] * 20


class TestCusumDetector:
    """Standardized two-sided CUSUM."""

    def test_shift_fires_at_predicted_index(self):
        baseline = [9.0, 11.0] * 4
        sigma = statistics.stdev(baseline)
        # Each shifted point adds (2 sigma / sigma) - k = 1.5; h = 5 is crossed on the fourth
        shifted = [10.0 + 2 * sigma] * 6
        detector = CusumDetector("medium", k=0.5, h=5.0, min_baseline=8)

        signals = detector.run(baseline + shifted)

        first = signals[0]
        assert first.index == 11
        assert first.evidence_start == 8
        assert first.statistic == pytest.approx(6.0)
        assert first.score == pytest.approx(1.2)

    def test_drop_fires_lower_arm(self):
        baseline = [9.0, 11.0] * 4
        sigma = statistics.stdev(baseline)
        dropped = [10.0 - 2 * sigma] * 6
        detector = CusumDetector("medium", k=0.5, h=5.0, min_baseline=8)

        signals = detector.run(baseline + dropped)

        first = signals[0]
        assert first.direction == "down"
        assert first.index == 11
        assert first.evidence_start == 8
        assert first.statistic == pytest.approx(6.0)

    def test_alternating_series_keeps_updating_baseline(self):
        detector = CusumDetector("medium", min_baseline=8, baseline_window=10)
        state = detector.new_state()
        signals = []
        for index, value in enumerate([9.0, 11.0] * 4 + [8.0, 12.0] * 10):
            signals.append(detector.update(state, value, index))
        # each arm returns to zero on the next point, releasing what it held
        assert signals == [None] * 28
        assert len(state.held) <= 1
        assert set(state.baseline) == {8.0, 12.0}

    def test_in_control_series_is_quiet(self):
        assert CusumDetector().run(IN_CONTROL) == []

    def test_no_signal_during_baseline(self):
        assert CusumDetector().run([1.0, 100.0, 1.0, 100.0, 1.0, 100.0, 1.0]) == []

    def test_sensitivity_sets_limit(self):
        assert CusumDetector("low").params["h"] == 6.0
        assert CusumDetector("medium").params["h"] == 5.0
        assert CusumDetector(Sensitivity.HIGH).params["h"] == 4.0

    def test_unknown_parameter_rejected(self):
        with pytest.raises(AlgorithmConfigInvalid):
            CusumDetector(threshold=3)

    @pytest.mark.parametrize("overrides", [
        {"h": -1},
        {"k": "big"},
        {"min_baseline": 2.5},
        {"h": float("nan")},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(AlgorithmConfigInvalid):
            CusumDetector(**overrides)

    def test_unknown_sensitivity_rejected(self):
        with pytest.raises(AlgorithmConfigInvalid):
            CusumDetector("extreme")


class TestEWMADetector:
    """EWMA control chart."""

    def test_step_is_detected(self):
        signals = EWMADetector().run([9.0, 11.0] * 5 + [20.0])
        assert [s.index for s in signals] == [10]
        assert signals[0].evidence_start == 10
        assert signals[0].score > 1.0

    def test_in_control_series_is_quiet(self):
        assert EWMADetector().run(IN_CONTROL) == []

    def test_drop_signals_down(self):
        signals = EWMADetector("high").run([10, 11, 9, 10, 11, 9, 10, 10, 0, 0])
        assert signals[0].index == 8
        assert signals[0].direction == "down"
        assert signals[0].statistic < 0
        assert signals[0].score > 1.0

    def test_rise_signals_up(self):
        signals = EWMADetector().run([9.0, 11.0] * 5 + [20.0])
        assert signals[0].direction == "up"
        assert signals[0].to_dict()["direction"] == "up"

    def test_lambda_bounds(self):
        with pytest.raises(AlgorithmConfigInvalid):
            EWMADetector(lambda_=1.5)


class TestFarringtonDetector:
    """Exceedance over a reference prediction limit."""

    def test_spike_is_detected(self):
        signals = FarringtonDetector().run([10.0, 12.0] * 10 + [40.0])
        assert [s.index for s in signals] == [20]
        assert signals[0].statistic == 40.0
        assert signals[0].threshold < 40.0

    def test_in_control_series_is_quiet(self):
        assert FarringtonDetector().run([10.0, 12.0] * 15) == []

    def test_seasonal_reference_points(self):
        detector = FarringtonDetector(b=2, w=1, season_length=7)
        xs, _ = detector.reference_points([float(i) for i in range(20)], 20)
        assert list(xs) == [5, 6, 7, 12, 13, 14]

    def test_falls_back_to_recent_points(self):
        detector = FarringtonDetector(fallback_window=4)
        xs, ys = detector.reference_points([1.0, 2.0, 3.0, 4.0, 5.0, 6.0], 6)
        assert list(xs) == [2, 3, 4, 5]
        assert list(ys) == [3.0, 4.0, 5.0, 6.0]

    def test_no_limit_without_reference(self):
        assert FarringtonDetector().threshold([1.0, 2.0], 2) is None

    def test_higher_sensitivity_lowers_limit(self):
        history = [10.0, 12.0] * 10
        _, low = FarringtonDetector("low").threshold(history, 20)
        _, high = FarringtonDetector("high").threshold(history, 20)
        assert high < low


class TestMLAnomalyDetector:
    """Isolation forest over recent values."""

    def test_spike_is_detected(self):
        values = [10.0 + (i % 3) for i in range(25)] + [100.0]
        signals = MLAnomalyDetector(random_state=0).run(values)
        assert 25 in [s.index for s in signals]

    def test_no_signal_while_training(self):
        assert MLAnomalyDetector(random_state=0).run([1.0] * 9 + [500.0]) == []

    def test_reproducible_with_seed(self):
        values = [10.0 + (i % 3) for i in range(25)] + [100.0, 14.0, 90.0]
        first = MLAnomalyDetector(random_state=1).run(values)
        second = MLAnomalyDetector(random_state=1).run(values)
        assert first == second

    def test_contamination_bounds(self):
        with pytest.raises(AlgorithmConfigInvalid):
            MLAnomalyDetector(contamination=0.9)


class TestSpatialScanStatistic:
    """Kulldorff scan over regions."""

    REGIONS = [f"r{i}" for i in range(10)]

    @pytest.fixture
    def scanner(self):
        return SpatialScanStatistic(simulations=199, seed=7, max_cluster_fraction=0.5)

    def test_uniform_density_has_no_cluster(self, scanner):
        observed = {r: 100.0 for r in self.REGIONS}
        expected = {r: 100.0 for r in self.REGIONS}
        assert scanner.scan(observed, expected) == []

    def test_single_hot_region(self, scanner):
        observed = {r: 100.0 for r in self.REGIONS}
        observed["r3"] = 500.0
        expected = {r: 100.0 for r in self.REGIONS}

        clusters = scanner.scan(observed, expected)

        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.regions == ("r3",)
        assert cluster.p_value < 0.05
        assert cluster.relative_risk > 3

    def test_adjacent_hot_regions_form_one_zone(self, scanner):
        coordinates = {r: (0.0, float(i)) for i, r in enumerate(self.REGIONS)}
        observed = {r: 100.0 for r in self.REGIONS}
        observed["r0"] = observed["r1"] = 500.0
        expected = {r: 100.0 for r in self.REGIONS}

        clusters = scanner.scan(observed, expected, coordinates)

        assert clusters[0].regions == ("r0", "r1")

    def test_identical_inputs_give_identical_p_values(self, scanner):
        observed = {r: 100.0 + 10 * i for i, r in enumerate(self.REGIONS)}
        observed["r9"] = 400.0
        expected = {r: 100.0 for r in self.REGIONS}
        again = SpatialScanStatistic(simulations=199, seed=7, max_cluster_fraction=0.5)
        assert scanner.scan(observed, expected) == again.scan(observed, expected)

    def test_zones_follow_nearest_neighbours(self):
        scanner = SpatialScanStatistic(simulations=99, max_cluster_fraction=0.7)
        coordinates = {"a": (0.0, 0.0), "b": (0.0, 1.0), "c": (0.0, 2.0)}
        zones = scanner.zones(["a", "b", "c"], np.ones(3), coordinates)
        assert zones == [(0,), (0, 1), (1,), (1, 2), (2,)]

    def test_needs_two_regions(self, scanner):
        assert scanner.scan({"r0": 50.0}, {"r0": 10.0}) == []

    def test_invalid_alpha(self):
        with pytest.raises(AlgorithmConfigInvalid):
            SpatialScanStatistic(alpha=1.5)


class TestTrend:
    def test_rising(self):
        trend = ar_trend([float(i) for i in range(1, 21)])
        assert trend.direction == "rising"
        assert trend.projection[0] == pytest.approx(21.0)

    def test_falling(self):
        assert ar_trend([float(i) for i in range(20, 0, -1)]).direction == "falling"

    def test_stable(self):
        assert ar_trend([5.0] * 12).direction == "stable"

    def test_too_short(self):
        assert ar_trend([1.0, 2.0, 3.0]) is None


class TestCanonicalName:
    def test_aliases(self):
        assert canonical_name("isolation_forest") == "ml_anomaly"
        assert canonical_name(" CUSUM ") == "cusum"
        assert canonical_name("spatial_scan") == "spatial_scan"

    def test_unsupported(self):
        with pytest.raises(AlgorithmConfigInvalid):
            canonical_name("lstm_forecasting")
