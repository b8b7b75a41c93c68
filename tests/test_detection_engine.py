"""
Tests for consensus detection, spatial alerts and alert lifecycle.
"""

from dataclasses import replace
from datetime import datetime

import pytest

from surveillance_src.detector import (
    DetectionPlan,
    OutbreakDetectionEngine,
    assess_risk,
    risk_level,
)
from surveillance_src.detectors import BaseDetector
from surveillance_src.errors import AlgorithmConfigInvalid
from surveillance_src.models import (
    AlertSeverity,
    AlertStatus,
    Sensitivity,
    StreamRef,
)

from factories import DAY, make_alert, make_stream

NOW = datetime(2024, 6, 1, 8, 0)
OUTBREAK = [9.0, 11.0] * 6 + [30.0, 30.0, 30.0]
REGIONS = [f"r{i}" for i in range(10)]


class ScriptedDetector(BaseDetector):
    """Signals at fixed indices."""

    DEFAULTS = {s: {} for s in Sensitivity}

    def __init__(self, name, fire_at, direction="up"):
        self.name = name
        self.fire_at = set(fire_at)
        self.direction = direction
        super().__init__()

    def new_state(self):
        return None

    def update(self, state, value, index):
        if index in self.fire_at:
            return self._signal(index, value, 1.0, 2.0, index, self.direction)
        return None


@pytest.fixture
def engine():
    return OutbreakDetectionEngine(
        algorithms=["cusum", "ewma", "farrington"],
        sensitivity="medium",
        min_votes=2,
        corroboration_window=2,
        clock=lambda: NOW,
    )


def _regional_streams(last_values):
    return [
        make_stream([100.0] * 5 + [last_values.get(region, 100.0)], region=region)
        for region in REGIONS
    ]


class TestPlan:
    """Validation of the detector set."""

    def test_aliases_resolve(self, engine):
        plan = engine.plan(["isolation_forest", "CUSUM"])
        assert plan.algorithm_names == ["ml_anomaly", "cusum"]

    def test_unsupported_algorithm(self, engine):
        with pytest.raises(AlgorithmConfigInvalid):
            engine.plan(["lstm_forecasting"])

    def test_min_votes_cannot_exceed_detectors(self, engine):
        with pytest.raises(AlgorithmConfigInvalid):
            engine.plan(min_votes=4)

    def test_default_votes_capped_by_detector_count(self):
        engine = OutbreakDetectionEngine(algorithms=["cusum"])
        assert engine.plan().min_votes == 1

    def test_overrides_for_unrequested_algorithms(self, engine):
        with pytest.raises(AlgorithmConfigInvalid):
            engine.plan(["cusum"], overrides={"ewma": {"L": 3.0}})

    def test_engine_overrides_follow_requested_algorithms(self):
        engine = OutbreakDetectionEngine(
            algorithms=["cusum", "ewma"], overrides={"ewma": {"L": 3.0}}
        )
        assert engine.plan(["cusum"]).algorithm_names == ["cusum"]
        ewma = engine.plan(["ewma"]).detectors[0]
        assert ewma.params["L"] == 3.0

    def test_invalid_override_value(self, engine):
        with pytest.raises(AlgorithmConfigInvalid):
            engine.plan(["cusum"], overrides={"cusum": {"h": -2}})

    def test_spatial_override_is_checked(self, engine):
        with pytest.raises(AlgorithmConfigInvalid):
            engine.plan(["spatial_scan"], overrides={"spatial_scan": {"radius": 5}})


class TestConsensus:
    """N-of-M voting over one stream."""

    def test_outbreak_raises_one_consensus_alert(self, engine):
        alerts = engine.detect(make_stream(OUTBREAK))

        alert = alerts[0]
        assert alert.evidence_last_index == 12
        assert alert.evidence_first_index <= 12
        assert set(alert.algorithms) == {"cusum", "ewma", "farrington"}
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.score == pytest.approx(1.0)
        assert alert.status == AlertStatus.OPEN
        assert alert.created_at == NOW
        assert alert.trend["direction"] in ("rising", "falling", "stable")
        assert alert.stream_key == "flu:north"

    def test_quiet_stream_raises_nothing(self, engine):
        assert engine.detect(make_stream([9.0, 11.0] * 15)) == []

    def test_collapse_raises_nothing(self, engine):
        assert engine.detect(make_stream([9.0, 11.0] * 6 + [0.0, 0.0, 0.0])) == []

    def test_drop_signals_do_not_vote(self):
        engine = OutbreakDetectionEngine(["cusum"], corroboration_window=2, clock=lambda: NOW)
        plan = DetectionPlan(
            [ScriptedDetector("a", [5]), ScriptedDetector("b", [6], direction="down")], None, 2
        )
        stream = make_stream([1.0] * 10)
        state = engine.new_state(stream.ref, plan)

        assert engine.evaluate(stream, state, plan) == []
        assert "b" not in state.pending_votes

    def test_votes_within_corroboration_window_combine(self):
        engine = OutbreakDetectionEngine(["cusum"], corroboration_window=2, clock=lambda: NOW)
        plan = DetectionPlan([ScriptedDetector("a", [5]), ScriptedDetector("b", [7])], None, 2)
        stream = make_stream([1.0] * 10)

        alerts = engine.evaluate(stream, engine.new_state(stream.ref, plan), plan)

        assert [a.evidence_last_index for a in alerts] == [7]
        assert alerts[0].evidence_first_index == 5
        assert sorted(alerts[0].algorithms) == ["a", "b"]

    def test_votes_outside_corroboration_window_expire(self):
        engine = OutbreakDetectionEngine(["cusum"], corroboration_window=1, clock=lambda: NOW)
        plan = DetectionPlan([ScriptedDetector("a", [5]), ScriptedDetector("b", [7])], None, 2)
        stream = make_stream([1.0] * 10)

        assert engine.evaluate(stream, engine.new_state(stream.ref, plan), plan) == []

    def test_single_vote_is_not_enough(self):
        engine = OutbreakDetectionEngine(["cusum"], corroboration_window=5, clock=lambda: NOW)
        plan = DetectionPlan([ScriptedDetector("a", [3, 4]), ScriptedDetector("b", [])], None, 2)
        stream = make_stream([1.0] * 8)

        assert engine.evaluate(stream, engine.new_state(stream.ref, plan), plan) == []

    def test_incremental_evaluation_matches_one_shot(self, engine):
        full = make_stream(OUTBREAK)
        partial = make_stream(OUTBREAK[:12])
        plan = engine.plan()
        state = engine.new_state(partial.ref, plan)

        first = engine.evaluate(partial, state, plan)
        partial.extend(full.estimates[12:])
        second = engine.evaluate(partial, state, plan)

        assert first == []
        assert state.cursor == len(OUTBREAK)
        assert [a.id for a in second] == [a.id for a in engine.detect(full)]

    def test_state_must_match_stream(self, engine):
        state = engine.new_state(StreamRef("flu", "south"))
        with pytest.raises(ValueError):
            engine.evaluate(make_stream(OUTBREAK), state)

    def test_alert_ids_are_deterministic(self, engine):
        first = engine.detect(make_stream(OUTBREAK))
        second = engine.detect(make_stream(OUTBREAK))
        assert [a.id for a in first] == [a.id for a in second]


class TestSpatialAlerts:
    """Spatial scan across the regions of one disease."""

    OVERRIDES = {"spatial_scan": {"simulations": 199, "seed": 3}}

    def test_hot_region_raises_one_alert(self, engine):
        streams = _regional_streams({"r3": 500.0})

        alerts = engine.detect_many(streams, algorithms=["spatial_scan"], overrides=self.OVERRIDES)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.region == "r3"
        assert alert.cluster_regions == ["r3"]
        assert list(alert.algorithms) == ["spatial_scan"]
        assert alert.evidence_last_index == 5
        assert alert.severity == AlertSeverity.CRITICAL

    def test_uniform_regions_raise_nothing(self, engine):
        streams = _regional_streams({})
        assert engine.detect_many(streams, algorithms=["spatial_scan"],
                                  overrides=self.OVERRIDES) == []

    def test_short_streams_are_skipped(self, engine):
        streams = [make_stream([500.0 if r == "r3" else 100.0], region=r) for r in REGIONS]
        assert engine.detect_many(streams, algorithms=["spatial_scan"],
                                  overrides=self.OVERRIDES) == []

    def test_combined_with_stream_detectors(self, engine):
        streams = _regional_streams({"r3": 500.0})
        alerts = engine.detect_many(streams, algorithms=["cusum", "spatial_scan"],
                                    overrides=self.OVERRIDES, min_votes=1)
        assert any(a.cluster_regions == ["r3"] for a in alerts)


class TestOutbreakAlertLifecycle:
    """Acknowledge and resolve transitions."""

    @pytest.fixture
    def alert(self, engine):
        return engine.detect(make_stream(OUTBREAK))[0]

    def test_acknowledge_then_resolve(self, alert):
        alert.acknowledge("epi-team", at=NOW)
        assert alert.status == AlertStatus.ACKNOWLEDGED
        assert alert.acknowledged_by == "epi-team"

        alert.resolve("epi-team", notes="confirmed cluster", at=NOW)
        assert alert.status == AlertStatus.RESOLVED
        assert alert.to_dict()["resolution_notes"] == "confirmed cluster"

    def test_resolve_directly(self, alert):
        alert.resolve("epi-team")
        assert alert.status == AlertStatus.RESOLVED

    def test_resolved_is_terminal(self, alert):
        alert.resolve("epi-team")
        with pytest.raises(ValueError):
            alert.resolve("epi-team")
        with pytest.raises(ValueError):
            alert.acknowledge("epi-team")

    def test_acknowledge_once(self, alert):
        alert.acknowledge("epi-team")
        with pytest.raises(ValueError):
            alert.acknowledge("someone-else")


class TestRiskAssessment:
    """Rolling alerts up into an overall risk level."""

    def test_factors_and_weighted_score(self):
        alerts = [
            make_alert("a1", region="north", severity=AlertSeverity.HIGH),
            make_alert("a2", region="south", severity=AlertSeverity.CRITICAL),
        ]

        risk = assess_risk(alerts, clock=lambda: NOW)

        assert risk.factors == {
            "alert_severity": pytest.approx(0.875),
            "geographic_spread": pytest.approx(0.2),
            "temporal_acceleration": pytest.approx(0.4),
        }
        assert risk.overall_risk == pytest.approx(0.3825 / 0.7)
        assert risk.risk_level == "medium"
        assert risk.recommendations == []
        assert risk.to_dict()["assessed_at"] == NOW.isoformat()

    def test_optional_factors_join_the_weighting(self):
        alerts = [
            make_alert("a1", region="north", severity=AlertSeverity.HIGH),
            make_alert("a2", region="south", severity=AlertSeverity.CRITICAL),
        ]

        risk = assess_risk(alerts, population_vulnerability=1.0, capacity_strain=1.0)

        assert risk.overall_risk == pytest.approx(0.6825)
        assert risk.risk_level == "high"
        assert risk.recommendations == [
            "Activate enhanced surveillance protocols",
            "Consider implementing containment measures",
        ]

    def test_widespread_burst_is_critical(self):
        alerts = [make_alert(f"a{i}", region=f"r{i}") for i in range(12)]

        risk = assess_risk(alerts)

        assert risk.factors["geographic_spread"] == 1.0
        assert risk.factors["temporal_acceleration"] == 1.0
        assert risk.risk_level == "critical"
        assert "Coordinate multi-jurisdictional response" in risk.recommendations
        assert "Implement rapid response measures" in risk.recommendations

    def test_acceleration_uses_evidence_span(self):
        first = make_alert("a1")
        alerts = [first] + [
            replace(make_alert(f"a{i}"), evidence_end=first.evidence_end + 4 * DAY)
            for i in range(2, 5)
        ]
        # 4 alerts over 4 days is one per day
        assert assess_risk(alerts).factors["temporal_acceleration"] == pytest.approx(0.2)

    def test_cluster_regions_count_toward_spread(self):
        alert = replace(make_alert(region="a"), cluster_regions=["a", "b", "c"])
        assert assess_risk([alert]).factors["geographic_spread"] == pytest.approx(0.3)

    def test_no_alerts_is_minimal(self):
        risk = assess_risk([])
        assert risk.overall_risk == 0.0
        assert risk.risk_level == "minimal"
        assert risk.recommendations == []

    def test_factor_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            assess_risk([make_alert()], population_vulnerability=1.5)

    @pytest.mark.parametrize("score,level", [
        (0.85, "critical"),
        (0.6, "high"),
        (0.45, "medium"),
        (0.2, "low"),
        (0.1, "minimal"),
    ])
    def test_levels(self, score, level):
        assert risk_level(score) == level
