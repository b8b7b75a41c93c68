"""Outbreak detection engine.

Runs the configured per-stream detectors over fused time series and
raises an alert when enough of them agree (N of M, within a short
corroboration window). The spatial scan runs separately, across the
streams of one disease. ``assess_risk`` rolls a set of alerts up into an
overall risk level with recommendations.
"""

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

import numpy as np

from .config import config
from .detectors import (
    DETECTORS,
    SPATIAL_SCAN,
    UP,
    BaseDetector,
    DetectorSignal,
    SpatialScanStatistic,
    ar_trend,
    canonical_name,
)
from .errors import AlgorithmConfigInvalid
from .models import (
    AlertSeverity,
    OutbreakAlert,
    Sensitivity,
    StreamDetectorState,
    StreamRef,
    TimeSeriesStream,
    utcnow,
)

logger = logging.getLogger(__name__)


def _alert_id(*parts: str) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]


def build_algorithms(
    names: list[str],
    sensitivity: Sensitivity | str,
    overrides: Mapping[str, dict] | None = None,
) -> tuple[list[BaseDetector], SpatialScanStatistic | None]:
    """Instantiate detectors for the given names.

    Raises AlgorithmConfigInvalid for unsupported names, overrides for
    algorithms that are not requested, or invalid parameter values.
    """
    sensitivity = Sensitivity.parse(sensitivity)
    canonical = list(dict.fromkeys(canonical_name(n) for n in names))
    params = {canonical_name(k): dict(v) for k, v in (overrides or {}).items()}

    stray = set(params) - set(canonical)
    if stray:
        raise AlgorithmConfigInvalid(
            f"Overrides given for algorithms not requested: {', '.join(sorted(stray))}"
        )

    detectors = [
        DETECTORS[name](sensitivity, **params.get(name, {}))
        for name in canonical
        if name != SPATIAL_SCAN
    ]

    spatial = None
    if SPATIAL_SCAN in canonical:
        try:
            spatial = SpatialScanStatistic(sensitivity, **params.get(SPATIAL_SCAN, {}))
        except TypeError as e:
            raise AlgorithmConfigInvalid(f"spatial_scan: {e}") from e
    return detectors, spatial


@dataclass
class DetectionPlan:
    """Validated detector set for one detection run."""
    detectors: list[BaseDetector]
    spatial: SpatialScanStatistic | None
    min_votes: int

    @property
    def algorithm_names(self) -> list[str]:
        names = [d.name for d in self.detectors]
        if self.spatial:
            names.append(SPATIAL_SCAN)
        return names


class OutbreakDetectionEngine:
    """Detects outbreak signals in fused time series."""

    def __init__(
        self,
        algorithms: list[str] | None = None,
        sensitivity: Sensitivity | str | None = None,
        min_votes: int | None = None,
        corroboration_window: int | None = None,
        overrides: Mapping[str, dict] | None = None,
        coordinates: Mapping[str, tuple[float, float]] | None = None,
        clock: Callable[[], datetime] = utcnow,
        spatial_min_baseline: int = 3,
    ):
        self.algorithms = list(algorithms or config.DETECTION_ALGORITHMS)
        self.sensitivity = Sensitivity.parse(sensitivity or config.DETECTION_SENSITIVITY)
        self.min_votes = min_votes
        self.corroboration_window = (
            config.CORROBORATION_WINDOW if corroboration_window is None else corroboration_window
        )
        self.overrides = dict(overrides or {})
        self.coordinates = dict(coordinates or {})
        self.spatial_min_baseline = spatial_min_baseline
        self._clock = clock

        if self.corroboration_window < 0:
            raise AlgorithmConfigInvalid("corroboration_window must be >= 0")
        self.plan()

    def plan(
        self,
        algorithms: list[str] | None = None,
        sensitivity: Sensitivity | str | None = None,
        overrides: Mapping[str, dict] | None = None,
        min_votes: int | None = None,
    ) -> DetectionPlan:
        """Build and validate the detector set, falling back to engine defaults."""
        names = algorithms or self.algorithms
        if overrides is None:
            # Engine-level overrides only apply to the algorithms requested now
            requested = {canonical_name(n) for n in names}
            overrides = {
                k: v for k, v in self.overrides.items() if canonical_name(k) in requested
            }
        detectors, spatial = build_algorithms(names, sensitivity or self.sensitivity, overrides)
        if not detectors and spatial is None:
            raise AlgorithmConfigInvalid("No detection algorithms configured")

        explicit = min_votes if min_votes is not None else self.min_votes
        if explicit is None:
            votes = min(config.CONSENSUS_MIN_VOTES, len(detectors)) or 1
        else:
            votes = explicit
            if detectors and not 1 <= votes <= len(detectors):
                raise AlgorithmConfigInvalid(
                    f"min_votes must be between 1 and {len(detectors)}, got {votes}"
                )
        return DetectionPlan(detectors, spatial, votes)

    def new_state(self, ref: StreamRef, plan: DetectionPlan | None = None) -> StreamDetectorState:
        plan = plan or self.plan()
        state = StreamDetectorState(ref)
        for detector in plan.detectors:
            state.algorithm_states[detector.name] = detector.new_state()
        return state

    # --- Per-stream detection ---

    def detect(
        self,
        stream: TimeSeriesStream,
        algorithms: list[str] | None = None,
        sensitivity: Sensitivity | str | None = None,
        overrides: Mapping[str, dict] | None = None,
        min_votes: int | None = None,
    ) -> list[OutbreakAlert]:
        """One-shot consensus detection over a whole stream."""
        plan = self.plan(algorithms, sensitivity, overrides, min_votes)
        return self.evaluate(stream, self.new_state(stream.ref, plan), plan)

    def evaluate(
        self,
        stream: TimeSeriesStream,
        state: StreamDetectorState,
        plan: DetectionPlan | None = None,
    ) -> list[OutbreakAlert]:
        """Advance ``state`` over the points of ``stream`` it has not seen yet.

        The caller must hold ``state.lock`` when the state is shared.
        """
        plan = plan or self.plan()
        if state.ref != stream.ref:
            raise ValueError(f"State for {state.ref.key} cannot evaluate stream {stream.key}")
        if state.cursor > len(stream):
            raise ValueError(f"State cursor {state.cursor} is past the end of {stream.key}")

        for detector in plan.detectors:
            if detector.name not in state.algorithm_states:
                state.algorithm_states[detector.name] = detector.new_state()

        alerts = []
        for index in range(state.cursor, len(stream)):
            value = stream.estimates[index].value
            for detector in plan.detectors:
                signal = detector.update(state.algorithm_states[detector.name], value, index)
                if signal is None:
                    continue
                # Only rises vote for an outbreak
                if signal.direction == UP:
                    state.pending_votes[detector.name] = signal
                else:
                    logger.debug(
                        f"{detector.name} saw a drop in {stream.key} at index {index}, not voting"
                    )

            expired = [
                name for name, signal in state.pending_votes.items()
                if index - signal.index > self.corroboration_window
            ]
            for name in expired:
                del state.pending_votes[name]

            if plan.detectors and len(state.pending_votes) >= plan.min_votes:
                alert = self._consensus_alert(
                    stream, list(state.pending_votes.values()), index, len(plan.detectors)
                )
                alerts.append(alert)
                state.pending_votes.clear()
                logger.info(
                    f"Outbreak alert {alert.id} for {stream.key}: "
                    f"{alert.severity.value} ({', '.join(sorted(alert.algorithms))})"
                )
            state.cursor = index + 1
        return alerts

    def _consensus_alert(
        self,
        stream: TimeSeriesStream,
        signals: list[DetectorSignal],
        index: int,
        total: int,
    ) -> OutbreakAlert:
        signals = sorted(signals, key=lambda s: s.algorithm)
        first = min(s.evidence_start for s in signals)
        strength = float(np.mean([min(1.0, s.score / 2.0) for s in signals]))
        score = 0.5 * (len(signals) / total) + 0.5 * strength
        current = stream.estimates[index]

        return OutbreakAlert(
            id=_alert_id(stream.key, current.window.start.isoformat(), "consensus"),
            disease_id=stream.ref.disease_id,
            region=stream.ref.region,
            severity=AlertSeverity.from_score(score),
            score=score,
            algorithms={s.algorithm: s.score for s in signals},
            evidence_start=stream.estimates[first].window.start,
            evidence_end=current.window.end,
            evidence_first_index=first,
            evidence_last_index=index,
            created_at=self._clock(),
            message=(
                f"{stream.ref.disease_id} in {stream.ref.region}: {len(signals)}/{total} "
                f"detectors signalled at {current.window.start.date()} "
                f"(value {current.value:.2f})"
            ),
            trend=self._trend(stream, index),
        )

    @staticmethod
    def _trend(stream: TimeSeriesStream, index: int) -> dict[str, Any] | None:
        annotation = ar_trend(stream.values[: index + 1])
        return annotation.to_dict() if annotation else None

    # --- Multi-stream detection ---

    def detect_many(
        self,
        streams: list[TimeSeriesStream],
        algorithms: list[str] | None = None,
        sensitivity: Sensitivity | str | None = None,
        overrides: Mapping[str, dict] | None = None,
        min_votes: int | None = None,
        coordinates: Mapping[str, tuple[float, float]] | None = None,
    ) -> list[OutbreakAlert]:
        """Per-stream consensus detection plus the spatial scan when requested."""
        plan = self.plan(algorithms, sensitivity, overrides, min_votes)
        alerts = []
        for stream in sorted(streams, key=lambda s: s.key):
            if plan.detectors:
                alerts.extend(self.evaluate(stream, self.new_state(stream.ref, plan), plan))
        if plan.spatial:
            alerts.extend(self.spatial_alerts(streams, plan.spatial, coordinates))
        return alerts

    def spatial_alerts(
        self,
        streams: list[TimeSeriesStream],
        scanner: SpatialScanStatistic,
        coordinates: Mapping[str, tuple[float, float]] | None = None,
    ) -> list[OutbreakAlert]:
        """Scan each disease's regions at their latest common window.

        Expected counts are each stream's mean before that window.
        """
        coordinates = coordinates or self.coordinates
        by_disease: dict[str, list[TimeSeriesStream]] = defaultdict(list)
        for stream in streams:
            if len(stream):
                by_disease[stream.ref.disease_id].append(stream)

        alerts = []
        for disease_id in sorted(by_disease):
            group = sorted(by_disease[disease_id], key=lambda s: s.ref.region)
            if len(group) < 2:
                continue

            common = set.intersection(*({e.window for e in s.estimates} for s in group))
            if not common:
                logger.debug(f"No common window across {disease_id} streams, skipping scan")
                continue
            window = max(common)

            observed, expected, positions = {}, {}, {}
            for stream in group:
                index = next(i for i, e in enumerate(stream.estimates) if e.window == window)
                baseline = stream.values[:index]
                if len(baseline) < self.spatial_min_baseline:
                    continue
                region = stream.ref.region
                observed[region] = stream.estimates[index].value
                expected[region] = float(np.mean(baseline))
                positions[region] = (stream, index)

            for cluster in scanner.scan(observed, expected, coordinates):
                anchor = max(
                    cluster.regions,
                    key=lambda r: (observed[r] / expected[r], r),
                )
                stream, index = positions[anchor]
                alerts.append(self._spatial_alert(stream, index, cluster))
        return alerts

    def _spatial_alert(self, stream: TimeSeriesStream, index: int, cluster) -> OutbreakAlert:
        current = stream.estimates[index]
        risk = min(cluster.relative_risk, 10.0)
        score = 0.5 + 0.5 * min(1.0, risk / 2.0)
        regions = sorted(cluster.regions)

        alert = OutbreakAlert(
            id=_alert_id(
                stream.ref.disease_id, current.window.start.isoformat(), ",".join(regions), SPATIAL_SCAN
            ),
            disease_id=stream.ref.disease_id,
            region=stream.ref.region,
            severity=AlertSeverity.from_score(score),
            score=score,
            algorithms={SPATIAL_SCAN: risk},
            evidence_start=current.window.start,
            evidence_end=current.window.end,
            evidence_first_index=index,
            evidence_last_index=index,
            created_at=self._clock(),
            message=(
                f"{stream.ref.disease_id}: spatial cluster of {len(regions)} region(s) "
                f"({', '.join(regions)}), O/E {cluster.relative_risk:.2f}, "
                f"p={cluster.p_value:.3f}"
            ),
            cluster_regions=regions,
            trend=self._trend(stream, index),
        )
        logger.info(f"Spatial cluster alert {alert.id}: {alert.message}")
        return alert


# --- Risk assessment ---

SEVERITY_WEIGHTS = {
    AlertSeverity.LOW: 0.25,
    AlertSeverity.MEDIUM: 0.5,
    AlertSeverity.HIGH: 0.75,
    AlertSeverity.CRITICAL: 1.0,
}

RISK_FACTOR_WEIGHTS = {
    "alert_severity": 0.3,
    "geographic_spread": 0.2,
    "temporal_acceleration": 0.2,
    "population_vulnerability": 0.15,
    "capacity_strain": 0.15,
}

RISK_LEVELS = [(0.8, "critical"), (0.6, "high"), (0.4, "medium"), (0.2, "low")]


@dataclass
class RiskAssessment:
    """Overall outbreak risk derived from a set of alerts."""
    overall_risk: float
    risk_level: str
    factors: dict[str, float]
    recommendations: list[str]
    assessed_at: datetime

    def to_dict(self) -> dict:
        return {
            "overall_risk": self.overall_risk,
            "risk_level": self.risk_level,
            "factors": dict(self.factors),
            "recommendations": list(self.recommendations),
            "assessed_at": self.assessed_at.isoformat(),
        }


def risk_level(score: float) -> str:
    for threshold, level in RISK_LEVELS:
        if score >= threshold:
            return level
    return "minimal"


def assess_risk(
    alerts: list[OutbreakAlert],
    population_vulnerability: float | None = None,
    capacity_strain: float | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> RiskAssessment:
    """Combine alerts into an overall risk score with recommendations.

    Factors, each in [0, 1]:
        alert_severity: mean severity weight of the alerts
        geographic_spread: distinct regions involved, saturating at 10
        temporal_acceleration: alerts per day of evidence, saturating at 5
        population_vulnerability, capacity_strain: optional, caller supplied

    The overall risk is the weighted mean over the factors present, so
    leaving out the optional ones does not pull the score down.
    """
    factors = {
        "alert_severity": _severity_factor(alerts),
        "geographic_spread": _spread_factor(alerts),
        "temporal_acceleration": _acceleration_factor(alerts),
    }
    for name, value in (
        ("population_vulnerability", population_vulnerability),
        ("capacity_strain", capacity_strain),
    ):
        if value is None:
            continue
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{name} must be in [0, 1], got {value}")
        factors[name] = float(value)

    total_weight = sum(RISK_FACTOR_WEIGHTS[name] for name in factors)
    overall = sum(RISK_FACTOR_WEIGHTS[name] * value for name, value in factors.items()) / total_weight

    recommendations = []
    if overall >= 0.6:
        recommendations.append("Activate enhanced surveillance protocols")
        recommendations.append("Consider implementing containment measures")
    if factors["geographic_spread"] > 0.5:
        recommendations.append("Coordinate multi-jurisdictional response")
    if factors["temporal_acceleration"] > 0.6:
        recommendations.append("Implement rapid response measures")

    return RiskAssessment(
        overall_risk=overall,
        risk_level=risk_level(overall),
        factors=factors,
        recommendations=recommendations,
        assessed_at=clock(),
    )


def _severity_factor(alerts: list[OutbreakAlert]) -> float:
    if not alerts:
        return 0.0
    return float(np.mean([SEVERITY_WEIGHTS[a.severity] for a in alerts]))


def _spread_factor(alerts: list[OutbreakAlert]) -> float:
    regions = set()
    for alert in alerts:
        regions.add(alert.region)
        regions.update(alert.cluster_regions)
    return min(1.0, len(regions) / 10)


def _acceleration_factor(alerts: list[OutbreakAlert]) -> float:
    if len(alerts) < 2:
        return 0.0
    ends = [a.evidence_end for a in alerts]
    # Alerts sharing one window count over a single day
    span_days = max((max(ends) - min(ends)).total_seconds() / 86400, 1.0)
    return min(1.0, len(alerts) / span_days / 5)
