"""Data fusion engine.

Combines the observations of one (disease, region, window) into a single
FusedEstimate. All strategies are deterministic: observations are
canonically sorted before any arithmetic, and freshness is measured
against the window end rather than the wall clock.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

import numpy as np

from .config import config
from .errors import FusionStrategyUnsupported
from .models import (
    DataSource,
    FusedEstimate,
    RawObservation,
    SourceContribution,
    TimeWindow,
)

logger = logging.getLogger(__name__)

WEIGHTED_AVERAGE = "weighted_average"
BAYESIAN_FUSION = "bayesian_fusion"
KALMAN_FILTER = "kalman_filter"
ENSEMBLE_FUSION = "ensemble_fusion"
CONSENSUS_FUSION = "consensus_fusion"
RELIABILITY_WEIGHTED = "reliability_weighted"
SPATIAL_INTERPOLATION = "spatial_interpolation"

STRATEGIES = (
    WEIGHTED_AVERAGE,
    BAYESIAN_FUSION,
    KALMAN_FILTER,
    ENSEMBLE_FUSION,
    CONSENSUS_FUSION,
    RELIABILITY_WEIGHTED,
)

CONSENSUS_AGREEMENT = 0.8
EARTH_RADIUS_KM = 6371.0
_EPS = 1e-9


@dataclass
class _Batch:
    """Canonically ordered inputs of one fusion, as parallel arrays."""
    observations: list[RawObservation]
    values: np.ndarray
    reliability: np.ndarray
    confidence: np.ndarray
    freshness: np.ndarray
    relative_error: np.ndarray

    def __len__(self) -> int:
        return len(self.observations)

    def subset(self, mask: np.ndarray) -> "_Batch":
        return _Batch(
            observations=[o for o, keep in zip(self.observations, mask) if keep],
            values=self.values[mask],
            reliability=self.reliability[mask],
            confidence=self.confidence[mask],
            freshness=self.freshness[mask],
            relative_error=self.relative_error[mask],
        )

    @property
    def scale(self) -> float:
        return max(float(np.median(np.abs(self.values))), 1.0)


# (value, uncertainty, normalized weights aligned with the batch)
_Combined = tuple[float, float, np.ndarray]


def _weighted(values: np.ndarray, weights: np.ndarray) -> Optional[_Combined]:
    total = float(weights.sum())
    if total <= 0 or not math.isfinite(total):
        return None
    norm = weights / total
    mean = float(np.dot(norm, values))
    variance = float(np.dot(norm, (values - mean) ** 2))
    return mean, math.sqrt(max(variance, 0.0)), norm


class RunningKalmanFilter:
    """Scalar Kalman filter with random-walk dynamics."""

    def __init__(self, process_noise: float):
        self.process_noise = process_noise  # variance added per hour
        self.x: Optional[float] = None
        self.p: Optional[float] = None
        self.t: Optional[datetime] = None

    @property
    def initialized(self) -> bool:
        return self.x is not None

    def seed(self, value: float, variance: float, at: datetime) -> None:
        self.x = value
        self.p = max(variance, _EPS)
        self.t = at

    def update(self, value: float, variance: float, at: datetime) -> float:
        """Fold in one measurement; returns the Kalman gain used."""
        if not self.initialized:
            self.seed(value, variance, at)
            return 1.0

        dt_hours = max(0.0, (at - self.t).total_seconds() / 3600.0)
        self.p += self.process_noise * dt_hours
        gain = self.p / (self.p + max(variance, _EPS))
        self.x += gain * (value - self.x)
        self.p = (1.0 - gain) * self.p
        self.t = max(self.t, at)
        return gain

    @property
    def std(self) -> float:
        return math.sqrt(self.p) if self.p is not None else float("nan")


class FusionEngine:
    """Fuses observations into estimates using source metadata."""

    def __init__(
        self,
        sources: Mapping[str, DataSource] | None = None,
        freshness_tau_hours: float | None = None,
        outlier_z: float | None = None,
        default_relative_error: float | None = None,
        process_noise: float | None = None,
    ):
        self.sources = dict(sources or {})
        self.freshness_tau_hours = freshness_tau_hours or config.FRESHNESS_TAU_HOURS
        self.outlier_z = outlier_z or config.OUTLIER_Z_THRESHOLD
        self.default_relative_error = default_relative_error or config.DEFAULT_RELATIVE_ERROR
        self.process_noise = (
            config.KALMAN_PROCESS_NOISE if process_noise is None else process_noise
        )

    def fuse(
        self,
        observations: list[RawObservation],
        strategy: str | None = None,
        quality_threshold: float | None = None,
        window: TimeWindow | None = None,
        prior: FusedEstimate | None = None,
    ) -> FusedEstimate | None:
        """Fuse observations of a single (disease, region, window).

        Returns None when nothing usable remains or the quality score is
        below the threshold. Raises ValueError if the observations do not
        share the same key and window, FusionStrategyUnsupported for
        unknown strategies.
        """
        strategy = strategy or config.DEFAULT_FUSION_STRATEGY
        if quality_threshold is None:
            quality_threshold = config.QUALITY_THRESHOLD
        if strategy == SPATIAL_INTERPOLATION:
            raise FusionStrategyUnsupported(
                "spatial_interpolation needs neighbor estimates; use interpolate_region"
            )
        if strategy not in STRATEGIES:
            raise FusionStrategyUnsupported(f"Unknown fusion strategy: {strategy}")
        if not observations:
            return None

        disease_id, region, window = self._check_key(observations, window)
        if prior is not None and (prior.disease_id, prior.region) != (disease_id, region):
            raise ValueError(f"Prior estimate {prior.stream_key} does not match {disease_id}:{region}")

        batch = self._batch(self._dedupe(observations), window)
        outliers = np.zeros(len(batch), dtype=bool)

        if strategy == WEIGHTED_AVERAGE:
            combined = self._weighted_average(batch)
        elif strategy == BAYESIAN_FUSION:
            combined = self._bayesian(batch)
        elif strategy == KALMAN_FILTER:
            combined = self._kalman(batch, prior)
        elif strategy == CONSENSUS_FUSION:
            combined = self._consensus(batch)
        elif strategy == RELIABILITY_WEIGHTED:
            combined = _weighted(batch.values, batch.reliability)
        else:
            outliers = self._outliers(batch.values)
            combined = self._ensemble(batch.subset(~outliers))

        if combined is None:
            logger.debug(f"No usable weight for {disease_id}/{region} at {window.start}")
            return None

        value, uncertainty, inlier_weights = combined
        weights = np.zeros(len(batch))
        weights[~outliers] = inlier_weights

        inliers = batch.subset(~outliers)
        quality = self._quality(len(inliers), value, uncertainty, inliers.freshness)
        if quality < quality_threshold:
            logger.debug(
                f"Estimate for {disease_id}/{region} at {window.start} below quality "
                f"threshold ({quality:.3f} < {quality_threshold})"
            )
            return None

        contributions = tuple(
            SourceContribution(
                source_id=obs.source_id,
                value=float(batch.values[i]),
                weight=float(weights[i]),
                residual=float(batch.values[i] - value),
                outlier=bool(outliers[i]),
            )
            for i, obs in enumerate(batch.observations)
        )
        return FusedEstimate(
            disease_id=disease_id,
            region=region,
            window=window,
            value=value,
            uncertainty=uncertainty,
            contributions=contributions,
            strategy=strategy,
            quality_score=quality,
        )

    # --- Input preparation ---

    def _check_key(
        self, observations: list[RawObservation], window: TimeWindow | None
    ) -> tuple[str, str, TimeWindow]:
        disease_id = observations[0].disease_id
        region = observations[0].region
        if window is None:
            first = min(o.timestamp for o in observations)
            window = TimeWindow.bucket(first, timedelta(hours=config.WINDOW_HOURS))

        for obs in observations:
            if (obs.disease_id, obs.region) != (disease_id, region):
                raise ValueError(
                    f"Observation for {obs.disease_id}:{obs.region} mixed into "
                    f"{disease_id}:{region}"
                )
            if not window.contains(obs.timestamp):
                raise ValueError(
                    f"Observation at {obs.timestamp} from {obs.source_id} is outside "
                    f"window {window.start} - {window.end}"
                )
        return disease_id, region, window

    @staticmethod
    def _dedupe(observations: list[RawObservation]) -> list[RawObservation]:
        """Canonical order with one (the latest) reading per source."""
        ordered = sorted(
            observations,
            key=lambda o: (o.source_id, o.timestamp, o.value, o.confidence, o.unit),
        )
        latest: dict[str, RawObservation] = {}
        for obs in ordered:
            latest[obs.source_id] = obs
        return [latest[source_id] for source_id in sorted(latest)]

    def _batch(self, observations: list[RawObservation], window: TimeWindow) -> _Batch:
        reliability, relative_error, freshness = [], [], []
        for obs in observations:
            source = self.sources.get(obs.source_id)
            reliability.append(source.reliability if source else config.DEFAULT_RELIABILITY)
            relative_error.append(
                source.historical_error if source else self.default_relative_error
            )
            age_hours = max(0.0, (window.end - obs.observed_at).total_seconds() / 3600.0)
            freshness.append(math.exp(-age_hours / self.freshness_tau_hours))

        return _Batch(
            observations=observations,
            values=np.array([o.value for o in observations], dtype=float),
            reliability=np.array(reliability, dtype=float),
            confidence=np.array([o.confidence for o in observations], dtype=float),
            freshness=np.array(freshness, dtype=float),
            relative_error=np.maximum(np.array(relative_error, dtype=float), 1e-6),
        )

    # --- Strategies ---

    def _weighted_average(self, batch: _Batch) -> Optional[_Combined]:
        return _weighted(batch.values, batch.reliability * batch.confidence * batch.freshness)

    def _bayesian(self, batch: _Batch) -> Optional[_Combined]:
        sigma = batch.relative_error * batch.scale
        precision = 1.0 / sigma ** 2
        total = float(precision.sum())
        weights = precision / total
        value = float(np.dot(weights, batch.values))
        return value, math.sqrt(1.0 / total), weights

    def _kalman(self, batch: _Batch, prior: FusedEstimate | None) -> Optional[_Combined]:
        scale = batch.scale
        kf = RunningKalmanFilter(self.process_noise * scale ** 2)
        if prior is not None:
            kf.seed(prior.value, prior.uncertainty ** 2, prior.window.end)

        order = sorted(
            range(len(batch)),
            key=lambda i: (batch.observations[i].observed_at, batch.observations[i].source_id),
        )
        # Share of each measurement in the final state
        coefficients = np.zeros(len(batch))
        for i in order:
            variance = (batch.relative_error[i] * scale) ** 2
            gain = kf.update(float(batch.values[i]), variance, batch.observations[i].observed_at)
            coefficients *= 1.0 - gain
            coefficients[i] += gain

        total = float(coefficients.sum())
        weights = coefficients / total if total > 0 else np.full(len(batch), 1.0 / len(batch))
        return float(kf.x), kf.std, weights

    def _consensus(self, batch: _Batch) -> Optional[_Combined]:
        values = batch.values
        mean = float(values.mean())
        spread = float(values.max() - values.min())
        agreement = 1.0 if spread == 0 else max(0.0, 1.0 - spread / max(abs(mean), _EPS))

        if agreement > CONSENSUS_AGREEMENT:
            return _weighted(values, np.ones(len(values)))

        median = float(np.median(values))
        weights = np.isclose(values, median).astype(float)
        if weights.sum() == 0:
            # Even count: the two middle values share the weight
            middle = np.argsort(values, kind="stable")[len(values) // 2 - 1: len(values) // 2 + 1]
            weights[middle] = 1.0
        weights /= weights.sum()
        mad = float(np.median(np.abs(values - median)))
        return median, 1.4826 * mad, weights

    def _outliers(self, values: np.ndarray) -> np.ndarray:
        """Leave-one-out z-score outliers; needs at least three values."""
        n = len(values)
        mask = np.zeros(n, dtype=bool)
        if n < 3:
            return mask

        for i in range(n):
            others = np.delete(values, i)
            mu = float(others.mean())
            sd = float(others.std(ddof=1))
            if sd == 0:
                z = 0.0 if values[i] == mu else math.inf
            else:
                z = abs(float(values[i]) - mu) / sd
            mask[i] = z > self.outlier_z

        if mask.all():
            return np.zeros(n, dtype=bool)
        return mask

    def _ensemble(self, batch: _Batch) -> Optional[_Combined]:
        weighted = self._weighted_average(batch)
        if weighted is None:
            return None
        bayes = self._bayesian(batch)
        uniform = _weighted(batch.values, np.ones(len(batch)))

        members = [weighted, bayes, uniform]
        values = np.array([m[0] for m in members])
        value = float(np.median(values))
        variance = float(np.mean([m[1] ** 2 for m in members]) + values.var())
        weights = sum(m[2] for m in members) / len(members)
        return value, math.sqrt(variance), weights

    # --- Quality ---

    @staticmethod
    def _quality(n: int, value: float, uncertainty: float, freshness: np.ndarray) -> float:
        coverage = min(1.0, n / 3.0)
        cv = uncertainty / max(abs(value), _EPS)
        agreement = 1.0 / (1.0 + cv ** 2)
        timeliness = float(freshness.mean()) if len(freshness) else 0.0
        return 0.3 * coverage + 0.4 * agreement + 0.3 * timeliness


def haversine_km(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance between two (lat, lon) points."""
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    h = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def interpolate_region(
    region: str,
    window: TimeWindow,
    neighbors: list[FusedEstimate],
    coordinates: Mapping[str, tuple[float, float]],
    power: float = 2.0,
) -> FusedEstimate | None:
    """Inverse-distance-weighted estimate for a region with no direct data.

    Only direct (non-interpolated) neighbor estimates of the same window
    are used. Returns None when the region or all neighbors lack
    coordinates.
    """
    if region not in coordinates:
        return None

    usable = sorted(
        (
            n for n in neighbors
            if n.window == window
            and n.region != region
            and not n.interpolated
            and n.region in coordinates
        ),
        key=lambda n: n.region,
    )
    if not usable:
        return None

    disease_id = usable[0].disease_id
    if any(n.disease_id != disease_id for n in usable):
        raise ValueError("Neighbor estimates must share one disease")

    target = coordinates[region]
    distances = np.array([haversine_km(target, coordinates[n.region]) for n in usable])
    if np.any(distances < _EPS):
        raw = (distances < _EPS).astype(float)
    else:
        raw = 1.0 / distances ** power
    weights = raw / raw.sum()

    values = np.array([n.value for n in usable])
    value = float(np.dot(weights, values))
    spread = float(np.dot(weights, (values - value) ** 2))
    propagated = float(np.dot(weights, np.array([n.uncertainty for n in usable]) ** 2))
    quality = float(np.dot(weights, np.array([n.quality_score for n in usable])))

    contributions = tuple(
        SourceContribution(
            source_id=f"region:{n.region}",
            value=n.value,
            weight=float(w),
            residual=n.value - value,
        )
        for n, w in zip(usable, weights)
    )
    return FusedEstimate(
        disease_id=disease_id,
        region=region,
        window=window,
        value=value,
        uncertainty=math.sqrt(spread + propagated),
        contributions=contributions,
        strategy=SPATIAL_INTERPOLATION,
        quality_score=quality,
        interpolated=True,
    )
