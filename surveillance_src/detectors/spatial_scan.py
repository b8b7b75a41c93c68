"""Kulldorff spatial scan statistic with a Poisson model.

Candidate zones are single regions and, when coordinates are known,
circles of nearest neighbours around every region. Significance comes
from Monte Carlo replication under the null hypothesis with a seeded
generator, so identical inputs give identical p-values.
"""

import logging
import math
from dataclasses import dataclass
from typing import Mapping

import numpy as np

from ..config import config
from ..errors import AlgorithmConfigInvalid
from ..fusion import haversine_km
from ..models import Sensitivity

logger = logging.getLogger(__name__)

ALPHAS = {Sensitivity.LOW: 0.01, Sensitivity.MEDIUM: 0.05, Sensitivity.HIGH: 0.10}


@dataclass(frozen=True)
class ScanCluster:
    """A significant cluster of regions."""
    regions: tuple[str, ...]
    observed: float
    expected: float  # scaled so that total expected equals total observed
    llr: float
    p_value: float

    @property
    def relative_risk(self) -> float:
        return self.observed / self.expected if self.expected > 0 else math.inf

    def to_dict(self) -> dict:
        return {
            "regions": list(self.regions),
            "observed": self.observed,
            "expected": self.expected,
            "llr": self.llr,
            "p_value": self.p_value,
            "relative_risk": self.relative_risk,
        }


def _xlogy(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """x * log(x / y) with 0 log 0 = 0."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(x > 0, x * np.log(np.where(x > 0, x, 1.0) / y), 0.0)


def poisson_llr(observed: np.ndarray, expected: np.ndarray, total: float) -> np.ndarray:
    """Log-likelihood ratio of each zone; zero unless observed exceeds expected."""
    outside_obs = total - observed
    outside_exp = total - expected
    with np.errstate(divide="ignore", invalid="ignore"):
        llr = _xlogy(observed, expected) + np.where(
            outside_exp > 0, _xlogy(outside_obs, np.where(outside_exp > 0, outside_exp, 1.0)), 0.0
        )
    return np.where(observed > expected, llr, 0.0)


class SpatialScanStatistic:
    """Finds regions whose observed counts significantly exceed expectations."""

    name = "spatial_scan"

    def __init__(
        self,
        sensitivity: Sensitivity | str = Sensitivity.MEDIUM,
        alpha: float | None = None,
        simulations: int | None = None,
        max_cluster_fraction: float | None = None,
        seed: int | None = None,
    ):
        self.sensitivity = Sensitivity.parse(sensitivity)
        self.alpha = ALPHAS[self.sensitivity] if alpha is None else alpha
        self.simulations = simulations or config.SPATIAL_SCAN_SIMULATIONS
        self.max_cluster_fraction = max_cluster_fraction or config.SPATIAL_MAX_CLUSTER_FRACTION
        self.seed = config.RANDOM_SEED if seed is None else seed

        if not 0 < self.alpha < 1:
            raise AlgorithmConfigInvalid(f"spatial_scan: 'alpha' must be in (0, 1), got {self.alpha}")
        if int(self.simulations) != self.simulations or self.simulations < 9:
            raise AlgorithmConfigInvalid("spatial_scan: 'simulations' must be an integer >= 9")
        if not 0 < self.max_cluster_fraction <= 1:
            raise AlgorithmConfigInvalid("spatial_scan: 'max_cluster_fraction' must be in (0, 1]")

    def zones(
        self,
        regions: list[str],
        expected: np.ndarray,
        coordinates: Mapping[str, tuple[float, float]] | None = None,
    ) -> list[tuple[int, ...]]:
        """Candidate zones as sorted tuples of region indices."""
        zones = {(i,) for i in range(len(regions))}
        if coordinates and all(r in coordinates for r in regions):
            limit = self.max_cluster_fraction * float(expected.sum())
            for center, region in enumerate(regions):
                by_distance = sorted(
                    range(len(regions)),
                    key=lambda j: (haversine_km(coordinates[region], coordinates[regions[j]]), j),
                )
                members = []
                load = 0.0
                for j in by_distance:
                    if members and load + expected[j] > limit:
                        break
                    members.append(j)
                    load += expected[j]
                    zones.add(tuple(sorted(members)))
        return sorted(zones)

    def scan(
        self,
        observed: Mapping[str, float],
        expected: Mapping[str, float],
        coordinates: Mapping[str, tuple[float, float]] | None = None,
    ) -> list[ScanCluster]:
        """Most likely cluster first, then non-overlapping secondary clusters."""
        regions = sorted(r for r in observed if expected.get(r, 0) > 0)
        if len(regions) < 2:
            return []

        obs = np.array([float(observed[r]) for r in regions])
        exp = np.array([float(expected[r]) for r in regions])
        total = float(obs.sum())
        if total <= 0:
            return []
        scaled = exp * total / exp.sum()

        zones = self.zones(regions, exp, coordinates)
        membership = np.zeros((len(zones), len(regions)))
        for z, members in enumerate(zones):
            membership[z, list(members)] = 1.0

        zone_obs = membership @ obs
        zone_exp = membership @ scaled
        llr = poisson_llr(zone_obs, zone_exp, total)
        if llr.max() <= 0:
            return []

        # Null distribution of the maximum LLR
        rng = np.random.default_rng(self.seed)
        cases = int(round(total))
        replicas = rng.multinomial(cases, exp / exp.sum(), size=int(self.simulations))
        sim_scaled = membership @ (exp * cases / exp.sum())
        sim_llr = poisson_llr((replicas @ membership.T).astype(float), sim_scaled, float(cases))
        sim_max = sim_llr.max(axis=1)

        clusters: list[ScanCluster] = []
        used: set[int] = set()
        for z in np.argsort(-llr, kind="stable"):
            if llr[z] <= 0:
                break
            members = set(zones[z])
            if members & used:
                continue
            p_value = (1 + int(np.sum(sim_max >= llr[z]))) / (self.simulations + 1)
            if p_value >= self.alpha or zone_obs[z] <= zone_exp[z]:
                continue
            clusters.append(ScanCluster(
                regions=tuple(regions[i] for i in zones[z]),
                observed=float(zone_obs[z]),
                expected=float(zone_exp[z]),
                llr=float(llr[z]),
                p_value=p_value,
            ))
            used |= members

        logger.debug(f"Spatial scan over {len(regions)} regions found {len(clusters)} clusters")
        return clusters
