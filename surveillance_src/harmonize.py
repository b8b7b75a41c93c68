"""Unit harmonization and window resampling ahead of fusion."""

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import timedelta

from .config import config
from .models import RawObservation, TimeWindow

logger = logging.getLogger(__name__)

# Multiplier converting one unit of each rate into cases per 100,000
RATE_FACTORS = {
    "per_100k": 1.0,
    "per_10k": 10.0,
    "per_1k": 100.0,
    "per_million": 0.1,
    "percent": 1000.0,
    "proportion": 100000.0,
}

COUNT_UNITS = {"cases", "count"}

UNIT_ALIASES = {
    "per_100000": "per_100k",
    "per100k": "per_100k",
    "per_10000": "per_10k",
    "per_1000": "per_1k",
    "per_1000000": "per_million",
    "%": "percent",
    "counts": "cases",
}


def normalize_unit(unit: str) -> str:
    key = unit.strip().lower().replace(" ", "_")
    return UNIT_ALIASES.get(key, key)


class UnitHarmonizer:
    """Converts observations into each disease's canonical unit.

    Rates convert among themselves linearly. Converting between a rate and
    a case count needs the region's population; without it the observation
    is excluded.
    """

    def __init__(
        self,
        canonical_units: dict[str, str] | None = None,
        populations: dict[str, float] | None = None,
        default_unit: str | None = None,
    ):
        self.canonical_units = {
            d: normalize_unit(u) for d, u in (canonical_units or {}).items()
        }
        self.populations = dict(populations or {})
        self.default_unit = normalize_unit(default_unit or config.DEFAULT_CANONICAL_UNIT)

    def canonical_unit(self, disease_id: str) -> str:
        return self.canonical_units.get(disease_id, self.default_unit)

    def convert(self, value: float, from_unit: str, to_unit: str, region: str) -> float | None:
        """Convert a value, or return None when the conversion is not defined."""
        source = normalize_unit(from_unit)
        target = normalize_unit(to_unit)
        if source == target or (source in COUNT_UNITS and target in COUNT_UNITS):
            return value

        if source in RATE_FACTORS and target in RATE_FACTORS:
            return value * RATE_FACTORS[source] / RATE_FACTORS[target]

        population = self.populations.get(region)
        if not population:
            return None

        if source in COUNT_UNITS and target in RATE_FACTORS:
            per_100k = value / population * 100000.0
            return per_100k / RATE_FACTORS[target]
        if source in RATE_FACTORS and target in COUNT_UNITS:
            per_100k = value * RATE_FACTORS[source]
            return per_100k * population / 100000.0
        return None

    def harmonize(self, observations: list[RawObservation]) -> list[RawObservation]:
        """Return observations in canonical units, dropping unconvertible ones."""
        result = []
        excluded = 0
        for obs in observations:
            target = self.canonical_unit(obs.disease_id)
            value = self.convert(obs.value, obs.unit, target, obs.region)
            if value is None:
                excluded += 1
                logger.debug(
                    f"Excluding {obs.source_id} reading for {obs.disease_id}/{obs.region}: "
                    f"cannot convert {obs.unit} to {target}"
                )
                continue
            result.append(replace(obs, value=value, unit=target))

        if excluded:
            logger.warning(f"Excluded {excluded} observations with unconvertible units")
        return result


def group_by_key(observations: list[RawObservation]) -> dict[tuple[str, str], list[RawObservation]]:
    """Group observations by (disease, region)."""
    groups: dict[tuple[str, str], list[RawObservation]] = defaultdict(list)
    for obs in observations:
        groups[(obs.disease_id, obs.region)].append(obs)
    return dict(groups)


def resample_to_window(
    observations: list[RawObservation],
    window: TimeWindow,
    max_gap: timedelta | None = None,
) -> list[RawObservation]:
    """Reduce observations to at most one per source for the window.

    The latest in-window reading wins. Without one, the latest earlier
    reading is forward-filled onto the window start when it is no older
    than ``max_gap``; older readings are dropped.
    """
    if max_gap is None:
        max_gap = timedelta(hours=config.MAX_FILL_GAP_HOURS)

    by_source: dict[tuple[str, str, str], list[RawObservation]] = defaultdict(list)
    for obs in observations:
        by_source[(obs.source_id, obs.disease_id, obs.region)].append(obs)

    result = []
    for key in sorted(by_source):
        readings = by_source[key]
        inside = [o for o in readings if window.contains(o.timestamp)]
        if inside:
            result.append(max(inside, key=lambda o: (o.timestamp, o.value)))
            continue

        earlier = [
            o for o in readings
            if o.timestamp < window.start and window.start - o.timestamp <= max_gap
        ]
        if earlier:
            latest = max(earlier, key=lambda o: (o.timestamp, o.value))
            result.append(replace(latest, timestamp=window.start, filled_from=latest.timestamp))
    return result
