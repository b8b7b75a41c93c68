"""Source selection and concurrent fan-out to providers."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import config
from .connectors import CacheClearable, HealthCheckable, ProviderConnector, SourceQuery
from .errors import CircuitOpenSkipped, DataQualityInsufficient, SourceError
from .models import DataSource, RawObservation, SourceStatus, to_naive_utc, utcnow
from .resilience import ResilienceManager

logger = logging.getLogger(__name__)

CAPABILITIES = {
    "health_check": HealthCheckable,
    "clear_cache": CacheClearable,
}


@dataclass
class AggregationQuery:
    """A request for fused estimates."""
    diseases: list[str]
    regions: list[str]
    start: datetime
    end: datetime
    sources: str | list[str] = "auto"
    fusion_strategy: str = field(default_factory=lambda: config.DEFAULT_FUSION_STRATEGY)
    quality_threshold: float = field(default_factory=lambda: config.QUALITY_THRESHOLD)
    min_reliability: Optional[float] = None
    window: timedelta = field(default_factory=lambda: timedelta(hours=config.WINDOW_HOURS))
    backfill_missing_regions: bool = False

    def __post_init__(self):
        if not self.diseases or not self.regions:
            raise ValueError("Query needs at least one disease and one region")
        self.start = to_naive_utc(self.start)
        self.end = to_naive_utc(self.end)
        if self.end <= self.start:
            raise ValueError(f"Query end {self.end} must be after start {self.start}")
        if self.window <= timedelta(0):
            raise ValueError("Window size must be positive")

    @property
    def effective_min_reliability(self) -> float:
        if self.min_reliability is not None:
            return self.min_reliability
        return self.quality_threshold

    def to_source_query(self, source: DataSource) -> SourceQuery:
        """Narrow the query to what one source can answer."""
        return SourceQuery(
            diseases=source.supported_diseases(self.diseases),
            regions=source.supported_regions(self.regions),
            start=self.start,
            end=self.end,
        )


@dataclass
class AggregationResult:
    """Observations gathered by one aggregation, with per-source outcomes."""
    observations: list[RawObservation]
    source_status: dict[str, SourceStatus]
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def successful_sources(self) -> list[str]:
        return [s for s, status in self.source_status.items() if status == SourceStatus.OK]


class SourceRegistry:
    """Registered data sources and their connectors."""

    def __init__(self):
        self._sources: dict[str, DataSource] = {}
        self._connectors: dict[str, ProviderConnector] = {}
        self._capabilities: dict[str, frozenset[str]] = {}

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def register(self, source: DataSource, connector: ProviderConnector) -> None:
        """Register a source. Capabilities are taken from the connector's interfaces."""
        if not isinstance(connector, ProviderConnector):
            raise TypeError(f"{type(connector).__name__} is not a ProviderConnector")
        if connector.source_id != source.id:
            raise ValueError(
                f"Connector for '{connector.source_id}' cannot serve source '{source.id}'"
            )
        if source.id in self._sources:
            raise ValueError(f"Source '{source.id}' is already registered")

        capabilities = frozenset(
            name for name, interface in CAPABILITIES.items() if isinstance(connector, interface)
        )
        self._sources[source.id] = source
        self._connectors[source.id] = connector
        self._capabilities[source.id] = capabilities
        logger.info(
            f"Registered source {source.id} "
            f"(capabilities: {', '.join(sorted(capabilities)) or 'none'})"
        )

    def get(self, source_id: str) -> DataSource | None:
        return self._sources.get(source_id)

    def connector(self, source_id: str) -> ProviderConnector:
        return self._connectors[source_id]

    def capabilities(self, source_id: str) -> frozenset[str]:
        return self._capabilities.get(source_id, frozenset())

    def all(self) -> list[DataSource]:
        return list(self._sources.values())

    def active(self) -> list[DataSource]:
        return [s for s in self._sources.values() if s.active]

    def deactivate(self, source_id: str) -> None:
        """Mark a source inactive. Sources are never removed."""
        if source_id not in self._sources:
            raise KeyError(source_id)
        self._sources[source_id].deactivate()
        logger.info(f"Deactivated source {source_id}")

    def clear_caches(self) -> int:
        """Clear caches of connectors that declared the capability."""
        cleared = 0
        for source_id, connector in self._connectors.items():
            if "clear_cache" in self._capabilities[source_id]:
                connector.clear_cache()
                cleared += 1
        return cleared

    def health_checks(self) -> dict[str, bool]:
        """Run health checks on connectors that declared the capability."""
        return {
            source_id: connector.health_check()
            for source_id, connector in self._connectors.items()
            if "health_check" in self._capabilities[source_id]
        }


class SourceOrchestrator:
    """Selects sources for a query and calls them concurrently."""

    def __init__(
        self,
        registry: SourceRegistry,
        resilience: ResilienceManager | None = None,
        max_parallel: int | None = None,
        call_timeout: float | None = None,
        min_successful: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.resilience = resilience or ResilienceManager()
        self.max_parallel = max_parallel or config.MAX_PARALLEL_SOURCES
        self.call_timeout = call_timeout or config.SOURCE_CALL_TIMEOUT
        self.min_successful = (
            config.MIN_SUCCESSFUL_SOURCES if min_successful is None else min_successful
        )
        self.smoothing = config.RELIABILITY_SMOOTHING
        self._clock = clock

    def select_sources(
        self, query: AggregationQuery
    ) -> tuple[list[DataSource], dict[str, SourceStatus]]:
        """Pick the sources to call.

        Returns the selection and the statuses of explicitly requested
        sources that cannot be called.
        """
        rejected: dict[str, SourceStatus] = {}

        if query.sources == "auto":
            threshold = query.effective_min_reliability
            selected = [
                s for s in self.registry.active()
                if s.covers(query.diseases, query.regions) and s.reliability >= threshold
            ]
            selected.sort(key=lambda s: (
                -s.reliability,
                -(s.last_success_at.timestamp() if s.last_success_at else float("-inf")),
                s.id,
            ))
            return selected, rejected

        selected = []
        for source_id in dict.fromkeys(query.sources):
            source = self.registry.get(source_id)
            if source is None or not source.active:
                logger.warning(f"Requested source {source_id} is unknown or inactive")
                rejected[source_id] = SourceStatus.FAILED
            elif not source.covers(query.diseases, query.regions):
                logger.warning(f"Requested source {source_id} does not cover the query")
                rejected[source_id] = SourceStatus.FAILED
            else:
                selected.append(source)
        return selected, rejected

    async def aggregate(self, query: AggregationQuery) -> AggregationResult:
        """Fan out to the selected sources and collect their observations.

        Raises DataQualityInsufficient if fewer than the minimum number of
        sources succeeded.
        """
        selected, source_status = self.select_sources(query)
        errors = {source_id: "not available" for source_id in source_status}
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def bounded(source: DataSource):
            async with semaphore:
                return await self._call_source(source, query)

        outcomes = await asyncio.gather(*(bounded(s) for s in selected))

        observations: list[RawObservation] = []
        for source, (status, rows, error) in zip(selected, outcomes):
            source_status[source.id] = status
            if error:
                errors[source.id] = error
            observations.extend(rows)

        source_status = dict(sorted(source_status.items()))
        successes = sum(1 for s in source_status.values() if s == SourceStatus.OK)

        open_fraction = self.resilience.health()
        if open_fraction > config.DEGRADED_OPEN_FRACTION:
            logger.warning(
                f"Degraded aggregation: {open_fraction:.0%} of source circuits open"
            )

        if successes < self.min_successful:
            raise DataQualityInsufficient(
                f"Only {successes} of {len(source_status)} sources succeeded "
                f"(minimum {self.min_successful})",
                source_status,
            )

        logger.info(
            f"Aggregated {len(observations)} observations from "
            f"{successes}/{len(source_status)} sources"
        )
        return AggregationResult(observations, source_status, errors)

    async def _call_source(
        self, source: DataSource, query: AggregationQuery
    ) -> tuple[SourceStatus, list[RawObservation], str | None]:
        connector = self.registry.connector(source.id)
        source_query = query.to_source_query(source)

        # call_timeout bounds the source's total time, retries included
        try:
            rows = await self.resilience.call(
                source.id,
                lambda: asyncio.to_thread(connector.fetch, source_query),
                timeout=self.call_timeout,
            )
        except CircuitOpenSkipped as e:
            logger.info(f"Skipping {source.id}: circuit open")
            return SourceStatus.CIRCUIT_OPEN, [], str(e)
        except SourceError as e:
            source.record_failure(self._clock(), self.smoothing)
            logger.warning(f"Source {source.id} failed: {e}")
            return SourceStatus.FAILED, [], str(e)

        source.record_success(self._clock(), self.smoothing)
        return SourceStatus.OK, self._normalize(source, rows, query), None

    def _normalize(
        self, source: DataSource, rows: list[RawObservation], query: AggregationQuery
    ) -> list[RawObservation]:
        """Keep only rows from this source that fall inside the query."""
        diseases = set(query.diseases)
        regions = set(query.regions)
        kept = [
            obs for obs in rows
            if obs.source_id == source.id
            and obs.disease_id in diseases
            and obs.region in regions
            and query.start <= obs.timestamp < query.end
        ]
        dropped = len(rows) - len(kept)
        if dropped:
            logger.warning(f"Dropped {dropped} out-of-query rows from {source.id}")
        return kept
