"""End-to-end aggregation: orchestrate, harmonize, fuse, backfill, persist."""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Mapping

from .config import config
from .db import SurveillanceDatabase
from .fusion import KALMAN_FILTER, FusionEngine, interpolate_region
from .harmonize import UnitHarmonizer, group_by_key, resample_to_window
from .models import FusedEstimate, RawObservation, SourceStatus, TimeWindow
from .orchestrator import AggregationQuery, SourceOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class AggregationReport:
    """Fused estimates of one aggregation with per-source outcomes."""
    estimates: list[FusedEstimate]
    source_status: dict[str, SourceStatus]
    errors: dict[str, str] = field(default_factory=dict)

    def for_stream(self, disease_id: str, region: str) -> list[FusedEstimate]:
        return [e for e in self.estimates if (e.disease_id, e.region) == (disease_id, region)]

    def to_dict(self) -> dict:
        return {
            "estimates": [e.to_dict() for e in self.estimates],
            "source_status": {k: v.value for k, v in self.source_status.items()},
            "errors": dict(self.errors),
        }


class SurveillanceService:
    """Answers aggregation queries with fused estimates."""

    def __init__(
        self,
        orchestrator: SourceOrchestrator,
        harmonizer: UnitHarmonizer | None = None,
        db: SurveillanceDatabase | None = None,
        coordinates: Mapping[str, tuple[float, float]] | None = None,
        max_fill_gap: timedelta | None = None,
    ):
        self.orchestrator = orchestrator
        self.harmonizer = harmonizer or UnitHarmonizer()
        self.db = db
        self.coordinates = dict(coordinates or {})
        self.max_fill_gap = max_fill_gap or timedelta(hours=config.MAX_FILL_GAP_HOURS)

    async def aggregate(self, query: AggregationQuery) -> AggregationReport:
        """Fused estimates for every (disease, region, window) of the query.

        Raises DataQualityInsufficient when too few sources succeed.
        """
        # Look back far enough to forward-fill the first window
        fetch_query = replace(query, start=query.start - self.max_fill_gap)
        result = await self.orchestrator.aggregate(fetch_query)

        observations = self.harmonizer.harmonize(result.observations)
        windows = TimeWindow.span(query.start, query.end, query.window)
        engine = self._engine()

        groups = group_by_key(observations)
        jobs = []
        for key in sorted(groups):
            if query.fusion_strategy == KALMAN_FILTER:
                jobs.append(asyncio.to_thread(
                    self._fuse_series, engine, groups[key], windows, query
                ))
            else:
                for window in windows:
                    jobs.append(asyncio.to_thread(
                        self._fuse_window, engine, groups[key], window, query
                    ))

        estimates: list[FusedEstimate] = []
        for fused in await asyncio.gather(*jobs):
            estimates.extend(fused)

        if query.backfill_missing_regions:
            estimates.extend(self._backfill(estimates, query, windows))

        estimates.sort(key=lambda e: (e.disease_id, e.region, e.window.start))

        if self.db is not None:
            for estimate in estimates:
                self.db.save_estimate(estimate)

        logger.info(
            f"Produced {len(estimates)} estimates for {len(query.diseases)} diseases, "
            f"{len(query.regions)} regions, {len(windows)} windows"
        )
        return AggregationReport(estimates, result.source_status, result.errors)

    def _engine(self) -> FusionEngine:
        # Snapshot so worker threads never see reliability change mid-fusion
        sources = {s.id: replace(s) for s in self.orchestrator.registry.all()}
        return FusionEngine(sources)

    def _fuse_window(
        self,
        engine: FusionEngine,
        observations: list[RawObservation],
        window: TimeWindow,
        query: AggregationQuery,
    ) -> list[FusedEstimate]:
        resampled = resample_to_window(observations, window, self.max_fill_gap)
        if not resampled:
            return []
        estimate = engine.fuse(
            resampled,
            strategy=query.fusion_strategy,
            quality_threshold=query.quality_threshold,
            window=window,
        )
        return [estimate] if estimate else []

    def _fuse_series(
        self,
        engine: FusionEngine,
        observations: list[RawObservation],
        windows: list[TimeWindow],
        query: AggregationQuery,
    ) -> list[FusedEstimate]:
        """Kalman fusion across consecutive windows, each seeded by the previous one."""
        estimates = []
        prior = None
        for window in windows:
            resampled = resample_to_window(observations, window, self.max_fill_gap)
            if not resampled:
                continue
            estimate = engine.fuse(
                resampled,
                strategy=query.fusion_strategy,
                quality_threshold=query.quality_threshold,
                window=window,
                prior=prior,
            )
            if estimate:
                estimates.append(estimate)
                prior = estimate
        return estimates

    def _backfill(
        self,
        estimates: list[FusedEstimate],
        query: AggregationQuery,
        windows: list[TimeWindow],
    ) -> list[FusedEstimate]:
        """Interpolate regions that have no direct estimate for a window."""
        if not self.coordinates:
            logger.debug("Backfill requested but no region coordinates configured")
            return []

        by_cell: dict[tuple[str, TimeWindow], list[FusedEstimate]] = {}
        for estimate in estimates:
            by_cell.setdefault((estimate.disease_id, estimate.window), []).append(estimate)

        filled = []
        for disease_id in query.diseases:
            for window in windows:
                neighbors = by_cell.get((disease_id, window), [])
                if not neighbors:
                    continue
                covered = {n.region for n in neighbors}
                for region in query.regions:
                    if region in covered:
                        continue
                    estimate = interpolate_region(region, window, neighbors, self.coordinates)
                    if estimate and estimate.quality_score >= query.quality_threshold:
                        filled.append(estimate)

        if filled:
            logger.info(f"Backfilled {len(filled)} region estimates by spatial interpolation")
        return filled
