"""Monitoring sessions.

A session is a background task that periodically refreshes a fixed set of
streams, evaluates them incrementally and publishes new alerts. Detector
state persists across cycles and is owned by exactly one session.
"""

import asyncio
import logging
import signal
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .config import config
from .db import SurveillanceDatabase
from .detector import DetectionPlan, OutbreakDetectionEngine, assess_risk
from .errors import SessionNotFound, StreamAlreadyMonitored, SurveillanceError
from .models import (
    FusedEstimate,
    OutbreakAlert,
    SeenAlerts,
    SourceStatus,
    StreamDetectorState,
    StreamRef,
    TimeSeriesStream,
    TimeWindow,
    utcnow,
)
from .notifications import AlertDispatcher
from .orchestrator import AggregationQuery
from .service import SurveillanceService

logger = logging.getLogger(__name__)


class SessionState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class SessionConfig:
    """Settings of one monitoring session."""
    interval_seconds: float = field(default_factory=lambda: config.MONITOR_INTERVAL_SECONDS)
    algorithms: Optional[list[str]] = None
    sensitivity: Optional[str] = None
    min_votes: Optional[int] = None
    overrides: Optional[dict] = None

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")


@dataclass
class SessionStatus:
    session_id: str
    state: SessionState
    streams: list[str]
    started_at: datetime
    cycles: int = 0
    alerts_emitted: int = 0
    last_evaluated_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    stream_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "streams": list(self.streams),
            "started_at": self.started_at.isoformat(),
            "cycles": self.cycles,
            "alerts_emitted": self.alerts_emitted,
            "last_evaluated_at": (
                self.last_evaluated_at.isoformat() if self.last_evaluated_at else None
            ),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "stream_errors": dict(self.stream_errors),
        }


class StreamFeed(ABC):
    """Supplies new estimates for a stream."""

    @abstractmethod
    async def refresh(self, stream: TimeSeriesStream) -> list[FusedEstimate]:
        """Estimates for windows after the stream's last one. May raise SurveillanceError."""
        pass


class AggregationStreamFeed(StreamFeed):
    """Feeds streams from the aggregation service, completed windows only."""

    def __init__(
        self,
        service: SurveillanceService,
        window: timedelta | None = None,
        lookback_days: int | None = None,
        fusion_strategy: str | None = None,
        quality_threshold: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.service = service
        self.window = window or timedelta(hours=config.WINDOW_HOURS)
        self.lookback = timedelta(days=lookback_days or config.MONITOR_LOOKBACK_DAYS)
        self.fusion_strategy = fusion_strategy or config.DEFAULT_FUSION_STRATEGY
        self.quality_threshold = (
            config.QUALITY_THRESHOLD if quality_threshold is None else quality_threshold
        )
        self._clock = clock

    async def refresh(self, stream: TimeSeriesStream) -> list[FusedEstimate]:
        end = TimeWindow.bucket(self._clock(), self.window).start
        last = stream.last_window
        start = last.end if last else end - self.lookback
        if start >= end:
            return []

        query = AggregationQuery(
            diseases=[stream.ref.disease_id],
            regions=[stream.ref.region],
            start=start,
            end=end,
            fusion_strategy=self.fusion_strategy,
            quality_threshold=self.quality_threshold,
            window=self.window,
        )
        report = await self.service.aggregate(query)
        return report.for_stream(stream.ref.disease_id, stream.ref.region)


@dataclass
class _Session:
    id: str
    config: SessionConfig
    plan: DetectionPlan
    streams: dict[str, TimeSeriesStream]
    states: dict[str, StreamDetectorState]
    status: SessionStatus
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    alerts: list[OutbreakAlert] = field(default_factory=list)
    spatial_seen: SeenAlerts = field(
        default_factory=lambda: SeenAlerts(timedelta(days=config.ALERT_SEEN_RETENTION_DAYS))
    )


class SessionManager:
    """Starts, inspects and stops monitoring sessions."""

    def __init__(
        self,
        engine: OutbreakDetectionEngine,
        feed: StreamFeed,
        dispatcher: AlertDispatcher | None = None,
        db: SurveillanceDatabase | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.feed = feed
        self.dispatcher = dispatcher
        self.db = db
        self._clock = clock
        self._sessions: dict[str, _Session] = {}
        self._owners: dict[str, str] = {}  # stream key -> session id

    async def start(
        self,
        streams: list[StreamRef | TimeSeriesStream],
        session_config: SessionConfig | None = None,
    ) -> str:
        """Start a session over the given streams and return its id.

        Raises StreamAlreadyMonitored if another running session owns one
        of the streams, AlgorithmConfigInvalid for a bad detector setup.
        """
        session_config = session_config or SessionConfig()
        plan = self.engine.plan(
            session_config.algorithms,
            session_config.sensitivity,
            session_config.overrides,
            session_config.min_votes,
        )

        series: dict[str, TimeSeriesStream] = {}
        for item in streams:
            stream = item if isinstance(item, TimeSeriesStream) else TimeSeriesStream(item)
            series.setdefault(stream.key, stream)
        if not series:
            raise ValueError("A session needs at least one stream")

        for key in series:
            if key in self._owners:
                raise StreamAlreadyMonitored(key, self._owners[key])

        session_id = str(uuid.uuid4())
        states = {}
        for key, stream in series.items():
            state = self.engine.new_state(stream.ref, plan)
            state.owner = session_id
            states[key] = state
            self._owners[key] = session_id

        session = _Session(
            id=session_id,
            config=session_config,
            plan=plan,
            streams=series,
            states=states,
            status=SessionStatus(
                session_id=session_id,
                state=SessionState.RUNNING,
                streams=sorted(series),
                started_at=self._clock(),
            ),
        )
        self._sessions[session_id] = session
        session.task = asyncio.create_task(self._run(session))
        logger.info(
            f"Started session {session_id} over {len(series)} streams "
            f"({', '.join(plan.algorithm_names)}, every {session_config.interval_seconds}s)"
        )
        return session_id

    def _get(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No session {session_id}")
        return session

    def status(self, session_id: str) -> SessionStatus:
        session = self._get(session_id)
        return replace(
            session.status,
            streams=list(session.status.streams),
            stream_errors=dict(session.status.stream_errors),
        )

    def alerts(self, session_id: str) -> list[OutbreakAlert]:
        """Alerts published by a session so far."""
        return list(self._get(session_id).alerts)

    def list_sessions(self) -> list[SessionStatus]:
        return [self.status(session_id) for session_id in self._sessions]

    async def stop(self, session_id: str) -> None:
        """Stop a session. No alert is published once this returns."""
        session = self._get(session_id)
        if session.status.state == SessionState.STOPPED:
            return

        session.stop_event.set()
        if session.task:
            session.task.cancel()
            await asyncio.gather(session.task, return_exceptions=True)

        for key in session.streams:
            if self._owners.get(key) == session_id:
                del self._owners[key]
        session.states.clear()
        session.status.state = SessionState.STOPPED
        session.status.stopped_at = self._clock()
        logger.info(f"Stopped session {session_id}")

    async def stop_all(self) -> None:
        for session_id in list(self._sessions):
            await self.stop(session_id)

    async def _run(self, session: _Session) -> None:
        while not session.stop_event.is_set():
            try:
                await self._cycle(session)
            except Exception as e:
                logger.error(f"Error in session {session.id} cycle: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    session.stop_event.wait(), timeout=session.config.interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def _cycle(self, session: _Session) -> None:
        new_alerts: list[OutbreakAlert] = []

        for key in sorted(session.streams):
            stream = session.streams[key]
            state = session.states[key]
            try:
                fresh = await self.feed.refresh(stream)
            except SurveillanceError as e:
                session.status.stream_errors[key] = str(e)
                logger.warning(f"Session {session.id}: refreshing {key} failed: {e}")
                continue
            except Exception as e:
                session.status.stream_errors[key] = f"{type(e).__name__}: {e}"
                logger.error(f"Session {session.id}: feed error for {key}: {e}", exc_info=True)
                continue

            async with state.lock:
                stream.extend(fresh)
                new_alerts.extend(
                    await asyncio.to_thread(self.engine.evaluate, stream, state, session.plan)
                )
            session.status.stream_errors.pop(key, None)

        if session.plan.spatial:
            clusters = await asyncio.to_thread(
                self.engine.spatial_alerts, list(session.streams.values()), session.plan.spatial
            )
            for alert in clusters:
                if alert.id not in session.spatial_seen:
                    session.spatial_seen.add(alert)
                    new_alerts.append(alert)

        session.status.cycles += 1
        session.status.last_evaluated_at = self._clock()
        await self._publish(session, new_alerts)

    async def _publish(self, session: _Session, alerts: list[OutbreakAlert]) -> None:
        if session.stop_event.is_set() or not alerts:
            return
        if self.db is not None:
            await asyncio.to_thread(_save_alerts, self.db, alerts)
        if session.stop_event.is_set():
            return
        for alert in alerts:
            if self.dispatcher is not None:
                self.dispatcher.submit(alert)
            session.alerts.append(alert)
            session.status.alerts_emitted += 1


def _save_alerts(db: SurveillanceDatabase, alerts: list[OutbreakAlert]) -> None:
    for alert in alerts:
        db.save_alert(alert)


async def run_once(
    service: SurveillanceService,
    engine: OutbreakDetectionEngine,
    streams: list[StreamRef],
    dispatcher: AlertDispatcher | None = None,
    db: SurveillanceDatabase | None = None,
    lookback_days: int | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    """Aggregate the lookback period once and run detection over it.

    Returns:
        Dict with counts of estimates, alerts and failed sources
    """
    window = timedelta(hours=config.WINDOW_HOURS)
    end = TimeWindow.bucket(clock(), window).start
    start = end - timedelta(days=lookback_days or config.MONITOR_LOOKBACK_DAYS)

    query = AggregationQuery(
        diseases=sorted({s.disease_id for s in streams}),
        regions=sorted({s.region for s in streams}),
        start=start,
        end=end,
        window=window,
    )
    report = await service.aggregate(query)

    series = []
    for ref in streams:
        stream = TimeSeriesStream(ref)
        stream.extend(report.for_stream(ref.disease_id, ref.region))
        series.append(stream)

    alerts = await asyncio.to_thread(engine.detect_many, series)
    if db is not None:
        await asyncio.to_thread(_save_alerts, db, alerts)
    if dispatcher is not None:
        for alert in alerts:
            dispatcher.submit(alert)

    return {
        "estimates": len(report.estimates),
        "alerts": len(alerts),
        "risk": assess_risk(alerts, clock=clock).to_dict(),
        "failed_sources": [k for k, v in report.source_status.items() if v != SourceStatus.OK],
        "started_at": start.isoformat(),
        "completed_at": end.isoformat(),
    }


async def _main(args) -> None:
    from .connectors import load_sources_config
    from .notifications import LogAlerter, WebhookAlerter
    from .orchestrator import SourceOrchestrator, SourceRegistry

    if not args.sources and not config.is_sources_configured():
        logger.error("No sources configured; set SOURCES_CONFIG_PATH or pass --sources")
        return

    registry = SourceRegistry()
    for source, connector in load_sources_config(args.sources):
        registry.register(source, connector)

    db = SurveillanceDatabase()
    service = SurveillanceService(SourceOrchestrator(registry), db=db)
    engine = OutbreakDetectionEngine()

    alerters = [LogAlerter()]
    if config.is_webhook_configured():
        alerters.append(WebhookAlerter())
    dispatcher = AlertDispatcher(alerters, db=db)
    await dispatcher.start()

    streams = [StreamRef(d, r) for d in args.disease for r in args.region]

    if args.once:
        result = await run_once(service, engine, streams, dispatcher, db)
        logger.info(
            f"Run complete: {result['estimates']} estimates, {result['alerts']} alerts, "
            f"risk {result['risk']['risk_level']}"
        )
        if result["failed_sources"]:
            logger.warning(f"Failed sources: {', '.join(result['failed_sources'])}")
        await dispatcher.stop()
        return

    manager = SessionManager(engine, AggregationStreamFeed(service), dispatcher, db)
    session_config = SessionConfig(
        interval_seconds=args.interval or config.MONITOR_INTERVAL_SECONDS
    )
    await manager.start(streams, session_config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()

    await manager.stop_all()
    await dispatcher.stop()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Disease Surveillance Monitor")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, help="Seconds between evaluation cycles")
    parser.add_argument("--disease", action="append", required=True, help="Disease to monitor")
    parser.add_argument("--region", action="append", required=True, help="Region to monitor")
    parser.add_argument("--sources", help="Path to sources JSON (default from config)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    asyncio.run(_main(args))
